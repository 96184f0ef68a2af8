from django.db import models


class TopicSubscription(models.Model):
    """
    A push endpoint subscribed to a topic. Topics are office update channels
    named "<address_key>_<company_id>".
    """

    endpoint_id = models.CharField(max_length=255, db_index=True)
    topic = models.CharField(max_length=100, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("endpoint_id", "topic")
        ordering = ["created_at"]

    def __str__(self):
        return f"{self.endpoint_id} -> {self.topic}"
