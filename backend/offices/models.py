from django.db import models
from django.utils import timezone


class Office(models.Model):
    """
    An office on the ordering platform, identified by its company id and
    address key (four dash-separated numbers). Created by the first member
    that registers it.
    """

    company_id = models.BigIntegerField()
    address_key = models.CharField(max_length=40)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        unique_together = ("company_id", "address_key")
        ordering = ["created_at"]

    def __str__(self):
        return f"{self.address_key}_{self.company_id}"


class OfficeMembership(models.Model):
    """A user's membership in an office. Memberships only grow."""

    office = models.ForeignKey(Office, on_delete=models.CASCADE, related_name="memberships")
    user = models.ForeignKey("users.User", on_delete=models.CASCADE, related_name="office_memberships")
    date_added = models.DateTimeField(default=timezone.now)

    class Meta:
        unique_together = ("office", "user")
        ordering = ["date_added"]
