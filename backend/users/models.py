from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _
from core_backend.utils.archiving import SoftDeleteMixin


class User(SoftDeleteMixin):
    """
    A Groupeat user, identified by the ordering platform's user token.

    Test users share tokens with real accounts and are told apart by a random
    test_user_id. Users are never hard-deleted; delete() archives the row.
    """

    user_token = models.CharField(_("user token"), max_length=512, db_index=True)
    test_user_id = models.CharField(_("test user id"), max_length=40, blank=True, default="", db_index=True)
    full_name = models.CharField(_("full name"), max_length=50)
    cellphone = models.CharField(_("cellphone"), max_length=20)
    email = models.EmailField(_("email address"))

    fcm_id = models.CharField(
        _("push endpoint id"),
        max_length=255,
        blank=True,
        default="",
        help_text=_("Endpoint the user's client listens on for push messages."),
    )
    fcm_id_updated_at = models.DateTimeField(null=True, blank=True)
    last_ping_time = models.DateTimeField(
        null=True,
        blank=True,
        help_text=_("Last time the user's client answered a liveness ping."),
    )

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["user_token", "test_user_id"]),
        ]

    def __str__(self):
        return f"{self.full_name} ({self.pk})"

    @property
    def is_test_user(self):
        return bool(self.test_user_id)

    @property
    def has_push_endpoint(self):
        return bool(self.fcm_id)


class UserNotification(models.Model):
    """
    One entry of a user's notification log. Entries are flagged read or
    removed, never deleted.
    """

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="notifications")
    title = models.CharField(max_length=255, blank=True, default="")
    message = models.TextField(blank=True, default="")
    notification_type = models.CharField(max_length=4, blank=True, default="")
    payload = models.JSONField(default=dict)

    is_read = models.BooleanField(default=False)
    is_removed = models.BooleanField(default=False, db_index=True)

    date_added = models.DateTimeField(default=timezone.now, db_index=True)
    date_read = models.DateTimeField(null=True, blank=True)
    date_removed = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-date_added", "-id"]

    def __str__(self):
        return f"{self.title} -> user {self.user_id}"
