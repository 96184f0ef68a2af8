from decimal import Decimal

from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _


class Restaurant(models.Model):
    """
    A restaurant as seen by one office. Holds the metadata pushed by the
    ordering platform and the derived sum of today's group order.
    """

    office = models.ForeignKey("offices.Office", on_delete=models.CASCADE, related_name="restaurants")
    restaurant_id = models.BigIntegerField(_("external restaurant id"))

    has_meta_data = models.BooleanField(default=False)
    name = models.CharField(max_length=255, blank=True, default="")
    logo_url = models.CharField(max_length=500, blank=True, default="")
    address = models.CharField(max_length=255, blank=True, default="")
    city_name = models.CharField(max_length=100, blank=True, default="")
    header_image_url = models.CharField(max_length=500, blank=True, default="")
    phone = models.CharField(max_length=40, blank=True, default="")

    minimum_price_for_order = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text=_("Minimum order amount. Empty until the platform reports it."),
    )
    pooled_order_sum = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text=_("Amount ordered through the platform outside of Groupeat."),
    )
    is_pooled_order_restaurant = models.BooleanField(default=False)
    group_order_sum = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text=_("Sum of today's orders that count toward the group order."),
    )

    meta_data = models.JSONField(default=dict, blank=True)
    meta_data_updated_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        unique_together = ("office", "restaurant_id")
        ordering = ["created_at"]

    def __str__(self):
        return f"{self.name or self.restaurant_id} (office {self.office_id})"


class OrderStatus(models.TextChoices):
    ACTIVE = "ACTIVE", _("Active")
    CANCELED = "CANCELED", _("Canceled")
    REMOVED = "REMOVED", _("Removed")
    PAID = "PAID", _("Paid")


class GroupOrder(models.Model):
    """
    One user's order in a restaurant's group order log.

    Orders are never deleted. Cancel, remove and pay only set flags and
    timestamps; date_added identifies the order within the log.
    """

    restaurant = models.ForeignKey(Restaurant, on_delete=models.CASCADE, related_name="orders")
    user = models.ForeignKey("users.User", on_delete=models.CASCADE, related_name="group_orders")

    items = models.JSONField(default=list)
    billing_lines = models.JSONField(default=list, blank=True)
    total_amount = models.DecimalField(max_digits=10, decimal_places=2)
    shopping_cart_guid = models.CharField(max_length=64)

    date_added = models.DateTimeField(default=timezone.now, db_index=True)
    date_updated = models.DateTimeField(null=True, blank=True)
    date_canceled = models.DateTimeField(null=True, blank=True)
    date_removed = models.DateTimeField(null=True, blank=True)
    date_paid = models.DateTimeField(null=True, blank=True)

    is_canceled = models.BooleanField(default=False)
    is_removed = models.BooleanField(default=False)
    is_paid = models.BooleanField(default=False)
    canceled_unseen = models.BooleanField(
        default=False,
        help_text=_("Canceled because the user did not answer the settlement liveness check."),
    )

    notification_sent = models.BooleanField(
        default=False,
        help_text=_("A payment confirmation was sent for this order."),
    )
    notification_sent_date = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-date_added", "-id"]
        indexes = [
            models.Index(fields=["restaurant", "date_added"]),
            models.Index(fields=["user", "date_added"]),
        ]

    def __str__(self):
        return f"Order of user {self.user_id} at {self.restaurant_id} ({self.status})"

    @property
    def status(self):
        if self.is_removed:
            return OrderStatus.REMOVED
        if self.is_canceled:
            return OrderStatus.CANCELED
        if self.is_paid:
            return OrderStatus.PAID
        return OrderStatus.ACTIVE

    def is_in_group(self, allow_paid_orders=True):
        """Whether the order counts toward the restaurant's group order sum."""
        return not self.is_canceled and not self.is_removed and (allow_paid_orders or not self.is_paid)
