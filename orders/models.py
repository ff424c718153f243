import uuid

from django.db import models
from django.utils import timezone


def _new_order_id() -> str:
    return uuid.uuid4().hex


class OrderQuerySet(models.QuerySet):
    def transition(self, pk, expected: str, new: str) -> bool:
        """Move order ``pk`` from ``expected`` to ``new``.

        Single conditional UPDATE; returns False when the order was not in
        ``expected`` status (already moved by someone else, or missing).
        """
        return self.filter(pk=pk, status=expected).update(status=new, updated_at=timezone.now()) == 1


class Order(models.Model):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (PAID, "Paid"),
        (SHIPPED, "Shipped"),
        (DELIVERED, "Delivered"),
        (CANCELLED, "Cancelled"),
    ]

    id = models.CharField(primary_key=True, max_length=64, default=_new_order_id)
    user_id = models.CharField(max_length=64, db_index=True)  # owned by the auth service
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=PENDING, db_index=True)
    phone = models.CharField(max_length=20, blank=True, default="")
    address = models.TextField(blank=True, default="")
    metadata = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = OrderQuerySet.as_manager()

    class Meta:
        ordering = ("-created_at",)

    @property
    def is_paid(self) -> bool:
        return self.status == self.PAID

    def __str__(self):
        return f"{self.id} ({self.status})"
