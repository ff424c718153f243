from django.db import models
from django.db.models import Q
from django.utils import timezone


class PaymentQuerySet(models.QuerySet):
    def by_transaction(self, transaction_id: str):
        return self.filter(provider_transaction_id=transaction_id).select_related("order").first()

    def pending(self):
        return self.filter(status=Payment.PENDING)

    def transition(self, pk, expected: str, new: str, **fields) -> bool:
        """Compare-and-set the payment status.

        Only rows still in ``expected`` are touched, so a duplicate terminal
        write from a concurrent verification is a no-op.
        """
        fields["updated_at"] = timezone.now()
        return self.filter(pk=pk, status=expected).update(status=new, **fields) == 1


class Payment(models.Model):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (SUCCESS, "Success"),
        (FAILED, "Failed"),
    ]
    TERMINAL = (SUCCESS, FAILED)

    order = models.ForeignKey("orders.Order", on_delete=models.PROTECT, related_name="payments")
    provider = models.CharField(max_length=32, default="phonepe")
    provider_transaction_id = models.CharField(max_length=64, unique=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=PENDING, db_index=True)
    phone = models.CharField(max_length=20, blank=True, default="")

    gateway_payload = models.JSONField(blank=True, null=True)
    failure_reason = models.CharField(max_length=255, blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = PaymentQuerySet.as_manager()

    class Meta:
        ordering = ("-created_at",)
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=Q(status="pending"),
                name="one_pending_payment_per_order",
            ),
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL

    def __str__(self):
        return f"{self.provider_transaction_id} {self.status} ₹{self.amount}"
