from django.conf import settings
from django.db import models


class UnrecordedPayment(models.Model):
    """A gateway-confirmed charge the school backend did not record.

    Rows are resolved by hand, or when a retried gateway callback records the
    payment after a verification outage.
    """
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL
    )
    student_id = models.PositiveIntegerField(null=True, blank=True)
    gateway_transaction_id = models.CharField(max_length=64, db_index=True)
    tx_ref = models.CharField(max_length=128, unique=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    currency = models.CharField(max_length=8)
    term = models.CharField(max_length=16, blank=True)
    academic_year_id = models.PositiveIntegerField(null=True, blank=True)
    fee_structure_id = models.PositiveIntegerField(null=True, blank=True)
    error = models.TextField(blank=True)
    resolved = models.BooleanField(default=False)
    notified_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.gateway_transaction_id} ({self.amount} {self.currency})"
