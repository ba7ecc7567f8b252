from django.contrib import admin
from .models import UnrecordedPayment

@admin.register(UnrecordedPayment)
class UnrecordedPaymentAdmin(admin.ModelAdmin):
    list_display = ("gateway_transaction_id", "user", "student_id", "term", "amount", "currency", "resolved", "created_at")
    list_filter = ("resolved", "term")
    search_fields = ("gateway_transaction_id", "tx_ref", "user__username", "user__email")
    readonly_fields = ("created_at", "notified_at")
