from django.contrib import admin

from .models import Payment


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("provider_transaction_id", "order", "status", "amount", "provider", "created_at")
    search_fields = ("provider_transaction_id", "order__id", "phone")
    list_filter = ("status", "provider", "created_at")
    readonly_fields = ("created_at", "updated_at", "gateway_payload", "failure_reason")
    ordering = ("-created_at",)
