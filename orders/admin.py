from django.contrib import admin

from .models import Order


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "user_id", "status", "total_amount", "created_at")
    search_fields = ("id", "user_id", "phone")
    list_filter = ("status", "created_at")
    readonly_fields = ("created_at", "updated_at", "metadata")
    ordering = ("-created_at",)
