from django.urls import path
from . import views, webhook
app_name = "payments"
urlpatterns = [
    path("create", views.create_payment_view, name="create"),
    path("verify", views.verify_payment_view, name="verify"),
    path("result", views.payment_result_view, name="result"),  # gateway redirect target
    path("webhook", webhook.phonepe_webhook, name="webhook"),
    path("<str:transaction_id>/summary", views.payment_summary_view, name="summary"),
]
