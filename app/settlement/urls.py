"""
URL configuration for the settlement app.

Routes:
    - POST checkout/
    - GET transactions/<id>/
    - POST transactions/<id>/confirm/
    - POST transactions/<id>/approve/
    - POST transactions/<id>/refund/
    - POST transactions/<id>/dispute/
    - POST transactions/<id>/resolve-dispute/
    - POST webhooks/paypal/ (signature verified, no session auth)

All routes are prefixed with /api/v1/settlement/ when included in the main URLconf.
"""

from django.urls import path

from settlement import views
from settlement.webhooks.views import paypal_webhook

app_name = "settlement"

urlpatterns = [
    path("checkout/", views.CheckoutView.as_view(), name="checkout"),
    path(
        "transactions/<uuid:transaction_id>/",
        views.TransactionDetailView.as_view(),
        name="transaction_detail",
    ),
    path(
        "transactions/<uuid:transaction_id>/confirm/",
        views.ConfirmPaymentView.as_view(),
        name="confirm",
    ),
    path(
        "transactions/<uuid:transaction_id>/approve/",
        views.ApproveView.as_view(),
        name="approve",
    ),
    path(
        "transactions/<uuid:transaction_id>/refund/",
        views.RefundView.as_view(),
        name="refund",
    ),
    path(
        "transactions/<uuid:transaction_id>/dispute/",
        views.DisputeView.as_view(),
        name="dispute",
    ),
    path(
        "transactions/<uuid:transaction_id>/resolve-dispute/",
        views.ResolveDisputeView.as_view(),
        name="resolve_dispute",
    ),
    path("webhooks/paypal/", paypal_webhook, name="paypal_webhook"),
]
