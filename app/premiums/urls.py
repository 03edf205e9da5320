"""
URL configuration for the premiums app.

Routes:
    - POST collections/                   - Initiate an STK-push collection
    - GET  collections/<token>/           - Collection status
    - GET  payments/history/              - Signed-in member's payments
    - GET  payouts/mine/                  - Signed-in member's commission payouts
    - GET  payouts/mine/summary/          - Earned, paid and pending for a date range
    - GET  settlements/                   - Settlement batches
    - GET  settlements/<id>/              - Batch with line items and statistics
    - GET  settlements/<id>/breakdown/    - Commission per recipient, by tier
    - GET  settlements/summary/           - Batches and totals for a date range
    - GET  settlements/stats/             - Rolling totals (?days=)
    - POST settlements/generate/          - Settle a date on demand
    - GET  payouts/                       - Line items (?state=&requires_intervention=)
    - POST payouts/<id>/retry/            - Requeue a failed line item
    - POST payments/<id>/resolve-split/   - Split a confirmed_unsplit payment
    - POST webhooks/mpesa/stk/            - STK push callback
    - POST webhooks/mpesa/b2c/result/     - B2C result callback
    - POST webhooks/mpesa/b2c/timeout/    - B2C queue timeout callback

All routes are prefixed with /api/v1/premiums/ when included in the main URLconf.
"""

from django.urls import path

from premiums import views
from premiums.webhooks.views import mpesa_b2c_result, mpesa_b2c_timeout, mpesa_stk_callback

app_name = "premiums"

urlpatterns = [
    # Payer
    path("collections/", views.CollectionInitiateView.as_view(), name="collection-initiate"),
    path(
        "collections/<str:correlation_token>/",
        views.CollectionStatusView.as_view(),
        name="collection-status",
    ),
    path("payments/history/", views.PaymentHistoryView.as_view(), name="payment-history"),
    # Recipient
    path("payouts/mine/", views.RecipientPayoutListView.as_view(), name="my-payout-list"),
    path(
        "payouts/mine/summary/",
        views.RecipientPayoutSummaryView.as_view(),
        name="my-payout-summary",
    ),
    # Operator
    path("settlements/", views.SettlementListView.as_view(), name="settlement-list"),
    path(
        "settlements/generate/",
        views.SettlementGenerateView.as_view(),
        name="settlement-generate",
    ),
    path(
        "settlements/summary/",
        views.SettlementSummaryView.as_view(),
        name="settlement-summary",
    ),
    path("settlements/stats/", views.SettlementStatsView.as_view(), name="settlement-stats"),
    path(
        "settlements/<uuid:batch_id>/",
        views.SettlementDetailView.as_view(),
        name="settlement-detail",
    ),
    path(
        "settlements/<uuid:batch_id>/breakdown/",
        views.SettlementBreakdownView.as_view(),
        name="settlement-breakdown",
    ),
    path("payouts/", views.PayoutLineItemListView.as_view(), name="payout-list"),
    path(
        "payouts/<uuid:line_item_id>/retry/",
        views.PayoutRetryView.as_view(),
        name="payout-retry",
    ),
    path(
        "payments/<uuid:payment_id>/resolve-split/",
        views.PaymentResolveSplitView.as_view(),
        name="payment-resolve-split",
    ),
    # Webhook endpoints
    path("webhooks/mpesa/stk/", mpesa_stk_callback, name="mpesa-stk-callback"),
    path("webhooks/mpesa/b2c/result/", mpesa_b2c_result, name="mpesa-b2c-result"),
    path("webhooks/mpesa/b2c/timeout/", mpesa_b2c_timeout, name="mpesa-b2c-timeout"),
]
