"""
URL configuration for the premium engine.

The `urlpatterns` list routes URLs to views. This is the root URL configuration
that includes all app-specific routes.

URL Structure:
    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (for load balancers, Docker)
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/premiums/              - Premium endpoints
        collections/               - Initiate collection (POST)
        collections/{token}/       - Collection status
        settlements/               - Settlement batches
        settlements/{id}/          - Batch with line items and statistics
        settlements/generate/      - Settle a date on demand (POST)
        payouts/                   - Payout line items
        payouts/{id}/retry/        - Requeue a failed payout (POST)
        payments/{id}/resolve-split/ - Split a confirmed_unsplit payment (POST)
        webhooks/mpesa/stk/        - STK push callback (POST)
        webhooks/mpesa/b2c/result/ - B2C result callback (POST)
        webhooks/mpesa/b2c/timeout/ - B2C timeout callback (POST)

For more information, see:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
# All routes here are prefixed with /api/v1/ automatically
api_v1_patterns = [
    # Premiums
    path("premiums/", include("premiums.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # Health check (Docker, Kubernetes, load balancers)
    path("health/", health_check, name="health_check"),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Premiums Admin"
admin.site.site_title = "Premiums Admin Portal"
admin.site.index_title = "Collections, settlement and payouts"
