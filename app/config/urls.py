"""
URL configuration for the escrow payment service.

URL Structure:
    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (for load balancers, Docker)
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/escrow/                - Escrow endpoints (see escrow.urls)
        escrows/                   - Escrow list/create
        escrows/{id}/              - Escrow detail
        escrows/{id}/fund/         - Capture funds from the business
        escrows/{id}/cancel/       - Cancel (and refund) an unreleased escrow
        escrows/{id}/summary/      - Balance summary
        escrows/{id}/transactions/ - Ledger history
        escrows/{id}/milestones/   - Add milestone (before funding)
        escrows/{id}/milestones/{mid}/...  - Milestone workflow actions
        disputes/                  - Dispute list/detail, review, resolve
        contracts/{cid}/time-entries/      - Time entry list/create
        contracts/{cid}/periods/           - Biweekly periods, current, process
        time-entries/{id}/approve|reject/  - Time entry review
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
api_v1_patterns = [
    path("escrow/", include("escrow.urls")),
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
admin.site.site_header = "Escrow Admin"
admin.site.site_title = "Escrow Admin Portal"
admin.site.index_title = "Escrow operations"
