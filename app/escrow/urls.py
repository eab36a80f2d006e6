"""
URL configuration for the escrow API.

URL Structure:
    Escrow accounts:
        /escrows/                                  GET, POST
        /escrows/{id}/                             GET
        /escrows/{id}/fund/                        POST
        /escrows/{id}/cancel/                      POST
        /escrows/{id}/transactions/                GET
        /escrows/{id}/summary/                     GET
        /escrows/{id}/milestones/                  POST

    Milestones:
        /escrows/{id}/milestones/{pk}/             PATCH
        /escrows/{id}/milestones/{pk}/start/       POST
        /escrows/{id}/milestones/{pk}/deliverables/ POST
        /escrows/{id}/milestones/{pk}/submit/      POST
        /escrows/{id}/milestones/{pk}/approve/     POST
        /escrows/{id}/milestones/{pk}/reject/      POST
        /escrows/{id}/milestones/{pk}/resume/      POST
        /escrows/{id}/milestones/{pk}/release/     POST
        /escrows/{id}/milestones/{pk}/dispute/     POST

    Disputes:
        /disputes/                                 GET
        /disputes/{id}/                            GET
        /disputes/{id}/review/                     POST
        /disputes/{id}/resolve/                    POST

    Hourly contracts:
        /contracts/{contract_id}/time-entries/     GET, POST
        /contracts/{contract_id}/current-period/   GET
        /contracts/{contract_id}/periods/          GET
        /contracts/{contract_id}/periods/process/  POST
        /time-entries/{id}/approve/                POST
        /time-entries/{id}/reject/                 POST

All URLs are prefixed with /api/v1/escrow/ in the main URL configuration.
"""

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from escrow.views import (
    ContractTimeViewSet,
    DisputeViewSet,
    EscrowAccountViewSet,
    MilestoneViewSet,
    TimeEntryViewSet,
)

router = DefaultRouter()
router.register(r"escrows", EscrowAccountViewSet, basename="escrow")
router.register(r"disputes", DisputeViewSet, basename="dispute")
router.register(r"time-entries", TimeEntryViewSet, basename="time-entry")

app_name = "escrow"


def milestone_action(name: str):
    return path(
        f"escrows/<uuid:escrow_pk>/milestones/<uuid:pk>/{name}/",
        MilestoneViewSet.as_view({"post": name}),
        name=f"milestone-{name}",
    )


urlpatterns = [
    path("", include(router.urls)),
    # Nested milestone routes
    path(
        "escrows/<uuid:escrow_pk>/milestones/<uuid:pk>/",
        MilestoneViewSet.as_view({"patch": "partial_update"}),
        name="milestone-detail",
    ),
    milestone_action("start"),
    milestone_action("deliverables"),
    milestone_action("submit"),
    milestone_action("approve"),
    milestone_action("reject"),
    milestone_action("resume"),
    milestone_action("release"),
    milestone_action("dispute"),
    # Hourly contract routes
    path(
        "contracts/<str:contract_id>/time-entries/",
        ContractTimeViewSet.as_view({"get": "list_time_entries", "post": "create_time_entry"}),
        name="contract-time-entries",
    ),
    path(
        "contracts/<str:contract_id>/current-period/",
        ContractTimeViewSet.as_view({"get": "current_period"}),
        name="contract-current-period",
    ),
    path(
        "contracts/<str:contract_id>/periods/",
        ContractTimeViewSet.as_view({"get": "list_periods"}),
        name="contract-periods",
    ),
    path(
        "contracts/<str:contract_id>/periods/process/",
        ContractTimeViewSet.as_view({"post": "process_payment"}),
        name="contract-process-payment",
    ),
]
