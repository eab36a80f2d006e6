"""
ViewSets for the escrow API.

URL Structure:
    /api/v1/escrow/escrows/                                   GET, POST
    /api/v1/escrow/escrows/{id}/                              GET
    /api/v1/escrow/escrows/{id}/fund/                         POST
    /api/v1/escrow/escrows/{id}/cancel/                       POST
    /api/v1/escrow/escrows/{id}/transactions/                 GET
    /api/v1/escrow/escrows/{id}/summary/                      GET
    /api/v1/escrow/escrows/{id}/milestones/                   POST
    /api/v1/escrow/escrows/{id}/milestones/{pk}/              PATCH
    /api/v1/escrow/escrows/{id}/milestones/{pk}/{action}/     POST
        start, deliverables, submit, approve, reject, resume, release, dispute
    /api/v1/escrow/disputes/                                  GET
    /api/v1/escrow/disputes/{id}/                             GET
    /api/v1/escrow/disputes/{id}/review/                      POST
    /api/v1/escrow/disputes/{id}/resolve/                     POST
    /api/v1/escrow/contracts/{contract_id}/time-entries/      GET, POST
    /api/v1/escrow/time-entries/{id}/approve/                 POST
    /api/v1/escrow/time-entries/{id}/reject/                  POST
    /api/v1/escrow/contracts/{contract_id}/current-period/    GET
    /api/v1/escrow/contracts/{contract_id}/periods/           GET, POST

Design Decisions:
    - Views only parse input and render output; the services authorize the
      actor and enforce every rule
    - Service exceptions are rendered by
      core.exception_handlers.application_exception_handler
"""

from __future__ import annotations

from drf_spectacular.utils import OpenApiParameter, extend_schema, extend_schema_view
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from escrow.serializers import (
    ApproveSerializer,
    CancelSerializer,
    DeliverableCreateSerializer,
    DeliverableSerializer,
    DisputeCreateSerializer,
    DisputeSerializer,
    EscrowAccountSerializer,
    EscrowCreateSerializer,
    EscrowSummarySerializer,
    FundSerializer,
    MilestoneCreateSerializer,
    MilestoneSerializer,
    MilestoneUpdateSerializer,
    PaymentPeriodSerializer,
    PeriodSummarySerializer,
    ProcessPaymentSerializer,
    RejectSerializer,
    ResolveSerializer,
    SubmitSerializer,
    TimeEntryCreateSerializer,
    TimeEntrySerializer,
    TransactionSerializer,
)
from escrow.services import (
    Actor,
    BiweeklyPaymentService,
    DisputeService,
    EscrowAccountService,
    MilestoneService,
    MilestoneSpec,
)


def actor_from_request(request) -> Actor:
    """Build the service actor from the authenticated user (staff are admins)."""
    return Actor(actor_id=str(request.user.pk), is_admin=bool(request.user.is_staff))


# =============================================================================
# Escrow Accounts
# =============================================================================


@extend_schema_view(
    list=extend_schema(
        operation_id="list_escrows",
        summary="List escrow accounts",
        tags=["Escrow - Accounts"],
        parameters=[OpenApiParameter("status", str, description="Filter by status")],
    ),
    create=extend_schema(
        operation_id="create_escrow",
        summary="Create escrow account",
        tags=["Escrow - Accounts"],
        request=EscrowCreateSerializer,
        responses={201: EscrowAccountSerializer},
    ),
    retrieve=extend_schema(
        operation_id="get_escrow",
        summary="Get escrow account",
        tags=["Escrow - Accounts"],
    ),
)
class EscrowAccountViewSet(viewsets.GenericViewSet):
    """
    ViewSet for escrow account operations.

    list:
        Accounts where the current user is the business or the talent.

    create:
        Create an account with its milestones (business only).
    """

    serializer_class = EscrowAccountSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        return EscrowAccountService.list_accounts_for(
            actor_from_request(self.request),
            status=self.request.query_params.get("status"),
        )

    def list(self, request):
        page = self.paginate_queryset(self.get_queryset())
        serializer = EscrowAccountSerializer(page, many=True)
        return self.get_paginated_response(serializer.data)

    def create(self, request):
        serializer = EscrowCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        actor = actor_from_request(request)
        data = serializer.validated_data

        account = EscrowAccountService().create(
            contract_id=data["contract_id"],
            business_id=data.get("business_id", actor.actor_id),
            talent_id=data["talent_id"],
            milestone_specs=serializer.milestone_specs(),
            actor=actor,
            currency=data.get("currency"),
        )
        return Response(EscrowAccountSerializer(account).data, status=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        account = EscrowAccountService().get_account(pk, actor_from_request(request))
        return Response(EscrowAccountSerializer(account).data)

    @extend_schema(
        operation_id="fund_escrow",
        summary="Fund escrow account",
        description="Captures the account total. Send an Idempotency-Key header to make retries safe.",
        tags=["Escrow - Accounts"],
        request=FundSerializer,
        responses={200: EscrowAccountSerializer},
    )
    @action(detail=True, methods=["post"])
    def fund(self, request, pk=None):
        serializer = FundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        idempotency_key = serializer.validated_data.get("idempotency_key") or request.headers.get("Idempotency-Key")

        account = EscrowAccountService().fund(
            pk,
            payment_method_ref=serializer.validated_data["payment_method_ref"],
            actor=actor_from_request(request),
            idempotency_key=idempotency_key,
        )
        return Response(EscrowAccountSerializer(account).data)

    @extend_schema(
        operation_id="cancel_escrow",
        summary="Cancel escrow account",
        tags=["Escrow - Accounts"],
        request=CancelSerializer,
        responses={200: EscrowAccountSerializer},
    )
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        serializer = CancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        account = EscrowAccountService().cancel(
            pk,
            reason=serializer.validated_data["reason"],
            actor=actor_from_request(request),
        )
        return Response(EscrowAccountSerializer(account).data)

    @extend_schema(
        operation_id="list_escrow_transactions",
        summary="List ledger entries of an escrow account",
        tags=["Escrow - Accounts"],
        responses={200: TransactionSerializer(many=True)},
    )
    @action(detail=True, methods=["get"])
    def transactions(self, request, pk=None):
        queryset = EscrowAccountService().get_transactions(pk, actor_from_request(request))
        page = self.paginate_queryset(queryset)
        return self.get_paginated_response(TransactionSerializer(page, many=True).data)

    @extend_schema(
        operation_id="get_escrow_summary",
        summary="Get escrow balance summary",
        tags=["Escrow - Accounts"],
        responses={200: EscrowSummarySerializer},
    )
    @action(detail=True, methods=["get"])
    def summary(self, request, pk=None):
        summary = EscrowAccountService().get_summary(pk, actor_from_request(request))
        return Response(EscrowSummarySerializer(summary).data)

    @extend_schema(
        operation_id="add_milestone",
        summary="Add milestone to an unfunded account",
        tags=["Escrow - Milestones"],
        request=MilestoneCreateSerializer,
        responses={201: MilestoneSerializer},
    )
    @action(detail=True, methods=["post"])
    def milestones(self, request, pk=None):
        serializer = MilestoneCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        milestone = EscrowAccountService().add_milestone(
            pk,
            spec=MilestoneSpec(**serializer.validated_data),
            actor=actor_from_request(request),
        )
        return Response(MilestoneSerializer(milestone).data, status=status.HTTP_201_CREATED)


# =============================================================================
# Milestones
# =============================================================================


class MilestoneViewSet(viewsets.ViewSet):
    """
    Milestone workflow, nested under an escrow account.

    Routed explicitly in urls.py as escrows/{escrow_pk}/milestones/{pk}/.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="update_milestone",
        summary="Edit milestone of an unfunded account",
        tags=["Escrow - Milestones"],
        request=MilestoneUpdateSerializer,
        responses={200: MilestoneSerializer},
    )
    def partial_update(self, request, escrow_pk=None, pk=None):
        serializer = MilestoneUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        milestone = EscrowAccountService().update_milestone(
            escrow_pk, pk, actor_from_request(request), **serializer.validated_data
        )
        return Response(MilestoneSerializer(milestone).data)

    @extend_schema(operation_id="start_milestone", summary="Start milestone", tags=["Escrow - Milestones"], request=None)
    def start(self, request, escrow_pk=None, pk=None):
        milestone = MilestoneService().start(escrow_pk, pk, actor_from_request(request))
        return Response(MilestoneSerializer(milestone).data)

    @extend_schema(
        operation_id="add_deliverable",
        summary="Attach deliverable",
        tags=["Escrow - Milestones"],
        request=DeliverableCreateSerializer,
        responses={201: DeliverableSerializer},
    )
    def deliverables(self, request, escrow_pk=None, pk=None):
        serializer = DeliverableCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        deliverable = MilestoneService().add_deliverable(
            escrow_pk, pk, actor_from_request(request), **serializer.validated_data
        )
        return Response(DeliverableSerializer(deliverable).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="submit_milestone",
        summary="Submit milestone for review",
        tags=["Escrow - Milestones"],
        request=SubmitSerializer,
    )
    def submit(self, request, escrow_pk=None, pk=None):
        serializer = SubmitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        milestone = MilestoneService().submit(
            escrow_pk, pk, actor_from_request(request), notes=serializer.validated_data["notes"]
        )
        return Response(MilestoneSerializer(milestone).data)

    @extend_schema(
        operation_id="approve_milestone",
        summary="Approve milestone",
        tags=["Escrow - Milestones"],
        request=ApproveSerializer,
    )
    def approve(self, request, escrow_pk=None, pk=None):
        serializer = ApproveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        milestone = MilestoneService().approve(
            escrow_pk, pk, actor_from_request(request), notes=serializer.validated_data["notes"]
        )
        return Response(MilestoneSerializer(milestone).data)

    @extend_schema(
        operation_id="reject_milestone",
        summary="Reject milestone",
        tags=["Escrow - Milestones"],
        request=RejectSerializer,
    )
    def reject(self, request, escrow_pk=None, pk=None):
        serializer = RejectSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        milestone = MilestoneService().reject(
            escrow_pk, pk, actor_from_request(request), reason=serializer.validated_data["reason"]
        )
        return Response(MilestoneSerializer(milestone).data)

    @extend_schema(
        operation_id="resume_milestone",
        summary="Resume work after rejection",
        tags=["Escrow - Milestones"],
        request=None,
    )
    def resume(self, request, escrow_pk=None, pk=None):
        milestone = MilestoneService().resume(escrow_pk, pk, actor_from_request(request))
        return Response(MilestoneSerializer(milestone).data)

    @extend_schema(
        operation_id="release_milestone",
        summary="Release milestone payment",
        tags=["Escrow - Milestones"],
        request=None,
        responses={200: EscrowAccountSerializer},
    )
    def release(self, request, escrow_pk=None, pk=None):
        account = EscrowAccountService().release_milestone(escrow_pk, pk, actor_from_request(request))
        return Response(EscrowAccountSerializer(account).data)

    @extend_schema(
        operation_id="dispute_milestone",
        summary="Raise dispute on milestone",
        tags=["Escrow - Disputes"],
        request=DisputeCreateSerializer,
        responses={201: DisputeSerializer},
    )
    def dispute(self, request, escrow_pk=None, pk=None):
        serializer = DisputeCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        dispute = DisputeService().initiate(
            escrow_pk,
            pk,
            actor_from_request(request),
            reason=serializer.validated_data["reason"],
            description=serializer.validated_data["description"],
        )
        return Response(DisputeSerializer(dispute).data, status=status.HTTP_201_CREATED)


# =============================================================================
# Disputes
# =============================================================================


@extend_schema_view(
    list=extend_schema(operation_id="list_disputes", summary="List disputes", tags=["Escrow - Disputes"]),
    retrieve=extend_schema(operation_id="get_dispute", summary="Get dispute", tags=["Escrow - Disputes"]),
)
class DisputeViewSet(viewsets.GenericViewSet):
    """Dispute reads for parties and admins; review and resolution for admins."""

    serializer_class = DisputeSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        return DisputeService.list_disputes(
            actor_from_request(self.request),
            escrow_id=self.request.query_params.get("escrow"),
            status=self.request.query_params.get("status"),
        )

    def list(self, request):
        page = self.paginate_queryset(self.get_queryset())
        return self.get_paginated_response(DisputeSerializer(page, many=True).data)

    def retrieve(self, request, pk=None):
        dispute = DisputeService().get_dispute(pk, actor_from_request(request))
        return Response(DisputeSerializer(dispute).data)

    @extend_schema(operation_id="review_dispute", summary="Start dispute review", tags=["Escrow - Disputes"], request=None)
    @action(detail=True, methods=["post"])
    def review(self, request, pk=None):
        dispute = DisputeService().start_review(pk, actor_from_request(request))
        return Response(DisputeSerializer(dispute).data)

    @extend_schema(
        operation_id="resolve_dispute",
        summary="Resolve dispute",
        tags=["Escrow - Disputes"],
        request=ResolveSerializer,
    )
    @action(detail=True, methods=["post"])
    def resolve(self, request, pk=None):
        serializer = ResolveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        dispute = DisputeService().resolve(
            pk,
            resolution=data["resolution"],
            actor=actor_from_request(request),
            resolution_amount=data.get("resolution_amount"),
            admin_notes=data.get("admin_notes", ""),
        )
        return Response(DisputeSerializer(dispute).data)


# =============================================================================
# Hourly Contracts
# =============================================================================


class ContractTimeViewSet(viewsets.ViewSet):
    """
    Time entries and biweekly periods of an hourly contract.

    Routed explicitly in urls.py under contracts/{contract_id}/.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="list_time_entries",
        summary="List time entries",
        tags=["Escrow - Hourly"],
        responses={200: TimeEntrySerializer(many=True)},
    )
    def list_time_entries(self, request, contract_id=None):
        entries = BiweeklyPaymentService.list_time_entries(
            contract_id, actor_from_request(request), status=request.query_params.get("status")
        )
        return Response(TimeEntrySerializer(entries, many=True).data)

    @extend_schema(
        operation_id="create_time_entry",
        summary="Log time",
        tags=["Escrow - Hourly"],
        request=TimeEntryCreateSerializer,
        responses={201: TimeEntrySerializer},
    )
    def create_time_entry(self, request, contract_id=None):
        serializer = TimeEntryCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        actor = actor_from_request(request)
        data = serializer.validated_data
        entry = BiweeklyPaymentService().create_time_entry(
            contract_id=contract_id,
            business_id=data["business_id"],
            talent_id=data.get("talent_id", actor.actor_id),
            work_date=data["work_date"],
            hours=data["hours"],
            hourly_rate_cents=data["hourly_rate_cents"],
            actor=actor,
            description=data["description"],
        )
        return Response(TimeEntrySerializer(entry).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="get_current_period",
        summary="Preview current biweekly period",
        tags=["Escrow - Hourly"],
        responses={200: PeriodSummarySerializer},
    )
    def current_period(self, request, contract_id=None):
        summary = BiweeklyPaymentService.get_current_period(contract_id, actor=actor_from_request(request))
        return Response(PeriodSummarySerializer(summary).data)

    @extend_schema(
        operation_id="list_periods",
        summary="List payment periods",
        tags=["Escrow - Hourly"],
        responses={200: PaymentPeriodSerializer(many=True)},
    )
    def list_periods(self, request, contract_id=None):
        periods = BiweeklyPaymentService.list_periods(contract_id, actor_from_request(request))
        return Response(PaymentPeriodSerializer(periods, many=True).data)

    @extend_schema(
        operation_id="process_payment",
        summary="Pay a biweekly period",
        tags=["Escrow - Hourly"],
        request=ProcessPaymentSerializer,
        responses={200: PaymentPeriodSerializer},
    )
    def process_payment(self, request, contract_id=None):
        serializer = ProcessPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        period = BiweeklyPaymentService().process_payment(
            contract_id=contract_id,
            period_start=data["period_start"],
            period_end=data["period_end"],
            time_entry_ids=data["time_entry_ids"],
            actor=actor_from_request(request),
            notes=data["notes"],
        )
        return Response(PaymentPeriodSerializer(period).data)


class TimeEntryViewSet(viewsets.ViewSet):
    """Business review of logged time."""

    permission_classes = [IsAuthenticated]

    @extend_schema(operation_id="approve_time_entry", summary="Approve time entry", tags=["Escrow - Hourly"], request=None)
    @action(detail=True, methods=["post"])
    def approve(self, request, pk=None):
        entry = BiweeklyPaymentService().approve_time_entry(pk, actor_from_request(request))
        return Response(TimeEntrySerializer(entry).data)

    @extend_schema(
        operation_id="reject_time_entry",
        summary="Reject time entry",
        tags=["Escrow - Hourly"],
        request=RejectSerializer,
    )
    @action(detail=True, methods=["post"])
    def reject(self, request, pk=None):
        serializer = RejectSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        entry = BiweeklyPaymentService().reject_time_entry(
            pk, actor_from_request(request), reason=serializer.validated_data["reason"]
        )
        return Response(TimeEntrySerializer(entry).data)
