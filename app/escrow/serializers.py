"""
Serializers for the escrow API.

Serializer Hierarchy:
    Read:
        EscrowAccountSerializer (with MilestoneSerializer / DeliverableSerializer)
        TransactionSerializer, DisputeSerializer
        TimeEntrySerializer, PaymentPeriodSerializer
        EscrowSummarySerializer, PeriodSummarySerializer

    Write:
        EscrowCreateSerializer, FundSerializer, CancelSerializer
        MilestoneCreateSerializer, MilestoneUpdateSerializer
        DeliverableCreateSerializer, SubmitSerializer, ApproveSerializer,
        RejectSerializer, DisputeCreateSerializer, ResolveSerializer
        TimeEntryCreateSerializer, ProcessPaymentSerializer

Design Decisions:
    - Read and write serializers are separate
    - Gateway ids (funding_reference, processor_reference) and ledger
      metadata are never serialized
    - Enum inputs are case-insensitive
"""

from __future__ import annotations

from rest_framework import serializers

from escrow.ledger.models import Transaction
from escrow.models import (
    Deliverable,
    DisputeCase,
    EscrowAccount,
    Milestone,
    PaymentPeriod,
    TimeEntry,
)
from escrow.services import MilestoneSpec
from escrow.state_machines import DisputeResolution


class CaseInsensitiveChoiceField(serializers.ChoiceField):
    """ChoiceField that accepts enum values in any case."""

    def to_internal_value(self, data):
        if isinstance(data, str):
            data = data.lower()
        return super().to_internal_value(data)


# =============================================================================
# Read Serializers
# =============================================================================


class DeliverableSerializer(serializers.ModelSerializer):
    class Meta:
        model = Deliverable
        fields = [
            "id",
            "title",
            "description",
            "file_ref",
            "file_name",
            "status",
            "rejection_reason",
            "submitted_at",
            "reviewed_at",
            "created_at",
        ]
        read_only_fields = fields


class MilestoneSerializer(serializers.ModelSerializer):
    deliverables = DeliverableSerializer(many=True, read_only=True)
    percentage = serializers.DecimalField(max_digits=5, decimal_places=2, read_only=True)
    is_closed = serializers.BooleanField(read_only=True)

    class Meta:
        model = Milestone
        fields = [
            "id",
            "position",
            "title",
            "description",
            "amount_cents",
            "percentage",
            "due_date",
            "status",
            "is_closed",
            "submission_notes",
            "approval_notes",
            "rejection_reason",
            "started_at",
            "submitted_at",
            "approved_at",
            "released_at",
            "closed_at",
            "deliverables",
        ]
        read_only_fields = fields


class EscrowAccountSerializer(serializers.ModelSerializer):
    milestones = MilestoneSerializer(many=True, read_only=True)

    class Meta:
        model = EscrowAccount
        fields = [
            "id",
            "contract_id",
            "business_id",
            "talent_id",
            "currency",
            "total_amount_cents",
            "released_amount_cents",
            "pending_amount_cents",
            "refunded_amount_cents",
            "status",
            "funded_at",
            "completed_at",
            "cancelled_at",
            "cancellation_reason",
            "created_at",
            "milestones",
        ]
        read_only_fields = fields


class TransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Transaction
        fields = [
            "id",
            "type",
            "status",
            "amount_cents",
            "net_amount_cents",
            "fee_amount_cents",
            "tax_amount_cents",
            "currency",
            "milestone",
            "dispute",
            "payment_period",
            "description",
            "created_at",
            "completed_at",
            "failed_at",
        ]
        read_only_fields = fields


class DisputeSerializer(serializers.ModelSerializer):
    escrow_account = serializers.UUIDField(source="escrow_account_id", read_only=True)
    milestone = serializers.UUIDField(source="milestone_id", read_only=True)

    class Meta:
        model = DisputeCase
        fields = [
            "id",
            "escrow_account",
            "milestone",
            "initiated_by",
            "reason",
            "description",
            "status",
            "resolution",
            "resolution_amount_cents",
            "refund_amount_cents",
            "release_amount_cents",
            "admin_notes",
            "review_started_at",
            "resolved_at",
            "created_at",
        ]
        read_only_fields = fields


class TimeEntrySerializer(serializers.ModelSerializer):
    amount_cents = serializers.IntegerField(read_only=True)

    class Meta:
        model = TimeEntry
        fields = [
            "id",
            "contract_id",
            "business_id",
            "talent_id",
            "work_date",
            "hours",
            "hourly_rate_cents",
            "amount_cents",
            "description",
            "status",
            "rejection_reason",
            "payment_period",
            "created_at",
        ]
        read_only_fields = fields


class PaymentPeriodSerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentPeriod
        fields = [
            "id",
            "contract_id",
            "period_start",
            "period_end",
            "total_hours",
            "total_amount_cents",
            "platform_fee_cents",
            "processing_fee_cents",
            "tax_withholding_cents",
            "net_amount_cents",
            "status",
            "notes",
            "paid_at",
            "created_at",
        ]
        read_only_fields = fields


class EscrowSummarySerializer(serializers.Serializer):
    escrow_id = serializers.UUIDField()
    status = serializers.CharField()
    currency = serializers.CharField()
    total_cents = serializers.IntegerField()
    released_cents = serializers.IntegerField()
    pending_cents = serializers.IntegerField()
    released_to_talent_cents = serializers.IntegerField()
    refunded_cents = serializers.IntegerField()
    disputed_cents = serializers.IntegerField()
    fees_collected_cents = serializers.IntegerField()
    net_paid_to_talent_cents = serializers.IntegerField()
    milestone_count = serializers.IntegerField()
    settled_milestone_count = serializers.IntegerField()
    completion_percentage = serializers.DecimalField(max_digits=5, decimal_places=2)


class FeeBreakdownSerializer(serializers.Serializer):
    gross_cents = serializers.IntegerField()
    platform_fee_cents = serializers.IntegerField()
    processing_fee_cents = serializers.IntegerField()
    tax_withholding_cents = serializers.IntegerField()
    net_cents = serializers.IntegerField()
    total_fees_cents = serializers.IntegerField()


class PeriodSummarySerializer(serializers.Serializer):
    contract_id = serializers.CharField()
    period_start = serializers.DateField()
    period_end = serializers.DateField()
    entries = TimeEntrySerializer(many=True)
    total_hours = serializers.DecimalField(max_digits=8, decimal_places=2)
    gross_cents = serializers.IntegerField()
    fees = FeeBreakdownSerializer(allow_null=True)
    already_paid = serializers.BooleanField()


# =============================================================================
# Write Serializers
# =============================================================================


class MilestoneCreateSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255)
    amount_cents = serializers.IntegerField(min_value=1)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    due_date = serializers.DateField(required=False, allow_null=True, default=None)


class MilestoneUpdateSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255, required=False)
    amount_cents = serializers.IntegerField(min_value=1, required=False)
    description = serializers.CharField(required=False, allow_blank=True)
    due_date = serializers.DateField(required=False, allow_null=True)


class EscrowCreateSerializer(serializers.Serializer):
    """
    Fields:
        contract_id: External contract identifier
        business_id: Defaults to the requesting user
        talent_id: Identity of the talent
        milestones: At least one milestone
    """

    contract_id = serializers.CharField(max_length=64)
    business_id = serializers.CharField(max_length=64, required=False)
    talent_id = serializers.CharField(max_length=64)
    currency = serializers.CharField(max_length=3, required=False)
    milestones = MilestoneCreateSerializer(many=True, allow_empty=False)

    def milestone_specs(self) -> list[MilestoneSpec]:
        return [MilestoneSpec(**item) for item in self.validated_data["milestones"]]


class FundSerializer(serializers.Serializer):
    payment_method_ref = serializers.CharField(max_length=255)
    idempotency_key = serializers.CharField(max_length=255, required=False)


class CancelSerializer(serializers.Serializer):
    reason = serializers.CharField()


class DeliverableCreateSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    file_ref = serializers.CharField(max_length=500, required=False, allow_null=True, default=None)
    file_name = serializers.CharField(max_length=255, required=False, allow_null=True, default=None)


class SubmitSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True, default=None)


class ApproveSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True, default=None)


class RejectSerializer(serializers.Serializer):
    reason = serializers.CharField()


class DisputeCreateSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default="")


class ResolveSerializer(serializers.Serializer):
    resolution = CaseInsensitiveChoiceField(choices=DisputeResolution.choices)
    resolution_amount = serializers.IntegerField(min_value=0, required=False, allow_null=True, default=None)
    admin_notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if attrs["resolution"] == DisputeResolution.PARTIAL_SPLIT and attrs.get("resolution_amount") is None:
            raise serializers.ValidationError({"resolution_amount": "Required for a partial split."})
        return attrs


class TimeEntryCreateSerializer(serializers.Serializer):
    business_id = serializers.CharField(max_length=64)
    talent_id = serializers.CharField(max_length=64, required=False)
    work_date = serializers.DateField()
    hours = serializers.DecimalField(max_digits=5, decimal_places=2)
    hourly_rate_cents = serializers.IntegerField(min_value=1)
    description = serializers.CharField(required=False, allow_blank=True, default="")


class ProcessPaymentSerializer(serializers.Serializer):
    period_start = serializers.DateField()
    period_end = serializers.DateField()
    time_entry_ids = serializers.ListField(child=serializers.UUIDField(), allow_empty=False)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True, default=None)
