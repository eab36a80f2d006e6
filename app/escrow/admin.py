"""
Django admin configuration for escrow models.

Provides admin interfaces for:
- Escrow accounts with their milestones
- Disputes
- Ledger entries (read-only)
- Time entries and payment periods
- Payee accounts

State is changed only through the services, so FSM status fields and
balances are read-only here.
"""

from django.contrib import admin

from escrow.models import (
    Deliverable,
    DisputeCase,
    EscrowAccount,
    Milestone,
    PayeeAccount,
    PaymentPeriod,
    TimeEntry,
    Transaction,
)


class MilestoneInline(admin.TabularInline):
    model = Milestone
    extra = 0
    fields = ["position", "title", "amount_cents", "status", "due_date", "released_at"]
    readonly_fields = fields
    show_change_link = True


@admin.register(EscrowAccount)
class EscrowAccountAdmin(admin.ModelAdmin):
    """Admin interface for EscrowAccount."""

    list_display = [
        "id",
        "contract_id",
        "business_id",
        "talent_id",
        "status",
        "total_amount_cents",
        "released_amount_cents",
        "pending_amount_cents",
        "created_at",
    ]
    list_filter = ["status", "currency", "created_at"]
    search_fields = ["id", "contract_id", "business_id", "talent_id"]
    readonly_fields = [
        "status",
        "total_amount_cents",
        "released_amount_cents",
        "pending_amount_cents",
        "refunded_amount_cents",
        "funding_reference",
        "payment_method_ref",
        "funded_at",
        "completed_at",
        "cancelled_at",
        "created_at",
        "updated_at",
    ]
    inlines = [MilestoneInline]
    ordering = ["-created_at"]


class DeliverableInline(admin.TabularInline):
    model = Deliverable
    extra = 0
    readonly_fields = ["status", "submitted_at", "reviewed_at"]


@admin.register(Milestone)
class MilestoneAdmin(admin.ModelAdmin):
    list_display = ["id", "escrow_account", "position", "title", "amount_cents", "status"]
    list_filter = ["status"]
    search_fields = ["id", "title", "escrow_account__contract_id"]
    readonly_fields = ["status", "started_at", "submitted_at", "approved_at", "released_at", "closed_at"]
    raw_id_fields = ["escrow_account"]
    inlines = [DeliverableInline]


@admin.register(DisputeCase)
class DisputeCaseAdmin(admin.ModelAdmin):
    """Admin interface for disputes. Resolution goes through the API so payouts run."""

    list_display = [
        "id",
        "escrow_account",
        "milestone",
        "initiated_by",
        "status",
        "resolution",
        "created_at",
    ]
    list_filter = ["status", "resolution", "initiated_by"]
    search_fields = ["id", "reason", "escrow_account__contract_id"]
    readonly_fields = [
        "status",
        "resolution",
        "resolution_amount_cents",
        "refund_amount_cents",
        "release_amount_cents",
        "reviewed_by",
        "resolved_by",
        "review_started_at",
        "resolved_at",
    ]
    raw_id_fields = ["escrow_account", "milestone"]


@admin.register(Transaction)
class TransactionAdmin(admin.ModelAdmin):
    """
    Read-only view of the ledger.

    Entries are append-only; they cannot be added, edited or deleted here.
    """

    list_display = [
        "id",
        "type",
        "status",
        "amount_cents",
        "fee_amount_cents",
        "currency",
        "escrow_account",
        "contract_id",
        "created_at",
    ]
    list_filter = ["type", "status", "currency", "created_at"]
    search_fields = ["id", "idempotency_key", "processor_reference", "contract_id"]
    ordering = ["-created_at"]

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(TimeEntry)
class TimeEntryAdmin(admin.ModelAdmin):
    list_display = ["id", "contract_id", "talent_id", "work_date", "hours", "hourly_rate_cents", "status"]
    list_filter = ["status", "work_date"]
    search_fields = ["id", "contract_id", "talent_id", "business_id"]
    readonly_fields = ["status", "payment_period"]


@admin.register(PaymentPeriod)
class PaymentPeriodAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "contract_id",
        "period_start",
        "period_end",
        "total_amount_cents",
        "net_amount_cents",
        "status",
    ]
    list_filter = ["status", "period_start"]
    search_fields = ["id", "contract_id"]
    readonly_fields = [
        "status",
        "total_hours",
        "total_amount_cents",
        "platform_fee_cents",
        "processing_fee_cents",
        "tax_withholding_cents",
        "net_amount_cents",
        "paid_at",
    ]


@admin.register(PayeeAccount)
class PayeeAccountAdmin(admin.ModelAdmin):
    list_display = ["talent_id", "stripe_account_id", "payouts_enabled", "requires_tax_withholding"]
    list_filter = ["payouts_enabled", "requires_tax_withholding"]
    search_fields = ["talent_id", "stripe_account_id"]
