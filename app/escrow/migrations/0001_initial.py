import uuid
from decimal import Decimal

import django.db.models.deletion
import django_fsm
from django.db import migrations, models

import escrow.models.escrow_account


def uuid_pk():
    return models.UUIDField(
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
        primary_key=True,
        serialize=False,
    )


def timestamps():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True, db_index=True, help_text="Timestamp when this record was created"
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified"),
        ),
    ]


MILESTONE_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("in_progress", "In Progress"),
    ("submitted", "Submitted"),
    ("approved", "Approved"),
    ("rejected", "Rejected"),
    ("disputed", "Disputed"),
    ("released", "Released"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="EscrowAccount",
            fields=[
                ("id", uuid_pk()),
                *timestamps(),
                ("contract_id", models.CharField(max_length=64, unique=True)),
                ("business_id", models.CharField(db_index=True, max_length=64)),
                ("talent_id", models.CharField(db_index=True, max_length=64)),
                (
                    "currency",
                    models.CharField(default=escrow.models.escrow_account.default_currency, max_length=3),
                ),
                ("total_amount_cents", models.PositiveBigIntegerField()),
                ("released_amount_cents", models.PositiveBigIntegerField(default=0)),
                ("pending_amount_cents", models.PositiveBigIntegerField(default=0)),
                ("refunded_amount_cents", models.PositiveBigIntegerField(default=0)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("created", "Created"),
                            ("funded", "Funded"),
                            ("partially_released", "Partially Released"),
                            ("completed", "Completed"),
                            ("disputed", "Disputed"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="created",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("payment_method_ref", models.CharField(blank=True, max_length=255, null=True)),
                (
                    "funding_reference",
                    models.CharField(
                        blank=True,
                        help_text="Gateway id of the funding capture (internal only)",
                        max_length=255,
                        null=True,
                    ),
                ),
                ("funded_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.TextField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Escrow Account",
                "verbose_name_plural": "Escrow Accounts",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["business_id", "status"], name="escrow_acct_business_status"),
                    models.Index(fields=["talent_id", "status"], name="escrow_acct_talent_status"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(total_amount_cents__gt=0),
                        name="escrow_total_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            total_amount_cents=models.F("released_amount_cents") + models.F("pending_amount_cents")
                        ),
                        name="escrow_balances_sum_to_total",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(refunded_amount_cents__lte=models.F("released_amount_cents")),
                        name="escrow_refunded_within_released",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Milestone",
            fields=[
                ("id", uuid_pk()),
                *timestamps(),
                ("position", models.PositiveIntegerField(default=0)),
                ("title", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                ("amount_cents", models.PositiveBigIntegerField()),
                ("due_date", models.DateField(blank=True, null=True)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=MILESTONE_STATUS_CHOICES,
                        db_index=True,
                        default="pending",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "status_before_dispute",
                    models.CharField(blank=True, choices=MILESTONE_STATUS_CHOICES, max_length=32, null=True),
                ),
                ("submission_notes", models.TextField(blank=True, null=True)),
                ("approval_notes", models.TextField(blank=True, null=True)),
                ("rejection_reason", models.TextField(blank=True, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("submitted_at", models.DateTimeField(blank=True, null=True)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("rejected_at", models.DateTimeField(blank=True, null=True)),
                ("disputed_at", models.DateTimeField(blank=True, null=True)),
                ("released_at", models.DateTimeField(blank=True, null=True)),
                ("closed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "escrow_account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="milestones",
                        to="escrow.escrowaccount",
                    ),
                ),
            ],
            options={
                "verbose_name": "Milestone",
                "verbose_name_plural": "Milestones",
                "ordering": ["position", "created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(amount_cents__gt=0),
                        name="milestone_amount_positive",
                    ),
                    models.UniqueConstraint(
                        fields=("escrow_account", "position"),
                        name="milestone_unique_position",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Deliverable",
            fields=[
                ("id", uuid_pk()),
                *timestamps(),
                ("title", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                ("file_ref", models.CharField(blank=True, max_length=500, null=True)),
                ("file_name", models.CharField(blank=True, max_length=255, null=True)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("submitted", "Submitted"),
                            ("approved", "Approved"),
                            ("rejected", "Rejected"),
                        ],
                        default="pending",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("rejection_reason", models.TextField(blank=True, null=True)),
                ("submitted_at", models.DateTimeField(blank=True, null=True)),
                ("reviewed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "milestone",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="deliverables",
                        to="escrow.milestone",
                    ),
                ),
            ],
            options={
                "verbose_name": "Deliverable",
                "verbose_name_plural": "Deliverables",
                "ordering": ["created_at"],
            },
        ),
        migrations.CreateModel(
            name="DisputeCase",
            fields=[
                ("id", uuid_pk()),
                *timestamps(),
                (
                    "initiated_by",
                    models.CharField(choices=[("business", "Business"), ("talent", "Talent")], max_length=16),
                ),
                ("initiator_id", models.CharField(max_length=64)),
                ("reason", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[("open", "Open"), ("under_review", "Under Review"), ("resolved", "Resolved")],
                        db_index=True,
                        default="open",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "resolution",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("refund_business", "Refund Business"),
                            ("release_talent", "Release to Talent"),
                            ("partial_split", "Partial Split"),
                        ],
                        max_length=32,
                        null=True,
                    ),
                ),
                ("resolution_amount_cents", models.PositiveBigIntegerField(blank=True, null=True)),
                ("refund_amount_cents", models.PositiveBigIntegerField(default=0)),
                ("release_amount_cents", models.PositiveBigIntegerField(default=0)),
                ("admin_notes", models.TextField(blank=True, default="")),
                ("reviewed_by", models.CharField(blank=True, max_length=64, null=True)),
                ("resolved_by", models.CharField(blank=True, max_length=64, null=True)),
                ("review_started_at", models.DateTimeField(blank=True, null=True)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                (
                    "escrow_account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="disputes",
                        to="escrow.escrowaccount",
                    ),
                ),
                (
                    "milestone",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="disputes",
                        to="escrow.milestone",
                    ),
                ),
            ],
            options={
                "verbose_name": "Dispute",
                "verbose_name_plural": "Disputes",
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "resolved"), _negated=True),
                        fields=("milestone",),
                        name="dispute_one_unresolved_per_milestone",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PayeeAccount",
            fields=[
                ("id", uuid_pk()),
                *timestamps(),
                ("talent_id", models.CharField(max_length=64, unique=True)),
                ("stripe_account_id", models.CharField(max_length=255, unique=True)),
                ("payouts_enabled", models.BooleanField(default=False)),
                ("requires_tax_withholding", models.BooleanField(default=False)),
                ("tax_withholding_rate_bps", models.PositiveIntegerField(default=0)),
            ],
            options={
                "verbose_name": "Payee Account",
                "verbose_name_plural": "Payee Accounts",
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(tax_withholding_rate_bps__lte=10000),
                        name="payee_withholding_rate_max_100_percent",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentPeriod",
            fields=[
                ("id", uuid_pk()),
                *timestamps(),
                ("contract_id", models.CharField(db_index=True, max_length=64)),
                ("business_id", models.CharField(max_length=64)),
                ("talent_id", models.CharField(max_length=64)),
                ("period_start", models.DateField()),
                ("period_end", models.DateField()),
                ("total_hours", models.DecimalField(decimal_places=2, default=Decimal("0"), max_digits=8)),
                ("total_amount_cents", models.PositiveBigIntegerField(default=0)),
                ("platform_fee_cents", models.PositiveBigIntegerField(default=0)),
                ("processing_fee_cents", models.PositiveBigIntegerField(default=0)),
                ("tax_withholding_cents", models.PositiveBigIntegerField(default=0)),
                ("net_amount_cents", models.PositiveBigIntegerField(default=0)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[("open", "Open"), ("processing", "Processing"), ("paid", "Paid")],
                        db_index=True,
                        default="open",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("notes", models.TextField(blank=True, null=True)),
                ("processed_by", models.CharField(blank=True, max_length=64, null=True)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Payment Period",
                "verbose_name_plural": "Payment Periods",
                "ordering": ["-period_start"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("contract_id", "period_start", "period_end"),
                        name="payment_period_unique_range",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(period_end__gte=models.F("period_start")),
                        name="payment_period_valid_range",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="TimeEntry",
            fields=[
                ("id", uuid_pk()),
                *timestamps(),
                ("contract_id", models.CharField(db_index=True, max_length=64)),
                ("business_id", models.CharField(max_length=64)),
                ("talent_id", models.CharField(max_length=64)),
                ("work_date", models.DateField()),
                ("hours", models.DecimalField(decimal_places=2, max_digits=5)),
                ("hourly_rate_cents", models.PositiveIntegerField()),
                ("description", models.TextField(blank=True, default="")),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("approved", "Approved"),
                            ("rejected", "Rejected"),
                            ("settled", "Settled"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("rejection_reason", models.TextField(blank=True, null=True)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("rejected_at", models.DateTimeField(blank=True, null=True)),
                ("settled_at", models.DateTimeField(blank=True, null=True)),
                (
                    "payment_period",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="time_entries",
                        to="escrow.paymentperiod",
                    ),
                ),
            ],
            options={
                "verbose_name": "Time Entry",
                "verbose_name_plural": "Time Entries",
                "ordering": ["work_date", "created_at"],
                "indexes": [
                    models.Index(fields=["contract_id", "status", "work_date"], name="time_entry_contract_status"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(hours__gt=0) & models.Q(hours__lte=24),
                        name="time_entry_hours_in_day",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Transaction",
            fields=[
                ("id", uuid_pk()),
                *timestamps(),
                (
                    "metadata",
                    models.JSONField(blank=True, default=dict, help_text="Flexible key-value metadata storage"),
                ),
                ("contract_id", models.CharField(db_index=True, max_length=64)),
                (
                    "type",
                    models.CharField(
                        choices=[
                            ("funding", "Funding"),
                            ("milestone_release", "Milestone Release"),
                            ("biweekly_payment", "Biweekly Payment"),
                            ("refund", "Refund"),
                            ("fee", "Fee"),
                            ("dispute_settlement", "Dispute Settlement"),
                        ],
                        db_index=True,
                        max_length=32,
                    ),
                ),
                (
                    "amount_cents",
                    models.BigIntegerField(help_text="Signed amount in cents from the escrow's point of view"),
                ),
                ("net_amount_cents", models.BigIntegerField(default=0)),
                ("fee_amount_cents", models.BigIntegerField(default=0)),
                ("tax_amount_cents", models.BigIntegerField(default=0)),
                ("currency", models.CharField(default="cad", max_length=3)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed")],
                        db_index=True,
                        default="pending",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "processor_reference",
                    models.CharField(
                        blank=True,
                        help_text="Gateway transaction id (internal only)",
                        max_length=255,
                        null=True,
                    ),
                ),
                ("idempotency_key", models.CharField(max_length=255, unique=True)),
                ("description", models.CharField(blank=True, default="", max_length=255)),
                ("created_by", models.CharField(blank=True, max_length=100, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True, null=True)),
                (
                    "escrow_account",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="escrow.escrowaccount",
                    ),
                ),
                (
                    "milestone",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="escrow.milestone",
                    ),
                ),
                (
                    "dispute",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="escrow.disputecase",
                    ),
                ),
                (
                    "payment_period",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="escrow.paymentperiod",
                    ),
                ),
            ],
            options={
                "verbose_name": "Transaction",
                "verbose_name_plural": "Transactions",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["escrow_account", "type", "status"], name="ledger_tx_account_type_status"),
                    models.Index(fields=["status", "created_at"], name="ledger_tx_status_created"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents", 0), _negated=True),
                        name="transaction_amount_non_zero",
                    ),
                ],
            },
        ),
    ]
