import uuid

import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Offer",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="When the row was inserted",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="When the row last changed",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Primary key, assigned before insert",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "client_id",
                    models.UUIDField(db_index=True, help_text="User paying for the service"),
                ),
                (
                    "provider_id",
                    models.UUIDField(db_index=True, help_text="User delivering the service"),
                ),
                (
                    "service_id",
                    models.UUIDField(blank=True, help_text="Service being booked", null=True),
                ),
                (
                    "price_minor",
                    models.PositiveBigIntegerField(
                        help_text="Agreed base price before fees, in minor units of currency"
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="USD", help_text="ISO 4217 currency code", max_length=3
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("accepted", "Accepted"),
                            ("declined", "Declined"),
                            ("cancelled", "Cancelled"),
                            ("expired", "Expired"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                (
                    "description",
                    models.CharField(blank=True, default="", max_length=255),
                ),
            ],
            options={
                "verbose_name": "Offer",
                "verbose_name_plural": "Offers",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="PlatformSetting",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="When the row was inserted",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="When the row last changed",
                    ),
                ),
                ("key", models.CharField(max_length=64, unique=True)),
                ("value", models.CharField(max_length=255)),
                (
                    "description",
                    models.CharField(blank=True, default="", max_length=255),
                ),
            ],
            options={
                "verbose_name": "Platform Setting",
                "verbose_name_plural": "Platform Settings",
                "ordering": ["key"],
            },
        ),
        migrations.CreateModel(
            name="ProviderPayoutProfile",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="When the row was inserted",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="When the row last changed",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Primary key, assigned before insert",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "provider_id",
                    models.UUIDField(help_text="Provider user id", unique=True),
                ),
                (
                    "merchant_id",
                    models.CharField(
                        blank=True,
                        help_text="Gateway merchant account id",
                        max_length=64,
                        null=True,
                    ),
                ),
                (
                    "payout_email",
                    models.EmailField(
                        blank=True,
                        help_text="Email address receiving payouts",
                        max_length=254,
                        null=True,
                    ),
                ),
                (
                    "onboarding_complete",
                    models.BooleanField(
                        default=False,
                        help_text="Whether merchant onboarding is complete and verified",
                    ),
                ),
            ],
            options={
                "verbose_name": "Provider Payout Profile",
                "verbose_name_plural": "Provider Payout Profiles",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Transaction",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="When the row was inserted",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="When the row last changed",
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Free-form context such as the payer approval URL",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Primary key, assigned before insert",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "client_id",
                    models.UUIDField(
                        db_index=True, help_text="Paying client, copied from the offer"
                    ),
                ),
                (
                    "provider_id",
                    models.UUIDField(
                        db_index=True,
                        help_text="Provider being paid, copied from the offer",
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="USD", help_text="ISO 4217 currency code", max_length=3
                    ),
                ),
                (
                    "amount_minor",
                    models.PositiveBigIntegerField(
                        help_text="Agreed base price, in minor units of currency"
                    ),
                ),
                (
                    "client_fee_minor",
                    models.PositiveBigIntegerField(
                        default=0,
                        help_text="Fee charged to the client on top of the base price, in minor units",
                    ),
                ),
                (
                    "platform_fee_minor",
                    models.PositiveBigIntegerField(
                        help_text="Fee withheld from the provider, in minor units"
                    ),
                ),
                (
                    "provider_net_minor",
                    models.PositiveBigIntegerField(
                        help_text="What the provider receives, in minor units"
                    ),
                ),
                (
                    "refunded_amount_minor",
                    models.PositiveBigIntegerField(
                        blank=True,
                        help_text="Amount returned to the client if refunded, in minor units",
                        null=True,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("escrow", "Escrow"),
                            ("provider_review", "Provider Review"),
                            ("completed", "Completed"),
                            ("refunded", "Refunded"),
                            ("declined", "Declined"),
                            ("disputed", "Disputed"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current state (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "settlement_strategy",
                    models.CharField(
                        choices=[
                            ("plain", "Plain Order"),
                            ("marketplace", "Marketplace Split"),
                        ],
                        default="plain",
                        max_length=20,
                    ),
                ),
                (
                    "payee_merchant_id",
                    models.CharField(
                        blank=True,
                        help_text="Provider merchant id for marketplace orders",
                        max_length=64,
                        null=True,
                    ),
                ),
                (
                    "requires_manual_settlement",
                    models.BooleanField(
                        default=False,
                        help_text="No payout destination was known at checkout",
                    ),
                ),
                (
                    "status_reason",
                    models.TextField(
                        blank=True,
                        default="",
                        help_text="Reason given for a decline, dispute or refund",
                    ),
                ),
                (
                    "gateway_order_id",
                    models.CharField(blank=True, max_length=64, null=True),
                ),
                (
                    "gateway_capture_id",
                    models.CharField(blank=True, max_length=64, null=True),
                ),
                (
                    "gateway_payout_id",
                    models.CharField(blank=True, max_length=64, null=True),
                ),
                (
                    "gateway_refund_id",
                    models.CharField(blank=True, max_length=64, null=True),
                ),
                (
                    "payout_status",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Last known status of the payout batch (plain orders only)",
                        max_length=32,
                    ),
                ),
                (
                    "payout_checked_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the payout status was last read from the gateway",
                        null=True,
                    ),
                ),
                ("escrow_start", models.DateTimeField(blank=True, null=True)),
                (
                    "escrow_end",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="Review deadline; funds release automatically after it",
                        null=True,
                    ),
                ),
                ("review_started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("declined_at", models.DateTimeField(blank=True, null=True)),
                ("disputed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "settlement_claimed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Set while a worker is moving money for this transaction",
                        null=True,
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1, help_text="Incremented by every persisted transition"
                    ),
                ),
                (
                    "offer",
                    models.OneToOneField(
                        help_text="Offer this transaction settles",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transaction",
                        to="settlement.offer",
                    ),
                ),
            ],
            options={
                "verbose_name": "Transaction",
                "verbose_name_plural": "Transactions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "escrow_end"],
                        name="tx_status_escrow_end_idx",
                    ),
                    models.Index(
                        fields=["status", "created_at"],
                        name="tx_status_created_idx",
                    ),
                    models.Index(
                        fields=["provider_id", "status"],
                        name="tx_provider_status_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            (
                                "amount_minor",
                                models.F("provider_net_minor") + models.F("platform_fee_minor"),
                            )
                        ),
                        name="transaction_fee_split_conserved",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("escrow_end__isnull", True),
                            ("escrow_start__isnull", True),
                            ("escrow_end__gte", models.F("escrow_start")),
                            _connector="OR",
                        ),
                        name="transaction_escrow_end_after_start",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("gateway_capture_id__isnull", False)),
                        fields=("gateway_capture_id",),
                        name="transaction_unique_capture_id",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("gateway_order_id__isnull", False)),
                        fields=("gateway_order_id",),
                        name="transaction_unique_order_id",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SettlementParty",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="When the row was inserted",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="When the row last changed",
                    ),
                ),
                (
                    "user",
                    models.OneToOneField(
                        help_text="User this party id belongs to",
                        on_delete=django.db.models.deletion.CASCADE,
                        primary_key=True,
                        related_name="settlement_party",
                        serialize=False,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "party_id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        help_text="Id used as client_id / provider_id on offers and transactions",
                        unique=True,
                    ),
                ),
            ],
            options={
                "verbose_name": "Settlement Party",
                "verbose_name_plural": "Settlement Parties",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="GatewayWebhookEvent",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="When the row was inserted",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="When the row last changed",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Primary key, assigned before insert",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "event_id",
                    models.CharField(
                        help_text="Gateway event id (WH-...), unique for idempotency",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        db_index=True,
                        help_text="Gateway event type, e.g. PAYMENT.CAPTURE.COMPLETED",
                        max_length=100,
                    ),
                ),
                ("payload", models.JSONField(help_text="Webhook body as delivered")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, default="")),
                (
                    "retry_count",
                    models.PositiveSmallIntegerField(
                        default=0, help_text="Number of processing attempts"
                    ),
                ),
            ],
            options={
                "verbose_name": "Gateway Webhook Event",
                "verbose_name_plural": "Gateway Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"],
                        name="webhook_status_created_idx",
                    ),
                    models.Index(
                        fields=["event_type", "created_at"],
                        name="webhook_type_created_idx",
                    ),
                ],
            },
        ),
    ]
