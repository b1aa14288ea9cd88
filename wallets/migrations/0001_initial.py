import decimal
import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Wallet",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user_id",
                    models.UUIDField(editable=False, primary_key=True, serialize=False),
                ),
                (
                    "balance",
                    models.DecimalField(
                        decimal_places=2, default=decimal.Decimal("0.00"), max_digits=12
                    ),
                ),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "abstract": False,
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("balance__gte", 0)),
                        name="wallet_balance_non_negative",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="WalletTransaction",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "sequence",
                    models.PositiveBigIntegerField(
                        editable=False,
                        help_text="Position of the entry within its wallet's ledger, starting at 1.",
                    ),
                ),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                (
                    "type",
                    models.CharField(
                        choices=[("credit", "Credit"), ("debit", "Debit")],
                        max_length=6,
                    ),
                ),
                ("description", models.TextField(blank=True)),
                ("reference_id", models.CharField(db_index=True, max_length=64)),
                (
                    "balance_after",
                    models.DecimalField(decimal_places=2, max_digits=12),
                ),
                (
                    "idempotency_key",
                    models.CharField(
                        blank=True,
                        editable=False,
                        help_text="Client-supplied key; a repeated key replays the original result.",
                        max_length=64,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "wallet",
                    models.ForeignKey(
                        db_column="user_id",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="wallets.wallet",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-sequence"],
                "abstract": False,
                "indexes": [
                    models.Index(
                        fields=["wallet", "created_at"], name="idx_wallet_created"
                    )
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("wallet", "sequence"), name="uniq_wallet_sequence"
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="wallet_transaction_amount_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("type__in", ["credit", "debit"])),
                        name="wallet_transaction_type_valid",
                    ),
                ],
            },
        ),
    ]
