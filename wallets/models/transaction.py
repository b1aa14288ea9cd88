import uuid

from django.db import models
from django.db.models import Q

from wallets.exceptions import ImmutableTransactionError
from wallets.models.base import BaseModel
from wallets.models.wallet import Wallet


class WalletTransactionQuerySet(models.QuerySet):
    """Ledger rows can be appended and read, nothing else."""

    def update(self, **kwargs):
        raise ImmutableTransactionError("Wallet transactions cannot be updated.")

    def delete(self):
        raise ImmutableTransactionError("Wallet transactions cannot be deleted.")


class WalletTransaction(BaseModel):
    """
    Append-only ledger entry for a single balance movement.

    `amount` is always positive; the direction is carried by `type`.
    `balance_after` records the wallet balance right after this entry was
    applied, so any stored entry can reproduce the result it returned.
    `sequence` numbers the entries of one wallet in the order they were
    appended and breaks ties between entries sharing a timestamp.
    """

    class Type(models.TextChoices):
        CREDIT = "credit", "Credit"
        DEBIT = "debit", "Debit"

    DEFAULT_DESCRIPTIONS = {
        Type.CREDIT: "Wallet top-up",
        Type.DEBIT: "Wallet deduction",
    }

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    wallet = models.ForeignKey(
        Wallet,
        on_delete=models.PROTECT,
        related_name="transactions",
        db_column="user_id",
    )
    sequence = models.PositiveBigIntegerField(
        editable=False,
        help_text="Position of the entry within its wallet's ledger, starting at 1.",
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    type = models.CharField(max_length=6, choices=Type.choices)
    description = models.TextField(blank=True)
    reference_id = models.CharField(max_length=64, db_index=True)
    balance_after = models.DecimalField(max_digits=12, decimal_places=2)
    idempotency_key = models.CharField(
        max_length=64,
        unique=True,
        null=True,
        blank=True,
        editable=False,
        help_text="Client-supplied key; a repeated key replays the original result.",
    )

    objects = WalletTransactionQuerySet.as_manager()

    class Meta(BaseModel.Meta):
        ordering = ["-created_at", "-sequence"]
        constraints = [
            models.UniqueConstraint(
                fields=["wallet", "sequence"],
                name="uniq_wallet_sequence",
            ),
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="wallet_transaction_amount_positive",
            ),
            models.CheckConstraint(
                condition=Q(type__in=["credit", "debit"]),
                name="wallet_transaction_type_valid",
            ),
        ]
        indexes = [
            models.Index(fields=["wallet", "created_at"], name="idx_wallet_created"),
        ]

    def __str__(self):
        return f"WalletTransaction {self.id} | {self.type} | {self.amount}"

    @property
    def user_id(self):
        return self.wallet_id

    @property
    def signed_amount(self):
        return self.amount if self.type == self.Type.CREDIT else -self.amount

    @classmethod
    def default_description(cls, type):
        return cls.DEFAULT_DESCRIPTIONS[type]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableTransactionError(
                f"Wallet transaction {self.id} is immutable."
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableTransactionError(
            f"Wallet transaction {self.id} cannot be deleted."
        )
