import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from django.db import IntegrityError, transaction
from django.db.models import Case, Count, DecimalField, F, Max, Sum, Value, When
from django.db.models.functions import Coalesce

from wallets.exceptions import (
    BalanceLimitExceeded,
    IdempotencyConflict,
    InsufficientFunds,
    InvalidTransactionType,
)
from wallets.models import Wallet, WalletTransaction

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

_balance_field = Wallet._meta.get_field("balance")
# Smallest balance that no longer fits the balance column
BALANCE_LIMIT = Decimal(10) ** (_balance_field.max_digits - _balance_field.decimal_places)


@dataclass(frozen=True)
class TransactionResult:
    transaction_id: uuid.UUID
    user_id: uuid.UUID
    previous_balance: Decimal
    new_balance: Decimal
    amount: Decimal
    type: str
    description: str
    reference_id: str
    created_at: datetime

    @classmethod
    def from_transaction(cls, tx: WalletTransaction) -> "TransactionResult":
        return cls(
            transaction_id=tx.id,
            user_id=tx.wallet_id,
            previous_balance=tx.balance_after - tx.signed_amount,
            new_balance=tx.balance_after,
            amount=tx.amount,
            type=tx.type,
            description=tx.description,
            reference_id=tx.reference_id,
            created_at=tx.created_at,
        )


@dataclass(frozen=True)
class ReconciliationReport:
    user_id: uuid.UUID
    balance: Decimal
    ledger_total: Decimal
    transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return self.balance == self.ledger_total


def _normalize_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError("Amount must be a positive number.")

    if not value.is_finite() or value <= 0:
        raise ValueError("Amount must be a positive number.")
    if value != value.quantize(CENT):
        raise ValueError("Amount must not have more than 2 decimal places.")
    return value.quantize(CENT)


def _find_by_idempotency_key(key):
    return WalletTransaction.objects.filter(idempotency_key=key).first()


class LedgerService:
    """
    Applies balance mutations to wallets.

    Each mutation runs in a single database transaction holding a row-level
    lock on the user's wallet (select_for_update), so the read-modify-write
    of the balance and the ledger append for one user never interleave while
    other users' wallets proceed in parallel. Any failure rolls back both the
    balance and the ledger.
    """

    @staticmethod
    @transaction.atomic
    def apply_transaction(
        user_id,
        amount,
        type: str,
        description: str = None,
        reference_id: str = None,
        idempotency_key: str = None,
    ) -> TransactionResult:
        """
        Credit or debit the user's wallet and append the ledger entry.

        Args:
            user_id: Identity-provider id of the wallet owner.
            amount: Positive amount with at most two decimal places.
            type: "credit" or "debit".
            description: Optional memo; defaults per type.
            reference_id: Optional correlation id; a UUID4 is generated if omitted.
            idempotency_key: Optional key; a repeat returns the stored result.

        Returns:
            The TransactionResult of the applied (or replayed) transaction.

        Raises:
            InvalidTransactionType: If type is not credit or debit.
            InsufficientFunds: If a debit exceeds the current balance.
            BalanceLimitExceeded: If a credit would overflow the balance column.
            IdempotencyConflict: If the key was used with other parameters.
            ValueError: If amount is not a positive two-decimal number.
        """
        if type not in WalletTransaction.Type.values:
            logger.warning(
                "Rejected wallet mutation: user=%s invalid type=%r", user_id, type
            )
            raise InvalidTransactionType(type)

        amount = _normalize_amount(amount)

        # Lock (or open) the wallet row; held until the atomic block exits
        wallet, created = Wallet.objects.select_for_update().get_or_create(
            user_id=user_id
        )
        if created:
            logger.info("Wallet opened: user=%s", user_id)

        if idempotency_key:
            existing_tx = _find_by_idempotency_key(idempotency_key)
            if existing_tx:
                if (
                    str(existing_tx.wallet_id) != str(wallet.user_id)
                    or existing_tx.amount != amount
                    or existing_tx.type != type
                ):
                    logger.warning(
                        "Idempotency conflict: key=%s existing_tx=%s user=%s",
                        idempotency_key,
                        existing_tx.id,
                        user_id,
                    )
                    raise IdempotencyConflict(idempotency_key)

                logger.info(
                    "Idempotent wallet mutation replayed: key=%s tx=%s",
                    idempotency_key,
                    existing_tx.id,
                )
                return TransactionResult.from_transaction(existing_tx)

        previous_balance = wallet.balance
        if type == WalletTransaction.Type.CREDIT:
            new_balance = previous_balance + amount
        else:
            new_balance = previous_balance - amount

        if new_balance < 0:
            logger.warning(
                "Insufficient funds: user=%s balance=%s debit=%s",
                user_id,
                previous_balance,
                amount,
            )
            raise InsufficientFunds(previous_balance, amount)

        if new_balance >= BALANCE_LIMIT:
            logger.warning(
                "Balance limit exceeded: user=%s balance=%s credit=%s",
                user_id,
                previous_balance,
                amount,
            )
            raise BalanceLimitExceeded(previous_balance, amount, BALANCE_LIMIT)

        # The row lock makes the computed value safe to write as-is
        wallet.balance = new_balance
        wallet.save(update_fields=["balance", "updated_at"])

        last_sequence = wallet.transactions.aggregate(last=Max("sequence"))["last"]

        try:
            with transaction.atomic():
                tx = WalletTransaction.objects.create(
                    wallet=wallet,
                    sequence=(last_sequence or 0) + 1,
                    amount=amount,
                    type=type,
                    description=description
                    or WalletTransaction.default_description(type),
                    reference_id=reference_id or str(uuid.uuid4()),
                    balance_after=wallet.balance,
                    idempotency_key=idempotency_key,
                )
        except IntegrityError:
            # Another wallet committed the same key after our lookup
            if idempotency_key and WalletTransaction.objects.filter(
                idempotency_key=idempotency_key
            ).exists():
                logger.warning(
                    "Idempotency conflict on insert: key=%s user=%s",
                    idempotency_key,
                    user_id,
                )
                raise IdempotencyConflict(idempotency_key)
            raise

        logger.info(
            "Wallet %s applied: user=%s amount=%s previous_balance=%s new_balance=%s tx=%s reference=%s",
            type,
            user_id,
            amount,
            previous_balance,
            wallet.balance,
            tx.id,
            tx.reference_id,
        )
        return TransactionResult(
            transaction_id=tx.id,
            user_id=wallet.user_id,
            previous_balance=previous_balance,
            new_balance=wallet.balance,
            amount=tx.amount,
            type=tx.type,
            description=tx.description,
            reference_id=tx.reference_id,
            created_at=tx.created_at,
        )

    @staticmethod
    @transaction.atomic
    def reconcile(user_id) -> ReconciliationReport:
        """
        Replay the user's ledger and compare it with the stored balance.

        The wallet row stays locked while the ledger is summed, so a mutation
        cannot commit between the two reads.
        """
        wallet = Wallet.objects.select_for_update().get(user_id=user_id)

        zero = Value(Decimal("0.00"), output_field=DecimalField(max_digits=14, decimal_places=2))
        totals = WalletTransaction.objects.filter(wallet=wallet).aggregate(
            ledger_total=Coalesce(
                Sum(
                    Case(
                        When(type=WalletTransaction.Type.CREDIT, then=F("amount")),
                        When(type=WalletTransaction.Type.DEBIT, then=-F("amount")),
                        output_field=DecimalField(max_digits=14, decimal_places=2),
                    )
                ),
                zero,
            ),
            transaction_count=Count("id"),
        )

        report = ReconciliationReport(
            user_id=wallet.user_id,
            balance=wallet.balance,
            ledger_total=Decimal(totals["ledger_total"]).quantize(CENT),
            transaction_count=totals["transaction_count"],
        )
        if not report.is_consistent:
            logger.error(
                "Ledger mismatch: user=%s balance=%s ledger_total=%s transactions=%d",
                report.user_id,
                report.balance,
                report.ledger_total,
                report.transaction_count,
            )
        return report
