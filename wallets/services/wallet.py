import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List

from wallets.models import Wallet, WalletTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletSummary:
    balance: Decimal
    transactions: List[WalletTransaction]
    total: int
    limit: int
    offset: int


class WalletService:
    """Read side of the wallet: balance lookups and transaction history."""

    @staticmethod
    def get_or_create_wallet(user_id) -> Wallet:
        """
        Return the user's wallet, opening an empty one on first access.

        Concurrent first calls race on the primary key; get_or_create
        recovers from the losing insert, so exactly one row is created.
        """
        wallet, created = Wallet.objects.get_or_create(user_id=user_id)
        if created:
            logger.info("Wallet opened: user=%s", user_id)
        return wallet

    @staticmethod
    def get_summary(user_id, limit: int = 10, offset: int = 0) -> WalletSummary:
        wallet = WalletService.get_or_create_wallet(user_id)

        queryset = WalletTransaction.objects.filter(wallet=wallet).order_by(
            "-created_at", "-sequence"
        )
        transactions = list(queryset[offset : offset + limit])

        return WalletSummary(
            balance=wallet.balance,
            transactions=transactions,
            total=queryset.count(),
            limit=limit,
            offset=offset,
        )

    @staticmethod
    def get_transaction(user_id, transaction_id) -> WalletTransaction:
        """
        Raises:
            WalletTransaction.DoesNotExist: If the user owns no such transaction.
        """
        return WalletTransaction.objects.get(wallet_id=user_id, id=transaction_id)
