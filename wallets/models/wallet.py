from decimal import Decimal

from django.db import models
from django.db.models import Q

from wallets.models.base import BaseModel


class Wallet(BaseModel):
    """
    A user's running balance. One row per user, keyed by the user id issued
    by the identity provider.

    The balance is never written directly: LedgerService locks this row and
    changes it together with the matching WalletTransaction append.
    """

    user_id = models.UUIDField(primary_key=True, editable=False)
    balance = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00")
    )
    updated_at = models.DateTimeField(auto_now=True)

    class Meta(BaseModel.Meta):
        constraints = [
            models.CheckConstraint(
                condition=Q(balance__gte=0),
                name="wallet_balance_non_negative",
            ),
        ]

    def __str__(self):
        return f"Wallet {self.user_id} (balance={self.balance})"
