from wallets.views.wallet import WalletView
from wallets.views.transaction import TransactionDetailView

__all__ = [
    "WalletView",
    "TransactionDetailView",
]
