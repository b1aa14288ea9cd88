from wallets.models.wallet import Wallet
from wallets.models.transaction import WalletTransaction

__all__ = [
    "Wallet",
    "WalletTransaction",
]
