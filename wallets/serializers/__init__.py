from wallets.serializers.mutation import WalletMutationSerializer
from wallets.serializers.query import WalletQuerySerializer
from wallets.serializers.transaction import (
    TransactionResultSerializer,
    TransactionSerializer,
)
from wallets.serializers.wallet import WalletSummarySerializer

__all__ = [
    "WalletMutationSerializer",
    "WalletQuerySerializer",
    "TransactionSerializer",
    "TransactionResultSerializer",
    "WalletSummarySerializer",
]
