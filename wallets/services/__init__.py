from wallets.services.ledger import (
    LedgerService,
    ReconciliationReport,
    TransactionResult,
)
from wallets.services.wallet import WalletService, WalletSummary

__all__ = [
    "LedgerService",
    "ReconciliationReport",
    "TransactionResult",
    "WalletService",
    "WalletSummary",
]
