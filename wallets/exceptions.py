class LedgerError(Exception):
    """Base class for business-rule rejections raised by the ledger."""


class InsufficientFunds(LedgerError):
    """A debit would take the wallet balance below zero."""

    def __init__(self, balance, amount):
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient funds: current balance {balance} is less than debit amount {amount}"
        )


class InvalidTransactionType(LedgerError):
    def __init__(self, type):
        self.type = type
        super().__init__(
            f"Invalid transaction type {type!r}: must be credit or debit"
        )


class IdempotencyConflict(LedgerError):
    """An idempotency key was reused with different parameters."""

    def __init__(self, key):
        self.key = key
        super().__init__(
            f"Idempotency key {key!r} was already used for a different transaction"
        )


class ImmutableTransactionError(Exception):
    """Raised on any attempt to modify or remove a ledger entry."""


class BalanceLimitExceeded(LedgerError):
    """A credit would take the balance past what the wallet can hold."""

    def __init__(self, balance, amount, limit):
        self.balance = balance
        self.amount = amount
        self.limit = limit
        super().__init__(
            f"Balance limit exceeded: balance {balance} plus credit {amount} "
            f"must stay below {limit}"
        )
