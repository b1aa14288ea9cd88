import logging

from celery import shared_task

from wallets.models import Wallet
from wallets.services import LedgerService

logger = logging.getLogger(__name__)


@shared_task(acks_late=True)
def reconcile_wallet(user_id: str):
    """
    Check that a wallet's balance equals the replay of its ledger.

    A mismatch is logged as an error; nothing is corrected automatically.
    """
    try:
        report = LedgerService.reconcile(user_id)
    except Wallet.DoesNotExist:
        logger.error("Wallet %s not found for reconciliation.", user_id)
        return {"user_id": user_id, "status": "NOT_FOUND"}

    return {
        "user_id": str(report.user_id),
        "status": "CONSISTENT" if report.is_consistent else "MISMATCH",
        "balance": str(report.balance),
        "ledger_total": str(report.ledger_total),
        "transactions": report.transaction_count,
    }


@shared_task
def reconcile_wallets():
    """
    Periodic task: dispatch a reconciliation for every wallet.

    Runs via Celery Beat every WALLET_RECONCILE_INTERVAL seconds.
    """
    user_ids = list(Wallet.objects.values_list("user_id", flat=True))

    if not user_ids:
        return {"dispatched": 0}

    logger.info("Dispatching reconciliation for %d wallet(s).", len(user_ids))

    for user_id in user_ids:
        reconcile_wallet.delay(str(user_id))

    return {"dispatched": len(user_ids)}
