import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from io import StringIO
from unittest.mock import MagicMock, patch

import requests
from django.contrib import admin
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError, IntegrityError, connection, transaction
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from wallets.authentication import ExternalUser
from wallets.exceptions import (
    BalanceLimitExceeded,
    IdempotencyConflict,
    ImmutableTransactionError,
    InsufficientFunds,
    InvalidTransactionType,
)
from wallets.models import Wallet, WalletTransaction
from wallets.services import LedgerService, WalletService
from wallets.utils.identity import verify_access_token

WALLET_URL = "/api/wallet"

# ============================================================
# Model Tests
# ============================================================


class WalletModelTest(TestCase):
    def test_create_wallet(self):
        wallet = Wallet.objects.create(user_id=uuid.uuid4())
        self.assertEqual(wallet.balance, Decimal("0.00"))
        self.assertIsNotNone(wallet.created_at)

    def test_wallet_str(self):
        user_id = uuid.uuid4()
        wallet = Wallet.objects.create(user_id=user_id)
        self.assertIn(str(user_id), str(wallet))

    def test_negative_balance_rejected_by_database(self):
        with self.assertRaises(IntegrityError), transaction.atomic():
            Wallet.objects.create(user_id=uuid.uuid4(), balance=Decimal("-1.00"))

    def test_one_wallet_per_user(self):
        user_id = uuid.uuid4()
        Wallet.objects.create(user_id=user_id)
        with self.assertRaises(IntegrityError), transaction.atomic():
            Wallet.objects.create(user_id=user_id)


class WalletTransactionModelTest(TestCase):
    def setUp(self):
        self.wallet = Wallet.objects.create(user_id=uuid.uuid4())
        self.tx = WalletTransaction.objects.create(
            wallet=self.wallet,
            sequence=1,
            amount=Decimal("10.00"),
            type=WalletTransaction.Type.CREDIT,
            description="Wallet top-up",
            reference_id="booking-1",
            balance_after=Decimal("10.00"),
        )

    def test_transaction_exposes_user_id(self):
        self.assertEqual(self.tx.user_id, self.wallet.user_id)

    def test_signed_amount(self):
        self.assertEqual(self.tx.signed_amount, Decimal("10.00"))
        debit = WalletTransaction(amount=Decimal("4.00"), type="debit")
        self.assertEqual(debit.signed_amount, Decimal("-4.00"))

    def test_default_descriptions(self):
        self.assertEqual(WalletTransaction.default_description("credit"), "Wallet top-up")
        self.assertEqual(WalletTransaction.default_description("debit"), "Wallet deduction")

    def test_transaction_cannot_be_modified(self):
        self.tx.amount = Decimal("99.00")
        with self.assertRaises(ImmutableTransactionError):
            self.tx.save()

    def test_transaction_cannot_be_deleted(self):
        with self.assertRaises(ImmutableTransactionError):
            self.tx.delete()

    def test_queryset_update_and_delete_refused(self):
        with self.assertRaises(ImmutableTransactionError):
            WalletTransaction.objects.filter(pk=self.tx.pk).update(amount=1)
        with self.assertRaises(ImmutableTransactionError):
            WalletTransaction.objects.filter(pk=self.tx.pk).delete()
        self.assertEqual(WalletTransaction.objects.count(), 1)

    def test_non_positive_amount_rejected_by_database(self):
        with self.assertRaises(IntegrityError), transaction.atomic():
            WalletTransaction.objects.create(
                wallet=self.wallet,
                sequence=2,
                amount=Decimal("0.00"),
                type=WalletTransaction.Type.CREDIT,
                reference_id="zero",
                balance_after=Decimal("10.00"),
            )

    def test_sequence_unique_within_wallet(self):
        with self.assertRaises(IntegrityError), transaction.atomic():
            WalletTransaction.objects.create(
                wallet=self.wallet,
                sequence=1,
                amount=Decimal("5.00"),
                type=WalletTransaction.Type.CREDIT,
                reference_id="duplicate",
                balance_after=Decimal("15.00"),
            )

        other = Wallet.objects.create(user_id=uuid.uuid4())
        tx = WalletTransaction.objects.create(
            wallet=other,
            sequence=1,
            amount=Decimal("5.00"),
            type=WalletTransaction.Type.CREDIT,
            reference_id="other-wallet",
            balance_after=Decimal("5.00"),
        )
        self.assertEqual(tx.sequence, 1)

    def test_transaction_str(self):
        self.assertIn("credit", str(self.tx))
        self.assertIn("10.00", str(self.tx))


# ============================================================
# Service Tests
# ============================================================


class LedgerServiceTest(TransactionTestCase):
    def setUp(self):
        self.user_id = uuid.uuid4()

    def _balance(self):
        return Wallet.objects.get(user_id=self.user_id).balance

    def test_first_credit_opens_wallet(self):
        self.assertFalse(Wallet.objects.filter(user_id=self.user_id).exists())

        result = LedgerService.apply_transaction(self.user_id, Decimal("25.00"), "credit")

        self.assertEqual(result.previous_balance, Decimal("0.00"))
        self.assertEqual(result.new_balance, Decimal("25.00"))
        self.assertEqual(Wallet.objects.filter(user_id=self.user_id).count(), 1)
        self.assertEqual(self._balance(), Decimal("25.00"))

    def test_credit_with_default_description(self):
        LedgerService.apply_transaction(self.user_id, Decimal("50.00"), "credit")

        result = LedgerService.apply_transaction(self.user_id, Decimal("25.00"), "credit")

        self.assertEqual(result.new_balance, Decimal("75.00"))
        self.assertEqual(result.description, "Wallet top-up")
        tx = WalletTransaction.objects.get(id=result.transaction_id)
        self.assertEqual(tx.description, "Wallet top-up")
        self.assertEqual(tx.balance_after, Decimal("75.00"))

    def test_debit_success(self):
        LedgerService.apply_transaction(self.user_id, Decimal("50.00"), "credit")

        result = LedgerService.apply_transaction(
            self.user_id, Decimal("20.50"), "debit", description="Brake pads"
        )

        self.assertEqual(result.previous_balance, Decimal("50.00"))
        self.assertEqual(result.new_balance, Decimal("29.50"))
        self.assertEqual(result.type, "debit")
        self.assertEqual(result.description, "Brake pads")
        self.assertEqual(self._balance(), Decimal("29.50"))

    def test_debit_default_description(self):
        LedgerService.apply_transaction(self.user_id, Decimal("10.00"), "credit")
        result = LedgerService.apply_transaction(self.user_id, Decimal("10.00"), "debit")
        self.assertEqual(result.description, "Wallet deduction")
        self.assertEqual(result.new_balance, Decimal("0.00"))

    def test_debit_insufficient_funds_leaves_state_unchanged(self):
        LedgerService.apply_transaction(self.user_id, Decimal("50.00"), "credit")

        with self.assertRaises(InsufficientFunds) as ctx:
            LedgerService.apply_transaction(self.user_id, Decimal("75.00"), "debit")

        self.assertEqual(ctx.exception.balance, Decimal("50.00"))
        self.assertEqual(ctx.exception.amount, Decimal("75.00"))
        self.assertEqual(self._balance(), Decimal("50.00"))
        self.assertEqual(WalletTransaction.objects.filter(wallet_id=self.user_id).count(), 1)

    def test_debit_on_new_wallet_is_insufficient(self):
        with self.assertRaises(InsufficientFunds):
            LedgerService.apply_transaction(self.user_id, Decimal("1.00"), "debit")
        self.assertFalse(WalletTransaction.objects.exists())

    def test_invalid_type_raises_without_state_change(self):
        with self.assertRaises(InvalidTransactionType):
            LedgerService.apply_transaction(self.user_id, Decimal("10.00"), "refund")

        self.assertFalse(Wallet.objects.filter(user_id=self.user_id).exists())
        self.assertFalse(WalletTransaction.objects.exists())

    def test_invalid_amounts_raise(self):
        for amount in (Decimal("0"), Decimal("-10"), Decimal("NaN"), Decimal("Infinity"), "abc", Decimal("1.005")):
            with self.subTest(amount=amount):
                with self.assertRaises(ValueError):
                    LedgerService.apply_transaction(self.user_id, amount, "credit")
        self.assertFalse(WalletTransaction.objects.exists())

    def test_reference_id_generated_when_omitted(self):
        result = LedgerService.apply_transaction(self.user_id, Decimal("5.00"), "credit")
        self.assertEqual(str(uuid.UUID(result.reference_id)), result.reference_id)

        other = LedgerService.apply_transaction(self.user_id, Decimal("5.00"), "credit")
        self.assertNotEqual(result.reference_id, other.reference_id)

    def test_reference_id_preserved(self):
        result = LedgerService.apply_transaction(
            self.user_id, Decimal("5.00"), "credit", reference_id="booking-42"
        )
        self.assertEqual(result.reference_id, "booking-42")
        self.assertEqual(
            WalletTransaction.objects.get(id=result.transaction_id).reference_id,
            "booking-42",
        )

    def test_repeated_reference_id_without_key_is_a_new_transaction(self):
        LedgerService.apply_transaction(self.user_id, Decimal("5.00"), "credit", reference_id="r-1")
        LedgerService.apply_transaction(self.user_id, Decimal("5.00"), "credit", reference_id="r-1")
        self.assertEqual(self._balance(), Decimal("10.00"))
        self.assertEqual(WalletTransaction.objects.count(), 2)

    def test_balance_reconciles_with_ledger(self):
        operations = [
            ("100.00", "credit"),
            ("30.25", "debit"),
            ("12.75", "credit"),
            ("82.50", "debit"),
            ("0.01", "credit"),
        ]
        for amount, type in operations:
            LedgerService.apply_transaction(self.user_id, Decimal(amount), type)

        expected = sum(
            Decimal(a) if t == "credit" else -Decimal(a) for a, t in operations
        )
        self.assertEqual(self._balance(), expected)

        replayed = Decimal("0.00")
        for tx in WalletTransaction.objects.filter(wallet_id=self.user_id).order_by("sequence"):
            replayed += tx.signed_amount
            self.assertEqual(replayed, tx.balance_after)
        self.assertEqual(replayed, expected)

        report = LedgerService.reconcile(self.user_id)
        self.assertTrue(report.is_consistent)
        self.assertEqual(report.ledger_total, expected)
        self.assertEqual(report.transaction_count, len(operations))

    def test_reconcile_detects_mismatch(self):
        LedgerService.apply_transaction(self.user_id, Decimal("10.00"), "credit")
        Wallet.objects.filter(user_id=self.user_id).update(balance=Decimal("11.00"))

        report = LedgerService.reconcile(self.user_id)

        self.assertFalse(report.is_consistent)
        self.assertEqual(report.balance, Decimal("11.00"))
        self.assertEqual(report.ledger_total, Decimal("10.00"))

    def test_reconcile_empty_wallet(self):
        WalletService.get_or_create_wallet(self.user_id)
        report = LedgerService.reconcile(self.user_id)
        self.assertTrue(report.is_consistent)
        self.assertEqual(report.transaction_count, 0)

    def test_storage_failure_leaves_no_partial_state(self):
        LedgerService.apply_transaction(self.user_id, Decimal("50.00"), "credit")

        with patch.object(
            WalletTransaction.objects,
            "create",
            side_effect=DatabaseError("disk I/O error"),
        ):
            with self.assertRaises(DatabaseError):
                LedgerService.apply_transaction(self.user_id, Decimal("20.00"), "debit")

        self.assertEqual(self._balance(), Decimal("50.00"))
        self.assertEqual(WalletTransaction.objects.filter(wallet_id=self.user_id).count(), 1)

    def test_storage_failure_on_new_wallet_rolls_back_wallet(self):
        with patch.object(
            WalletTransaction.objects,
            "create",
            side_effect=DatabaseError("disk I/O error"),
        ):
            with self.assertRaises(DatabaseError):
                LedgerService.apply_transaction(self.user_id, Decimal("20.00"), "credit")

        self.assertFalse(Wallet.objects.filter(user_id=self.user_id).exists())

    def test_idempotency_key_replays_result(self):
        key = str(uuid.uuid4())

        first = LedgerService.apply_transaction(
            self.user_id, Decimal("40.00"), "credit", idempotency_key=key
        )
        second = LedgerService.apply_transaction(
            self.user_id, Decimal("40.00"), "credit", idempotency_key=key
        )

        self.assertEqual(first.transaction_id, second.transaction_id)
        self.assertEqual(second.previous_balance, Decimal("0.00"))
        self.assertEqual(second.new_balance, Decimal("40.00"))
        self.assertEqual(self._balance(), Decimal("40.00"))
        self.assertEqual(WalletTransaction.objects.count(), 1)

    def test_idempotency_key_conflict(self):
        key = str(uuid.uuid4())
        LedgerService.apply_transaction(
            self.user_id, Decimal("40.00"), "credit", idempotency_key=key
        )

        with self.assertRaises(IdempotencyConflict):
            LedgerService.apply_transaction(
                self.user_id, Decimal("41.00"), "credit", idempotency_key=key
            )
        with self.assertRaises(IdempotencyConflict):
            LedgerService.apply_transaction(
                uuid.uuid4(), Decimal("40.00"), "credit", idempotency_key=key
            )

        self.assertEqual(self._balance(), Decimal("40.00"))


    def test_credit_past_balance_limit_rejected(self):
        LedgerService.apply_transaction(self.user_id, Decimal("9999999999.99"), "credit")

        with self.assertRaises(BalanceLimitExceeded):
            LedgerService.apply_transaction(self.user_id, Decimal("9999999999.99"), "credit")
        with self.assertRaises(BalanceLimitExceeded):
            LedgerService.apply_transaction(self.user_id, Decimal("0.01"), "credit")

        self.assertEqual(self._balance(), Decimal("9999999999.99"))
        self.assertEqual(WalletTransaction.objects.filter(wallet_id=self.user_id).count(), 1)

        result = LedgerService.apply_transaction(self.user_id, Decimal("0.99"), "debit")
        self.assertEqual(result.new_balance, Decimal("9999999999.00"))
        self.assertTrue(LedgerService.reconcile(self.user_id).is_consistent)

    def test_sequence_counts_up_per_wallet(self):
        other = uuid.uuid4()
        for amount in ("1.00", "2.00", "3.00"):
            LedgerService.apply_transaction(self.user_id, Decimal(amount), "credit")
        LedgerService.apply_transaction(other, Decimal("1.00"), "credit")
        LedgerService.apply_transaction(self.user_id, Decimal("1.50"), "debit")

        own = WalletTransaction.objects.filter(wallet_id=self.user_id).order_by("sequence")
        self.assertEqual([tx.sequence for tx in own], [1, 2, 3, 4])
        self.assertEqual(
            [tx.amount for tx in own],
            [Decimal("1.00"), Decimal("2.00"), Decimal("3.00"), Decimal("1.50")],
        )
        self.assertEqual(WalletTransaction.objects.get(wallet_id=other).sequence, 1)

    def test_idempotency_key_committed_by_another_wallet_before_insert(self):
        key = str(uuid.uuid4())
        LedgerService.apply_transaction(
            self.user_id, Decimal("40.00"), "credit", idempotency_key=key
        )
        other = uuid.uuid4()

        # The other wallet's lookup misses the key, as when both inserts race
        with patch("wallets.services.ledger._find_by_idempotency_key", return_value=None):
            with self.assertRaises(IdempotencyConflict):
                LedgerService.apply_transaction(
                    other, Decimal("40.00"), "credit", idempotency_key=key
                )

        self.assertFalse(Wallet.objects.filter(user_id=other).exists())
        self.assertEqual(WalletTransaction.objects.count(), 1)
        self.assertEqual(self._balance(), Decimal("40.00"))


class WalletServiceTest(TransactionTestCase):
    def setUp(self):
        self.user_id = uuid.uuid4()

    def test_summary_creates_wallet(self):
        summary = WalletService.get_summary(self.user_id)

        self.assertEqual(summary.balance, Decimal("0.00"))
        self.assertEqual(summary.transactions, [])
        self.assertEqual(summary.total, 0)
        self.assertEqual((summary.limit, summary.offset), (10, 0))
        self.assertEqual(Wallet.objects.filter(user_id=self.user_id).count(), 1)

    def test_get_or_create_is_idempotent(self):
        first = WalletService.get_or_create_wallet(self.user_id)
        second = WalletService.get_or_create_wallet(self.user_id)
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Wallet.objects.count(), 1)

    def test_summary_pagination_newest_first(self):
        for amount in ("1.00", "2.00", "3.00", "4.00"):
            LedgerService.apply_transaction(self.user_id, Decimal(amount), "credit")

        summary = WalletService.get_summary(self.user_id, limit=2, offset=1)

        self.assertEqual(summary.total, 4)
        self.assertEqual(summary.balance, Decimal("10.00"))
        self.assertEqual(
            [tx.amount for tx in summary.transactions],
            [Decimal("3.00"), Decimal("2.00")],
        )

    def test_summary_pages_do_not_overlap_on_identical_timestamps(self):
        frozen = timezone.now()
        with patch("django.utils.timezone.now", return_value=frozen):
            for amount in ("1.00", "2.00", "3.00", "4.00", "5.00"):
                LedgerService.apply_transaction(self.user_id, Decimal(amount), "credit")

        pages = [
            [tx.amount for tx in WalletService.get_summary(self.user_id, limit=2, offset=offset).transactions]
            for offset in (0, 2, 4)
        ]

        self.assertEqual(
            pages,
            [
                [Decimal("5.00"), Decimal("4.00")],
                [Decimal("3.00"), Decimal("2.00")],
                [Decimal("1.00")],
            ],
        )

    def test_summary_only_includes_own_transactions(self):
        LedgerService.apply_transaction(self.user_id, Decimal("1.00"), "credit")
        LedgerService.apply_transaction(uuid.uuid4(), Decimal("2.00"), "credit")

        summary = WalletService.get_summary(self.user_id)

        self.assertEqual(summary.total, 1)

    def test_get_transaction_scoped_to_owner(self):
        result = LedgerService.apply_transaction(self.user_id, Decimal("1.00"), "credit")

        tx = WalletService.get_transaction(self.user_id, result.transaction_id)
        self.assertEqual(tx.id, result.transaction_id)

        with self.assertRaises(WalletTransaction.DoesNotExist):
            WalletService.get_transaction(uuid.uuid4(), result.transaction_id)


# ============================================================
# Concurrency Tests
# ============================================================


class LedgerConcurrencyTest(TransactionTestCase):
    def setUp(self):
        self.user_id = uuid.uuid4()

    def _run_concurrently(self, func, count, workers=10):
        def call(_):
            try:
                return func()
            except InsufficientFunds as exc:
                return exc
            finally:
                connection.close()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(call, range(count)))

    def test_concurrent_credits_are_not_lost(self):
        results = self._run_concurrently(
            lambda: LedgerService.apply_transaction(self.user_id, Decimal("1"), "credit"),
            count=100,
        )

        self.assertEqual(len(results), 100)
        wallet = Wallet.objects.get(user_id=self.user_id)
        self.assertEqual(wallet.balance, Decimal("100.00"))
        self.assertEqual(WalletTransaction.objects.filter(wallet=wallet).count(), 100)
        self.assertEqual(
            sorted(r.new_balance for r in results),
            [Decimal(n) for n in range(1, 101)],
        )
        self.assertTrue(LedgerService.reconcile(self.user_id).is_consistent)

    def test_concurrent_debits_never_overdraw(self):
        LedgerService.apply_transaction(self.user_id, Decimal("50.00"), "credit")

        results = self._run_concurrently(
            lambda: LedgerService.apply_transaction(self.user_id, Decimal("10.00"), "debit"),
            count=10,
        )

        rejected = [r for r in results if isinstance(r, InsufficientFunds)]
        self.assertEqual(len(rejected), 5)
        self.assertEqual(Wallet.objects.get(user_id=self.user_id).balance, Decimal("0.00"))
        self.assertEqual(
            WalletTransaction.objects.filter(wallet_id=self.user_id, type="debit").count(),
            5,
        )

    def test_concurrent_first_access_creates_one_wallet(self):
        self._run_concurrently(
            lambda: WalletService.get_summary(self.user_id),
            count=10,
        )
        self._run_concurrently(
            lambda: LedgerService.apply_transaction(self.user_id, Decimal("1.00"), "credit"),
            count=10,
        )

        self.assertEqual(Wallet.objects.filter(user_id=self.user_id).count(), 1)
        self.assertEqual(Wallet.objects.get(user_id=self.user_id).balance, Decimal("10.00"))

    def test_reconcile_reads_balance_and_ledger_together(self):
        LedgerService.apply_transaction(self.user_id, Decimal("10.00"), "credit")
        errors = []

        def credit():
            try:
                LedgerService.apply_transaction(self.user_id, Decimal("5.00"), "credit")
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        worker = threading.Thread(target=credit)
        original_filter = WalletTransaction.objects.filter

        # Let a credit try to commit between the wallet read and the ledger sum
        def filter_after_credit(*args, **kwargs):
            if worker.ident is None:
                worker.start()
                worker.join(timeout=0.5)
            return original_filter(*args, **kwargs)

        with patch.object(
            WalletTransaction.objects, "filter", side_effect=filter_after_credit
        ):
            report = LedgerService.reconcile(self.user_id)

        worker.join(timeout=30)
        self.assertFalse(worker.is_alive())
        self.assertEqual(errors, [])

        self.assertTrue(report.is_consistent)
        self.assertEqual(report.balance, Decimal("10.00"))
        self.assertEqual(report.ledger_total, Decimal("10.00"))

        self.assertEqual(Wallet.objects.get(user_id=self.user_id).balance, Decimal("15.00"))
        self.assertTrue(LedgerService.reconcile(self.user_id).is_consistent)

    def test_other_users_unaffected(self):
        other = uuid.uuid4()
        self._run_concurrently(
            lambda: LedgerService.apply_transaction(self.user_id, Decimal("2.00"), "credit"),
            count=10,
        )
        self._run_concurrently(
            lambda: LedgerService.apply_transaction(other, Decimal("3.00"), "credit"),
            count=10,
        )

        self.assertEqual(Wallet.objects.get(user_id=self.user_id).balance, Decimal("20.00"))
        self.assertEqual(Wallet.objects.get(user_id=other).balance, Decimal("30.00"))


# ============================================================
# API Tests
# ============================================================


class WalletAPITestCase(TestCase):
    def setUp(self):
        self.user_id = uuid.uuid4()
        self.client = APIClient()
        self.client.force_authenticate(user=ExternalUser(self.user_id))

    def credit(self, amount):
        return LedgerService.apply_transaction(self.user_id, Decimal(amount), "credit")


class WalletSummaryAPITest(WalletAPITestCase):
    def test_requires_authentication(self):
        response = APIClient().get(WALLET_URL)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response["WWW-Authenticate"], "Bearer")

    def test_summary_for_new_wallet(self):
        response = self.client.get(WALLET_URL)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["balance"], Decimal("0.00"))
        self.assertEqual(response.data["transactions"], [])
        self.assertEqual(
            response.data["pagination"], {"total": 0, "offset": 0, "limit": 10}
        )
        self.assertTrue(Wallet.objects.filter(user_id=self.user_id).exists())

    def test_summary_with_transactions(self):
        self.credit("10.00")
        self.credit("5.00")

        response = self.client.get(WALLET_URL, {"limit": 1, "offset": 0})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["balance"], Decimal("15.00"))
        self.assertEqual(len(response.data["transactions"]), 1)
        tx = response.data["transactions"][0]
        self.assertEqual(tx["amount"], Decimal("5.00"))
        self.assertEqual(tx["type"], "credit")
        self.assertEqual(tx["user_id"], str(self.user_id))
        self.assertEqual(
            response.data["pagination"], {"total": 2, "offset": 0, "limit": 1}
        )

    def test_summary_offset(self):
        self.credit("10.00")
        self.credit("5.00")

        response = self.client.get(WALLET_URL, {"limit": 10, "offset": 1})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data["transactions"]), 1)
        self.assertEqual(response.data["transactions"][0]["amount"], Decimal("10.00"))

    def test_invalid_pagination(self):
        for params in ({"limit": 0}, {"limit": "abc"}, {"offset": -1}, {"limit": 1000}):
            with self.subTest(params=params):
                response = self.client.get(WALLET_URL, params)
                self.assertEqual(response.status_code, 400)

    @patch("wallets.views.wallet.WalletService.get_summary")
    def test_summary_storage_failure(self, mock_summary):
        mock_summary.side_effect = DatabaseError("connection lost")

        response = self.client.get(WALLET_URL)

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data, {"error": "Failed to fetch wallet"})


class WalletMutationAPITest(WalletAPITestCase):
    def test_credit_with_default_description(self):
        self.credit("50.00")

        response = self.client.post(
            WALLET_URL, {"amount": 25, "type": "credit"}, format="json"
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["previous_balance"], Decimal("50.00"))
        self.assertEqual(response.data["new_balance"], Decimal("75.00"))
        self.assertEqual(response.data["amount"], Decimal("25.00"))
        self.assertEqual(response.data["type"], "credit")
        self.assertEqual(response.data["description"], "Wallet top-up")
        self.assertEqual(response.data["user_id"], str(self.user_id))
        for field in ("transaction_id", "reference_id", "created_at"):
            self.assertIn(field, response.data)

        tx = WalletTransaction.objects.get(id=response.data["transaction_id"])
        self.assertEqual(tx.description, "Wallet top-up")

    def test_debit_with_description_and_reference(self):
        self.credit("100.00")

        response = self.client.post(
            WALLET_URL,
            {
                "amount": "40.50",
                "type": "debit",
                "description": "Oil change",
                "reference_id": "booking-7",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["new_balance"], Decimal("59.50"))
        self.assertEqual(response.data["description"], "Oil change")
        self.assertEqual(response.data["reference_id"], "booking-7")

    def test_debit_insufficient_funds(self):
        self.credit("50.00")

        response = self.client.post(
            WALLET_URL, {"amount": 75, "type": "debit"}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data, {"error": "Insufficient funds"})
        self.assertEqual(
            Wallet.objects.get(user_id=self.user_id).balance, Decimal("50.00")
        )
        self.assertEqual(WalletTransaction.objects.count(), 1)

    @patch("wallets.views.wallet.LedgerService.apply_transaction")
    def test_negative_amount_rejected_before_ledger(self, mock_apply):
        response = self.client.post(
            WALLET_URL, {"amount": -10, "type": "credit"}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("amount", response.data)
        mock_apply.assert_not_called()

    @patch("wallets.views.wallet.LedgerService.apply_transaction")
    def test_invalid_payloads(self, mock_apply):
        payloads = [
            {"type": "credit"},
            {"amount": 10},
            {"amount": 0, "type": "credit"},
            {"amount": "abc", "type": "credit"},
            {"amount": "NaN", "type": "credit"},
            {"amount": "1.005", "type": "credit"},
            {"amount": 10, "type": "refund"},
            {"amount": 10, "type": "credit", "reference_id": "x" * 65},
        ]
        for payload in payloads:
            with self.subTest(payload=payload):
                response = self.client.post(WALLET_URL, payload, format="json")
                self.assertEqual(response.status_code, 400)
        mock_apply.assert_not_called()
        self.assertFalse(Wallet.objects.exists())

    def test_invalid_type_message(self):
        response = self.client.post(
            WALLET_URL, {"amount": 10, "type": "refund"}, format="json"
        )
        self.assertEqual(
            response.data["type"], ['Type must be either "credit" or "debit".']
        )

    def test_blank_description_uses_default(self):
        self.credit("10.00")
        response = self.client.post(
            WALLET_URL,
            {"amount": 5, "type": "debit", "description": ""},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["description"], "Wallet deduction")

    def test_idempotency_key_replay(self):
        key = str(uuid.uuid4())
        payload = {"amount": 20, "type": "credit"}

        response1 = self.client.post(
            WALLET_URL, payload, format="json", HTTP_IDEMPOTENCY_KEY=key
        )
        response2 = self.client.post(
            WALLET_URL, payload, format="json", HTTP_IDEMPOTENCY_KEY=key
        )

        self.assertEqual(response1.status_code, 200)
        self.assertEqual(response2.status_code, 200)
        self.assertEqual(
            response1.data["transaction_id"], response2.data["transaction_id"]
        )
        self.assertEqual(
            Wallet.objects.get(user_id=self.user_id).balance, Decimal("20.00")
        )

    def test_idempotency_key_conflict(self):
        key = str(uuid.uuid4())
        self.client.post(
            WALLET_URL,
            {"amount": 20, "type": "credit"},
            format="json",
            HTTP_IDEMPOTENCY_KEY=key,
        )

        response = self.client.post(
            WALLET_URL,
            {"amount": 30, "type": "credit"},
            format="json",
            HTTP_IDEMPOTENCY_KEY=key,
        )

        self.assertEqual(response.status_code, 409)
        self.assertIn("error", response.data)

    def test_credit_past_balance_limit(self):
        self.credit("9999999999.99")

        response = self.client.post(
            WALLET_URL, {"amount": "9999999999.99", "type": "credit"}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("Balance limit exceeded", response.data["error"])

        response = self.client.get(WALLET_URL)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["balance"], Decimal("9999999999.99"))
        self.assertEqual(response.data["pagination"]["total"], 1)

    @patch("wallets.services.ledger._find_by_idempotency_key", return_value=None)
    def test_idempotency_key_taken_by_another_user(self, mock_find):
        key = str(uuid.uuid4())
        LedgerService.apply_transaction(
            uuid.uuid4(), Decimal("20.00"), "credit", idempotency_key=key
        )

        response = self.client.post(
            WALLET_URL,
            {"amount": 20, "type": "credit"},
            format="json",
            HTTP_IDEMPOTENCY_KEY=key,
        )

        self.assertEqual(response.status_code, 409)
        self.assertIn("error", response.data)
        self.assertFalse(Wallet.objects.filter(user_id=self.user_id).exists())

    @patch("wallets.views.wallet.LedgerService.apply_transaction")
    def test_overlong_idempotency_key(self, mock_apply):
        response = self.client.post(
            WALLET_URL,
            {"amount": 20, "type": "credit"},
            format="json",
            HTTP_IDEMPOTENCY_KEY="k" * 65,
        )

        self.assertEqual(response.status_code, 400)
        mock_apply.assert_not_called()

    @patch("wallets.views.wallet.LedgerService.apply_transaction")
    def test_invalid_type_from_ledger(self, mock_apply):
        mock_apply.side_effect = InvalidTransactionType("refund")

        response = self.client.post(
            WALLET_URL, {"amount": 10, "type": "credit"}, format="json"
        )

        self.assertEqual(response.status_code, 400)

    @patch("wallets.views.wallet.LedgerService.apply_transaction")
    def test_unexpected_failure_is_server_error(self, mock_apply):
        mock_apply.side_effect = DatabaseError("statement timeout")

        response = self.client.post(
            WALLET_URL, {"amount": 10, "type": "credit"}, format="json"
        )

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data, {"error": "Failed to update wallet"})

    def test_storage_failure_leaves_balance_untouched(self):
        self.credit("50.00")

        with patch.object(
            WalletTransaction.objects,
            "create",
            side_effect=DatabaseError("disk I/O error"),
        ):
            response = self.client.post(
                WALLET_URL, {"amount": 10, "type": "debit"}, format="json"
            )

        self.assertEqual(response.status_code, 500)
        self.assertEqual(
            Wallet.objects.get(user_id=self.user_id).balance, Decimal("50.00")
        )
        self.assertEqual(WalletTransaction.objects.count(), 1)

    def test_other_methods_not_allowed(self):
        for method in ("put", "patch", "delete"):
            with self.subTest(method=method):
                response = getattr(self.client, method)(WALLET_URL, {}, format="json")
                self.assertEqual(response.status_code, 405)


class TransactionDetailAPITest(WalletAPITestCase):
    def test_transaction_detail(self):
        result = self.credit("12.00")

        response = self.client.get(f"{WALLET_URL}/transactions/{result.transaction_id}")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["id"], str(result.transaction_id))
        self.assertEqual(response.data["balance_after"], Decimal("12.00"))

    def test_other_users_transaction_not_found(self):
        result = LedgerService.apply_transaction(uuid.uuid4(), Decimal("12.00"), "credit")

        response = self.client.get(f"{WALLET_URL}/transactions/{result.transaction_id}")

        self.assertEqual(response.status_code, 404)


# ============================================================
# Authentication Tests
# ============================================================


class IdentityProviderAuthenticationTest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_id = uuid.uuid4()

    @patch("wallets.authentication.verify_access_token")
    def test_valid_bearer_token(self, mock_verify):
        mock_verify.return_value = str(self.user_id)

        response = self.client.get(WALLET_URL, HTTP_AUTHORIZATION="Bearer good-token")

        self.assertEqual(response.status_code, 200)
        mock_verify.assert_called_once_with("good-token")
        self.assertTrue(Wallet.objects.filter(user_id=self.user_id).exists())

    @patch("wallets.authentication.verify_access_token")
    def test_rejected_token(self, mock_verify):
        mock_verify.return_value = None

        response = self.client.get(WALLET_URL, HTTP_AUTHORIZATION="Bearer bad-token")

        self.assertEqual(response.status_code, 401)

    @patch("wallets.authentication.verify_access_token")
    def test_malformed_user_id(self, mock_verify):
        mock_verify.return_value = "not-a-uuid"

        response = self.client.get(WALLET_URL, HTTP_AUTHORIZATION="Bearer token")

        self.assertEqual(response.status_code, 401)

    @patch("wallets.authentication.verify_access_token")
    def test_malformed_header(self, mock_verify):
        response = self.client.get(WALLET_URL, HTTP_AUTHORIZATION="Bearer a b")

        self.assertEqual(response.status_code, 401)
        mock_verify.assert_not_called()

    def test_other_scheme_is_unauthenticated(self):
        response = self.client.get(WALLET_URL, HTTP_AUTHORIZATION="Basic dXNlcjpwYXNz")
        self.assertEqual(response.status_code, 401)


@override_settings(
    IDENTITY_PROVIDER_URL="https://id.example.com/",
    IDENTITY_PROVIDER_API_KEY="anon-key",
    IDENTITY_PROVIDER_TIMEOUT=3,
)
class VerifyAccessTokenTest(TestCase):
    @patch("wallets.utils.identity.requests.get")
    def test_returns_user_id(self, mock_get):
        user_id = str(uuid.uuid4())
        mock_get.return_value = MagicMock(status_code=200)
        mock_get.return_value.json.return_value = {"id": user_id}

        self.assertEqual(verify_access_token("tok"), user_id)
        mock_get.assert_called_once_with(
            "https://id.example.com/auth/v1/user",
            headers={"Authorization": "Bearer tok", "apikey": "anon-key"},
            timeout=3,
        )

    @patch("wallets.utils.identity.requests.get")
    def test_rejected_token(self, mock_get):
        mock_get.return_value = MagicMock(status_code=401)
        self.assertIsNone(verify_access_token("tok"))

    @patch("wallets.utils.identity.requests.get")
    def test_missing_id(self, mock_get):
        mock_get.return_value = MagicMock(status_code=200)
        mock_get.return_value.json.return_value = {}
        self.assertIsNone(verify_access_token("tok"))

    @patch("wallets.utils.identity.requests.get")
    def test_non_json_body(self, mock_get):
        mock_get.return_value = MagicMock(status_code=200)
        mock_get.return_value.json.side_effect = ValueError("no json")
        self.assertIsNone(verify_access_token("tok"))

    @patch("wallets.utils.identity.requests.get")
    def test_network_failures(self, mock_get):
        for exc in (
            requests.exceptions.ConnectionError("refused"),
            requests.exceptions.Timeout("slow"),
        ):
            with self.subTest(exc=exc):
                mock_get.side_effect = exc
                self.assertIsNone(verify_access_token("tok"))


# ============================================================
# Middleware Tests
# ============================================================


class ApiLoggingMiddlewareTest(TestCase):
    @patch("wallets.authentication.verify_access_token")
    def test_logs_request_without_credentials(self, mock_verify):
        user_id = uuid.uuid4()
        mock_verify.return_value = str(user_id)

        with self.assertLogs("wallets.middleware", level="INFO") as logs:
            APIClient().post(
                WALLET_URL,
                {"amount": 5, "type": "credit"},
                format="json",
                HTTP_AUTHORIZATION="Bearer secret-token",
            )

        output = "\n".join(logs.output)
        self.assertIn("API Request: POST /api/wallet", output)
        self.assertIn("Status: 200", output)
        self.assertIn(str(user_id), output)
        self.assertNotIn("secret-token", output)


# ============================================================
# Celery Task Tests
# ============================================================


class ReconciliationTaskTest(TransactionTestCase):
    def setUp(self):
        self.user_id = uuid.uuid4()
        LedgerService.apply_transaction(self.user_id, Decimal("30.00"), "credit")
        LedgerService.apply_transaction(self.user_id, Decimal("10.00"), "debit")

    def test_reconcile_wallet_consistent(self):
        from wallets.tasks import reconcile_wallet

        result = reconcile_wallet.apply(args=[str(self.user_id)]).get()

        self.assertEqual(result["status"], "CONSISTENT")
        self.assertEqual(result["balance"], "20.00")
        self.assertEqual(result["transactions"], 2)

    def test_reconcile_wallet_mismatch(self):
        from wallets.tasks import reconcile_wallet

        Wallet.objects.filter(user_id=self.user_id).update(balance=Decimal("25.00"))

        with self.assertLogs("wallets.services.ledger", level="ERROR"):
            result = reconcile_wallet.apply(args=[str(self.user_id)]).get()

        self.assertEqual(result["status"], "MISMATCH")

    def test_reconcile_wallet_not_found(self):
        from wallets.tasks import reconcile_wallet

        result = reconcile_wallet.apply(args=[str(uuid.uuid4())]).get()

        self.assertEqual(result["status"], "NOT_FOUND")

    @patch("wallets.tasks.reconcile_wallet.delay")
    def test_reconcile_wallets_dispatches_each_wallet(self, mock_delay):
        from wallets.tasks import reconcile_wallets

        other = uuid.uuid4()
        WalletService.get_or_create_wallet(other)

        result = reconcile_wallets.apply().get()

        self.assertEqual(result["dispatched"], 2)
        dispatched = {call.args[0] for call in mock_delay.call_args_list}
        self.assertEqual(dispatched, {str(self.user_id), str(other)})


class EmptyReconciliationTaskTest(TestCase):
    @patch("wallets.tasks.reconcile_wallet.delay")
    def test_reconcile_wallets_nothing_to_do(self, mock_delay):
        from wallets.tasks import reconcile_wallets

        result = reconcile_wallets.apply().get()

        self.assertEqual(result["dispatched"], 0)
        mock_delay.assert_not_called()


# ============================================================
# Management Command Tests
# ============================================================


class ReconcileLedgerCommandTest(TestCase):
    def setUp(self):
        self.user_id = uuid.uuid4()
        LedgerService.apply_transaction(self.user_id, Decimal("15.00"), "credit")

    def test_all_wallets_consistent(self):
        out = StringIO()
        call_command("reconcile_ledger", stdout=out)
        self.assertIn("1 wallet(s) reconciled.", out.getvalue())

    def test_single_wallet(self):
        out = StringIO()
        call_command("reconcile_ledger", "--user", str(self.user_id), stdout=out)
        self.assertIn("1 wallet(s) reconciled.", out.getvalue())

    def test_mismatch_fails(self):
        Wallet.objects.filter(user_id=self.user_id).update(balance=Decimal("1.00"))
        out = StringIO()
        with self.assertRaises(CommandError):
            call_command("reconcile_ledger", stdout=out)
        self.assertIn("Mismatch", out.getvalue())

    def test_unknown_wallet(self):
        with self.assertRaises(CommandError):
            call_command("reconcile_ledger", "--user", str(uuid.uuid4()), stdout=StringIO())


# ============================================================
# Admin Tests
# ============================================================


class AdminRegistrationTest(TestCase):
    def test_models_registered_read_only(self):
        self.assertTrue(admin.site.is_registered(Wallet))
        self.assertTrue(admin.site.is_registered(WalletTransaction))

        model_admin = admin.site._registry[WalletTransaction]
        self.assertFalse(model_admin.has_add_permission(None))
        self.assertFalse(model_admin.has_change_permission(None))
        self.assertFalse(model_admin.has_delete_permission(None))
