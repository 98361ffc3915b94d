"""Tests for the balance ledger operations."""

import logging
import random
import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from loan_ledger.core.exceptions import (
    ConflictError,
    InvariantViolationError,
    LedgerValidationError,
    NotFoundError,
)
from loan_ledger.models.loan_model import Loan
from loan_ledger.models.payment_model import Payment
from loan_ledger.utils.balance_ledger import (
    apply_new_payment,
    apply_payment_deletion,
    apply_payment_update,
    audit_balances,
    is_lock_conflict,
    ledger_transaction,
    reconcile_balance,
    verify_balance,
)


# -------------------------------------------------
# Helpers: the three payment write paths, each one transaction
# -------------------------------------------------
def create_payment(db, loan_id, amount, status="completed") -> int:
    with ledger_transaction(db):
        apply_new_payment(db, loan_id, amount, status)
        loan = db.get(Loan, loan_id)
        payment = Payment(
            loan_id=loan_id,
            client_id=loan.client_id,
            amount=Decimal(amount),
            payment_date=date(2024, 2, 1),
            payment_method="cash",
            status=status,
        )
        db.add(payment)
        db.flush()
        payment_id = payment.payment_id
    return payment_id


def update_payment(db, payment_id, amount=None, status=None):
    with ledger_transaction(db):
        payment = db.get(Payment, payment_id)
        new_amount = Decimal(amount) if amount is not None else payment.amount
        new_status = status or payment.status
        result = apply_payment_update(
            db, payment.loan_id, payment.amount, payment.status, new_amount, new_status
        )
        payment.amount = new_amount
        payment.status = new_status
    return result


def delete_payment(db, payment_id):
    with ledger_transaction(db):
        payment = db.get(Payment, payment_id)
        result = apply_payment_deletion(db, payment.loan_id, payment.amount, payment.status)
        db.delete(payment)
    return result


def balance(db, loan_id) -> Decimal:
    return db.get(Loan, loan_id, populate_existing=True).remaining_balance


def seeded_loan(db, make_loan, **kwargs) -> int:
    loan_id = make_loan(**kwargs)
    with ledger_transaction(db):
        reconcile_balance(db, loan_id)
    return loan_id


class TestExampleScenario:
    """The reference walk-through: reconcile, pay, amend, fail, re-complete, delete."""

    def test_full_scenario(self, db, make_loan) -> None:
        loan_id = make_loan(approved_amount="10000.00")

        with ledger_transaction(db):
            result = reconcile_balance(db, loan_id)
        assert result.previous_balance is None
        assert balance(db, loan_id) == Decimal("10000.00")

        payment_id = create_payment(db, loan_id, "2500.00")
        assert balance(db, loan_id) == Decimal("7500.00")

        update_payment(db, payment_id, amount="3000.00")
        assert balance(db, loan_id) == Decimal("7000.00")

        update_payment(db, payment_id, status="failed")
        assert balance(db, loan_id) == Decimal("10000.00")

        update_payment(db, payment_id, amount="3000.00", status="completed")
        assert balance(db, loan_id) == Decimal("7000.00")

        delete_payment(db, payment_id)
        assert balance(db, loan_id) == Decimal("10000.00")


class TestNewPayment:
    def test_completed_payment_decrements(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        create_payment(db, loan_id, "0.01")
        assert balance(db, loan_id) == Decimal("9999.99")

    @pytest.mark.parametrize("status", ["pending", "failed"])
    def test_non_completed_payment_has_no_effect(self, db, make_loan, status) -> None:
        loan_id = seeded_loan(db, make_loan)
        create_payment(db, loan_id, "500.00", status=status)
        assert balance(db, loan_id) == Decimal("10000.00")

    @pytest.mark.parametrize("amount", ["0", "0.00", "-5.00", "abc", None])
    def test_rejects_non_positive_or_malformed_amount(self, db, make_loan, amount) -> None:
        loan_id = seeded_loan(db, make_loan)
        with pytest.raises(LedgerValidationError):
            apply_new_payment(db, loan_id, amount, "completed")

    @pytest.mark.parametrize("loan_id", [0, -1, "7", True, None])
    def test_rejects_malformed_loan_id(self, db, loan_id) -> None:
        with pytest.raises(LedgerValidationError):
            apply_new_payment(db, loan_id, "10.00", "completed")

    def test_rejects_unknown_status(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        with pytest.raises(LedgerValidationError):
            apply_new_payment(db, loan_id, "10.00", "refunded")

    def test_unknown_loan_rejects_the_payment_write(self, db) -> None:
        with pytest.raises(NotFoundError):
            create_payment(db, 9999, "100.00")
        assert db.query(Payment).count() == 0

    def test_unknown_loan_fails_even_without_balance_effect(self, db) -> None:
        with pytest.raises(NotFoundError):
            apply_new_payment(db, 9999, "100.00", "pending")

    def test_overpayment_is_rejected_atomically(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        with pytest.raises(LedgerValidationError, match="exceeds"):
            create_payment(db, loan_id, "10000.01")
        assert balance(db, loan_id) == Decimal("10000.00")
        assert db.query(Payment).count() == 0

    def test_uninitialised_balance_asks_for_reconcile(self, db, make_loan) -> None:
        loan_id = make_loan()
        with pytest.raises(LedgerValidationError, match="reconcile"):
            apply_new_payment(db, loan_id, "10.00", "completed")


class TestPaymentUpdate:
    def test_status_toggle_is_net_zero(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        before = balance(db, loan_id)

        payment_id = create_payment(db, loan_id, "1234.56")
        update_payment(db, payment_id, status="failed")

        assert balance(db, loan_id) == before

    def test_pending_to_completed_applies(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        payment_id = create_payment(db, loan_id, "400.00", status="pending")
        update_payment(db, payment_id, status="completed")
        assert balance(db, loan_id) == Decimal("9600.00")

    def test_amount_and_status_change_together(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        payment_id = create_payment(db, loan_id, "400.00", status="pending")
        update_payment(db, payment_id, amount="650.00", status="completed")
        assert balance(db, loan_id) == Decimal("9350.00")

    def test_amount_change_on_failed_payment_has_no_effect(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        payment_id = create_payment(db, loan_id, "400.00", status="failed")
        update_payment(db, payment_id, amount="900.00")
        assert balance(db, loan_id) == Decimal("10000.00")

    def test_identical_values_leave_balance(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        payment_id = create_payment(db, loan_id, "400.00")
        result = update_payment(db, payment_id, amount="400.00", status="completed")
        assert result.remaining_balance == Decimal("9600.00")

    def test_update_that_would_overpay_is_rejected(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        payment_id = create_payment(db, loan_id, "400.00")

        with pytest.raises(LedgerValidationError):
            update_payment(db, payment_id, amount="10400.01")

        assert balance(db, loan_id) == Decimal("9600.00")
        assert db.get(Payment, payment_id, populate_existing=True).amount == Decimal("400.00")


class TestPaymentDeletion:
    def test_deletion_restores_balance(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        before = balance(db, loan_id)

        payment_id = create_payment(db, loan_id, "987.65")
        delete_payment(db, payment_id)

        assert balance(db, loan_id) == before

    def test_deleting_failed_payment_has_no_effect(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        payment_id = create_payment(db, loan_id, "100.00", status="failed")
        delete_payment(db, payment_id)
        assert balance(db, loan_id) == Decimal("10000.00")


class TestCentPrecision:
    @pytest.mark.parametrize(
        "principal, amount, count",
        [("0.30", "0.10", 3), ("1.00", "0.10", 10), ("0.70", "0.01", 70)],
    )
    def test_paying_off_in_small_amounts_reaches_zero(self, db, make_loan, principal, amount, count) -> None:
        loan_id = seeded_loan(db, make_loan, approved_amount=principal, status="active")

        for _ in range(count):
            create_payment(db, loan_id, amount)

        assert balance(db, loan_id) == Decimal("0.00")
        assert db.get(Loan, loan_id).status == "completed"
        assert verify_balance(db, loan_id) == Decimal("0.00")

    def test_one_cent_over_is_still_rejected(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan, approved_amount="0.30")
        for _ in range(3):
            create_payment(db, loan_id, "0.10")
        with pytest.raises(LedgerValidationError, match="exceeds"):
            create_payment(db, loan_id, "0.01")

    def test_reversal_after_cent_payoff(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan, approved_amount="0.30", status="active")
        ids = [create_payment(db, loan_id, "0.10") for _ in range(3)]

        result = delete_payment(db, ids[0])

        assert result.remaining_balance == Decimal("0.10")
        assert result.status == "active"


class TestUninitialisedBalance:
    @pytest.mark.parametrize("status", ["pending", "failed"])
    def test_payment_without_balance_effect_is_rejected(self, db, make_loan, status) -> None:
        loan_id = make_loan(status="active")

        with pytest.raises(LedgerValidationError, match="reconcile"):
            apply_new_payment(db, loan_id, "100.00", status)
        db.rollback()

        loan = db.get(Loan, loan_id)
        assert loan.remaining_balance is None
        assert loan.status == "active"

    def test_update_and_deletion_are_rejected(self, db, make_loan) -> None:
        loan_id = make_loan(status="active")

        with pytest.raises(LedgerValidationError, match="reconcile"):
            apply_payment_update(db, loan_id, "100.00", "pending", "150.00", "failed")
        with pytest.raises(LedgerValidationError, match="reconcile"):
            apply_payment_update(db, loan_id, "100.00", "completed", "100.00", "failed")
        with pytest.raises(LedgerValidationError, match="reconcile"):
            apply_payment_deletion(db, loan_id, "100.00", "failed")
        db.rollback()

        assert db.get(Loan, loan_id).status == "active"

    def test_reconcile_then_payments_work(self, db, make_loan) -> None:
        loan_id = make_loan(status="active")
        with ledger_transaction(db):
            reconcile_balance(db, loan_id)

        create_payment(db, loan_id, "100.00", status="pending")
        assert balance(db, loan_id) == Decimal("10000.00")
        assert db.get(Loan, loan_id).status == "active"


class TestLoanStatus:
    def test_paying_in_full_completes_the_loan(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan, status="active")
        result = apply_new_payment(db, loan_id, "10000.00", "completed")
        db.commit()

        assert result.remaining_balance == Decimal("0.00")
        assert result.status == "completed"

    def test_reverting_a_final_payment_reopens_the_loan(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan, status="active")
        payment_id = create_payment(db, loan_id, "10000.00")

        result = update_payment(db, payment_id, status="failed")

        assert result.status == "active"
        assert result.remaining_balance == Decimal("10000.00")

    def test_pending_loan_status_is_left_alone(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan, approved_amount=None, status="pending")
        result = apply_new_payment(db, loan_id, "10.00", "pending")
        assert result.status == "pending"


class TestReconcile:
    def test_principal_falls_back_to_loan_amount(self, db, make_loan) -> None:
        loan_id = make_loan(loan_amount="8000.00", approved_amount=None, status="pending")
        with ledger_transaction(db):
            result = reconcile_balance(db, loan_id)
        assert result.remaining_balance == Decimal("8000.00")

    def test_is_idempotent(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        create_payment(db, loan_id, "333.33")

        with ledger_transaction(db):
            first = reconcile_balance(db, loan_id)
        with ledger_transaction(db):
            second = reconcile_balance(db, loan_id)

        assert first.remaining_balance == second.remaining_balance == Decimal("9666.67")
        assert second.drift == Decimal("0.00")

    def test_repairs_drift_and_logs_it(self, db, make_loan, caplog) -> None:
        loan_id = seeded_loan(db, make_loan)
        create_payment(db, loan_id, "100.00")

        # a write that bypassed the ledger
        db.get(Loan, loan_id).remaining_balance = Decimal("5000.00")
        db.commit()

        with caplog.at_level(logging.WARNING, logger="loan_ledger"):
            with ledger_transaction(db):
                result = reconcile_balance(db, loan_id)

        assert result.previous_balance == Decimal("5000.00")
        assert result.remaining_balance == Decimal("9900.00")
        assert result.drift == Decimal("-4900.00")
        assert "drift" in caplog.text
        assert [r.loan_id for r in caplog.records if r.levelno == logging.WARNING] == [loan_id]

    def test_unknown_loan(self, db) -> None:
        with pytest.raises(NotFoundError):
            reconcile_balance(db, 4242)

    def test_payments_above_principal_are_an_invariant_violation(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan, approved_amount="1000.00")
        loan = db.get(Loan, loan_id)
        db.add(
            Payment(
                loan_id=loan_id,
                client_id=loan.client_id,
                amount=Decimal("1500.00"),
                payment_date=date(2024, 3, 1),
                status="completed",
            )
        )
        db.commit()

        with pytest.raises(InvariantViolationError):
            with ledger_transaction(db):
                reconcile_balance(db, loan_id)


class TestDriftDetection:
    def test_verify_passes_on_consistent_loan(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        create_payment(db, loan_id, "250.00")
        assert verify_balance(db, loan_id) == Decimal("9750.00")

    def test_verify_raises_without_writing(self, db, make_loan) -> None:
        loan_id = seeded_loan(db, make_loan)
        db.get(Loan, loan_id).remaining_balance = Decimal("9999.99")
        db.commit()

        with pytest.raises(InvariantViolationError) as info:
            verify_balance(db, loan_id)

        assert info.value.expected == Decimal("10000.00")
        assert info.value.persisted == Decimal("9999.99")
        assert balance(db, loan_id) == Decimal("9999.99")

    def test_audit_lists_only_drifted_loans(self, db, make_loan) -> None:
        good = seeded_loan(db, make_loan)
        bad = seeded_loan(db, make_loan)
        create_payment(db, good, "10.00")

        db.get(Loan, bad).remaining_balance = Decimal("1.00")
        db.commit()

        drifted = audit_balances(db)

        assert [row["loan_id"] for row in drifted] == [bad]
        assert drifted[0]["expected_balance"] == Decimal("10000.00")
        assert drifted[0]["drift"] == Decimal("-9999.00")


class TestConservation:
    def test_random_sequence_keeps_balance_equal_to_history(self, db, make_loan) -> None:
        rng = random.Random(42)
        loan_id = seeded_loan(db, make_loan)
        principal = Decimal("10000.00")
        payments: dict[int, tuple[Decimal, str]] = {}

        for _ in range(40):
            op = rng.choice(["create", "update", "delete"]) if payments else "create"
            # 40 ops x 200.00 max stays under the principal
            amount = Decimal(rng.randint(1, 20000)) / 100
            status = rng.choice(["completed", "completed", "pending", "failed"])

            if op == "create":
                pid = create_payment(db, loan_id, str(amount), status=status)
                payments[pid] = (amount, status)
            elif op == "update":
                pid = rng.choice(sorted(payments))
                update_payment(db, pid, amount=str(amount), status=status)
                payments[pid] = (amount, status)
            else:
                pid = rng.choice(sorted(payments))
                delete_payment(db, pid)
                del payments[pid]

            paid = sum((a for a, s in payments.values() if s == "completed"), Decimal("0"))
            assert balance(db, loan_id) == principal - paid
            assert verify_balance(db, loan_id) == principal - paid


class TestConcurrency:
    def test_concurrent_payments_do_not_lose_an_update(self, db, make_loan, session_factory) -> None:
        loan_id = seeded_loan(db, make_loan)
        db.close()

        barrier = threading.Barrier(2)
        errors: list[Exception] = []

        def worker(amount: str) -> None:
            session = session_factory()
            try:
                barrier.wait()
                create_payment(session, loan_id, amount)
            except Exception as e:  # collected and asserted below
                errors.append(e)
            finally:
                session.close()

        threads = [
            threading.Thread(target=worker, args=("1200.00",)),
            threading.Thread(target=worker, args=("345.67",)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []

        fresh = session_factory()
        try:
            assert balance(fresh, loan_id) == Decimal("8454.33")
            assert fresh.query(Payment).count() == 2
        finally:
            fresh.close()

    def test_lock_wait_is_bounded(self, db, make_loan, session_factory) -> None:
        loan_id = seeded_loan(db, make_loan)

        # holds the database write lock until rolled back
        db.execute(select(Loan)).all()

        other = session_factory()
        try:
            with pytest.raises(ConflictError):
                with ledger_transaction(other):
                    apply_new_payment(other, loan_id, "10.00", "completed")
        finally:
            other.close()
            db.rollback()

        assert balance(db, loan_id) == Decimal("10000.00")


class TestLockConflictDetection:
    class _PgError(Exception):
        def __init__(self, pgcode):
            super().__init__("lock timeout")
            self.pgcode = pgcode

    @pytest.mark.parametrize("pgcode", ["55P03", "40001", "40P01"])
    def test_postgres_conflict_codes(self, pgcode) -> None:
        exc = OperationalError("UPDATE loans ...", {}, self._PgError(pgcode))
        assert is_lock_conflict(exc)

    def test_sqlite_busy(self) -> None:
        exc = OperationalError("UPDATE loans ...", {}, Exception("database is locked"))
        assert is_lock_conflict(exc)

    def test_other_operational_errors_pass_through(self, db) -> None:
        exc = OperationalError("SELECT 1", {}, Exception("server closed the connection"))
        assert not is_lock_conflict(exc)

        with pytest.raises(OperationalError):
            with ledger_transaction(db):
                raise exc
