"""
Balance ledger: keeps ``loans.remaining_balance`` equal to

    principal - sum(amount of completed payments)

where principal is ``approved_amount`` (or ``loan_amount`` while unset).

Every payment mutation is mirrored by a signed delta applied with one
``UPDATE loans SET remaining_balance = remaining_balance + :delta`` statement
inside the caller's transaction, so the balance and the payment row commit
together and two writers on the same loan can never both read the old value.
``reconcile_balance`` recomputes the same figure from scratch and is the repair
path for drift.

None of these functions commit: the caller owns the transaction (see
``ledger_transaction``).
"""

from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from loan_ledger.core.exceptions import (
    ConflictError,
    InvariantViolationError,
    LedgerError,
    LedgerValidationError,
    NotFoundError,
)
from loan_ledger.core.logging import get_logger
from loan_ledger.models.loan_model import Loan
from loan_ledger.models.payment_model import Payment
from loan_ledger.utils.loan_calculations import money

logger = get_logger(__name__)

PAYMENT_COMPLETED = "completed"
PAYMENT_STATUSES = ("pending", "completed", "failed")

# loan statuses that close when the balance hits zero
BALANCE_BEARING_STATUSES = ("approved", "active", "overdue")

# PostgreSQL: lock_not_available, serialization_failure, deadlock_detected
_CONFLICT_PGCODES = {"55P03", "40001", "40P01"}


@dataclass
class BalanceResult:
    loan_id: int
    remaining_balance: Decimal
    status: str


@dataclass
class ReconcileResult:
    loan_id: int
    previous_balance: Optional[Decimal]
    remaining_balance: Decimal
    drift: Decimal
    status: str


# -------------------------------------------------
# Helpers
# -------------------------------------------------
def is_lock_conflict(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in _CONFLICT_PGCODES:
        return True
    return "database is locked" in str(orig or exc).lower()


@contextmanager
def ledger_transaction(db: Session):
    """
    Commit on success, roll back on any failure.

    Lock timeouts and serialization failures surface as ConflictError so the
    caller can retry the whole operation.
    """
    try:
        yield db
        db.commit()
    except LedgerError:
        db.rollback()
        raise
    except OperationalError as e:
        db.rollback()
        if is_lock_conflict(e):
            logger.warning("Lock conflict, transaction rolled back: %s", e.orig)
            raise ConflictError("Loan is being modified concurrently, retry the operation") from e
        raise
    except Exception:
        db.rollback()
        raise


def validate_loan_id(loan_id) -> int:
    if isinstance(loan_id, bool) or not isinstance(loan_id, int) or loan_id <= 0:
        raise LedgerValidationError(f"Malformed loan id: {loan_id!r}")
    return loan_id


def validate_amount(amount) -> Decimal:
    try:
        value = money(amount)
    except (ArithmeticError, ValueError, TypeError) as e:
        raise LedgerValidationError(f"Malformed payment amount: {amount!r}") from e
    if not value.is_finite() or value <= 0:
        raise LedgerValidationError("Payment amount must be > 0")
    return value


def validate_status(status: str) -> str:
    if status not in PAYMENT_STATUSES:
        raise LedgerValidationError(f"Unknown payment status: {status!r}")
    return status


def completed_effect(amount, status: str) -> Decimal:
    """How much a payment currently takes off the balance."""
    return money(amount) if status == PAYMENT_COMPLETED else money(0)


def settle_loan_status(loan: Loan) -> None:
    if loan.remaining_balance is None:
        return
    balance = money(loan.remaining_balance)
    if balance <= 0 and loan.status in BALANCE_BEARING_STATUSES:
        loan.status = "completed"
    elif balance > 0 and loan.status == "completed":
        loan.status = "active"


def completed_total(db: Session, loan_id: int) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.loan_id == loan_id, Payment.status == PAYMENT_COMPLETED)
        .scalar()
    )
    return money(total)


def expected_balance(db: Session, loan: Loan) -> Decimal:
    return money(money(loan.principal) - completed_total(db, loan.loan_id))


def _require_balance(loan: Loan) -> None:
    if loan.remaining_balance is None:
        raise LedgerValidationError(
            f"Loan {loan.loan_id} has no balance yet, reconcile it first"
        )


def _apply_delta(db: Session, loan_id: int, delta: Decimal) -> BalanceResult:
    delta = money(delta)

    if delta != 0:
        # rounded to cents in SQL: SQLite stores Numeric as binary float
        new_balance = func.round(Loan.remaining_balance + delta, 2)
        result = db.execute(
            update(Loan)
            .where(
                Loan.loan_id == loan_id,
                new_balance >= 0,
            )
            .values(remaining_balance=new_balance)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            loan = db.get(Loan, loan_id)
            if loan is None:
                raise NotFoundError(f"Loan {loan_id} not found")
            _require_balance(loan)
            raise LedgerValidationError("Payment exceeds remaining balance")

    loan = db.get(Loan, loan_id, populate_existing=True)
    if loan is None:
        raise NotFoundError(f"Loan {loan_id} not found")
    _require_balance(loan)

    settle_loan_status(loan)
    db.flush()

    logger.debug(
        "loan %s balance delta %s -> %s (%s)",
        loan_id, delta, loan.remaining_balance, loan.status,
        extra={"loan_id": loan_id},
    )
    return BalanceResult(
        loan_id=loan_id,
        remaining_balance=money(loan.remaining_balance),
        status=loan.status,
    )


# -------------------------------------------------
# Delta operations (one per payment mutation)
# -------------------------------------------------
def apply_new_payment(db: Session, loan_id: int, amount, status: str) -> BalanceResult:
    loan_id = validate_loan_id(loan_id)
    amount = validate_amount(amount)
    status = validate_status(status)

    return _apply_delta(db, loan_id, -completed_effect(amount, status))


def apply_payment_update(
        db: Session,
        loan_id: int,
        old_amount,
        old_status: str,
        new_amount,
        new_status: str,
) -> BalanceResult:
    """
    Reverse the old effect, then apply the new one, as one net delta.

    Status and amount are both compared: completed -> failed with the same
    amount still gives the old amount back.
    """
    loan_id = validate_loan_id(loan_id)
    old_amount = validate_amount(old_amount)
    new_amount = validate_amount(new_amount)
    old_status = validate_status(old_status)
    new_status = validate_status(new_status)

    delta = completed_effect(old_amount, old_status) - completed_effect(new_amount, new_status)
    return _apply_delta(db, loan_id, delta)


def apply_payment_deletion(db: Session, loan_id: int, amount, status: str) -> BalanceResult:
    loan_id = validate_loan_id(loan_id)
    amount = validate_amount(amount)
    status = validate_status(status)

    return _apply_delta(db, loan_id, completed_effect(amount, status))


# -------------------------------------------------
# From-scratch computation
# -------------------------------------------------
def reconcile_balance(db: Session, loan_id: int) -> ReconcileResult:
    """
    Recompute and persist the balance from the loan principal and its
    completed payments. Idempotent.

    A non-zero drift is repaired and logged as a warning; the caller gets the
    drift back in the result.
    """
    loan_id = validate_loan_id(loan_id)
    db.flush()

    loan = (
        db.query(Loan)
        .filter(Loan.loan_id == loan_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not loan:
        raise NotFoundError(f"Loan {loan_id} not found")

    expected = expected_balance(db, loan)
    if expected < 0:
        logger.error(
            "loan %s: completed payments exceed principal by %s",
            loan_id, -expected,
            extra={"loan_id": loan_id},
        )
        raise InvariantViolationError(
            f"Completed payments exceed the principal of loan {loan_id}",
            loan_id=loan_id,
            persisted=loan.remaining_balance,
            expected=expected,
        )

    previous = money(loan.remaining_balance) if loan.remaining_balance is not None else None
    drift = money(previous - expected) if previous is not None else money(0)

    if previous is None:
        logger.info("loan %s: balance initialised to %s", loan_id, expected, extra={"loan_id": loan_id})
    elif drift != 0:
        logger.warning(
            "loan %s: balance drift %s repaired (%s -> %s)",
            loan_id, drift, previous, expected,
            extra={"loan_id": loan_id},
        )

    loan.remaining_balance = expected
    settle_loan_status(loan)
    db.flush()

    return ReconcileResult(
        loan_id=loan_id,
        previous_balance=previous,
        remaining_balance=expected,
        drift=drift,
        status=loan.status,
    )


def verify_balance(db: Session, loan_id: int) -> Decimal:
    """Raise InvariantViolationError if the persisted balance has drifted. Never writes."""
    loan_id = validate_loan_id(loan_id)

    loan = db.get(Loan, loan_id)
    if not loan:
        raise NotFoundError(f"Loan {loan_id} not found")

    expected = expected_balance(db, loan)
    persisted = money(loan.remaining_balance) if loan.remaining_balance is not None else None

    if persisted != expected:
        logger.error(
            "loan %s: persisted balance %s, expected %s",
            loan_id, persisted, expected,
            extra={"loan_id": loan_id},
        )
        raise InvariantViolationError(
            f"Loan {loan_id} balance {persisted} disagrees with payment history ({expected})",
            loan_id=loan_id,
            persisted=persisted,
            expected=expected,
        )
    return persisted


def audit_balances(db: Session) -> list[dict]:
    """Every loan whose persisted balance disagrees with its payment history."""
    paid = (
        db.query(
            Payment.loan_id.label("loan_id"),
            func.sum(Payment.amount).label("paid"),
        )
        .filter(Payment.status == PAYMENT_COMPLETED)
        .group_by(Payment.loan_id)
        .subquery()
    )

    rows = (
        db.query(Loan, func.coalesce(paid.c.paid, 0))
        .outerjoin(paid, paid.c.loan_id == Loan.loan_id)
        .order_by(Loan.loan_id.asc())
        .all()
    )

    drifted = []
    for loan, paid_total in rows:
        expected = money(money(loan.principal) - money(paid_total))
        persisted = money(loan.remaining_balance) if loan.remaining_balance is not None else None
        if persisted != expected:
            drifted.append(
                {
                    "loan_id": loan.loan_id,
                    "persisted_balance": persisted,
                    "expected_balance": expected,
                    "drift": money(persisted - expected) if persisted is not None else None,
                }
            )

    if drifted:
        logger.error("balance audit: %d loan(s) drifted", len(drifted))
    return drifted
