from datetime import date
from math import ceil
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session
from starlette import status

from loan_ledger.core.exceptions import LedgerValidationError, NotFoundError
from loan_ledger.core.logging import get_logger
from loan_ledger.models.client_model import Client
from loan_ledger.models.loan_model import Loan
from loan_ledger.models.payment_model import Payment
from loan_ledger.routers.loans_router import PAYABLE_STATUSES
from loan_ledger.schemas.payment_schema import (
    PaymentCreate,
    PaymentUpdate,
    PaymentOut,
    PaymentRowOut,
    PaymentResult,
    PaymentDeleteResult,
    PaymentListOut,
    PaymentStatsOut,
)
from loan_ledger.utils.balance_ledger import (
    ledger_transaction,
    apply_new_payment,
    apply_payment_update,
    apply_payment_deletion,
)
from loan_ledger.utils.database import get_db
from loan_ledger.utils.loan_calculations import money

router = APIRouter(prefix="/payments", tags=["Payments"])

logger = get_logger(__name__)


# -------------------------------------------------
# Helpers
# -------------------------------------------------
def _lock_payment(db: Session, payment_id: int) -> Payment:
    # payment row first, loan row second: same order on every write path
    payment = (
        db.query(Payment)
        .filter(Payment.payment_id == payment_id)
        .with_for_update()
        .first()
    )
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def _rows_out(rows) -> list[PaymentRowOut]:
    return [
        PaymentRowOut(
            **PaymentOut.model_validate(payment).model_dump(),
            client_name=client.full_name if client else None,
        )
        for payment, client in rows
    ]


def _payments_query(db: Session):
    return (
        db.query(Payment, Client)
        .outerjoin(Client, Client.client_id == Payment.client_id)
    )


# =================================================
# 🔹 STATIC ROUTES (ALWAYS FIRST)
# =================================================
@router.get("/stats", response_model=PaymentStatsOut)
def payment_stats(db: Session = Depends(get_db)):
    row = db.query(
        func.count(Payment.payment_id),
        func.coalesce(func.sum(Payment.amount), 0),
        func.coalesce(func.sum(case((Payment.status == "completed", 1), else_=0)), 0),
        func.coalesce(func.sum(case((Payment.status == "pending", 1), else_=0)), 0),
        func.coalesce(func.sum(case((Payment.status == "failed", 1), else_=0)), 0),
        func.coalesce(func.avg(Payment.amount), 0),
    ).one()

    return PaymentStatsOut(
        total_payments=int(row[0]),
        total_amount=money(row[1]),
        completed_payments=int(row[2]),
        pending_payments=int(row[3]),
        failed_payments=int(row[4]),
        average_payment=money(row[5]),
    )


@router.get("", response_model=PaymentListOut)
def list_payments(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=200),
        search: Optional[str] = None,
        payment_status: Optional[str] = Query(None, alias="status"),
        payment_method: Optional[str] = None,
        loan_id: Optional[int] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        db: Session = Depends(get_db),
):
    q = _payments_query(db)

    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Client.first_name.ilike(like),
                Client.last_name.ilike(like),
                Payment.reference_number.ilike(like),
            )
        )
    if payment_status:
        q = q.filter(Payment.status == payment_status)
    if payment_method:
        q = q.filter(Payment.payment_method == payment_method)
    if loan_id is not None:
        q = q.filter(Payment.loan_id == loan_id)
    if date_from:
        q = q.filter(Payment.payment_date >= date_from)
    if date_to:
        q = q.filter(Payment.payment_date <= date_to)

    total = q.count()
    rows = (
        q.order_by(Payment.payment_id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "payments": _rows_out(rows),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": ceil(total / limit),
        },
    }


@router.get("/loan/{loan_id}", response_model=list[PaymentRowOut])
def payments_by_loan(loan_id: int, db: Session = Depends(get_db)):
    rows = (
        _payments_query(db)
        .filter(Payment.loan_id == loan_id)
        .order_by(Payment.payment_date.desc(), Payment.payment_id.desc())
        .all()
    )
    return _rows_out(rows)


# =================================================
# 🔹 PAYMENT WRITES (each one moves the loan balance)
# =================================================
@router.post("", response_model=PaymentResult, status_code=status.HTTP_201_CREATED)
def create_payment(payload: PaymentCreate, db: Session = Depends(get_db)):
    amount = money(payload.amount)

    with ledger_transaction(db):
        loan = db.get(Loan, payload.loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {payload.loan_id} not found")
        if loan.status not in PAYABLE_STATUSES:
            raise LedgerValidationError(f"Loan status not eligible for payment: {loan.status}")

        balance = apply_new_payment(db, payload.loan_id, amount, payload.status)

        payment = Payment(
            loan_id=loan.loan_id,
            client_id=loan.client_id,
            amount=amount,
            payment_date=payload.payment_date or date.today(),
            payment_method=payload.payment_method,
            reference_number=payload.reference_number,
            status=payload.status,
            notes=payload.notes,
            processed_by=payload.processed_by,
        )
        db.add(payment)
        db.flush()

    db.refresh(payment)
    logger.info(
        "payment %s on loan %s: %s %s, balance now %s",
        payment.payment_id, payment.loan_id, payment.status, amount, balance.remaining_balance,
    )

    return PaymentResult(
        payment=PaymentOut.model_validate(payment),
        new_remaining_balance=balance.remaining_balance,
        new_status=balance.status,
    )


# =================================================
# 🔹 DYNAMIC ROUTES (LAST)
# =================================================
@router.get("/{payment_id}", response_model=PaymentRowOut)
def get_payment(payment_id: int, db: Session = Depends(get_db)):
    row = _payments_query(db).filter(Payment.payment_id == payment_id).first()
    if not row:
        raise NotFoundError(f"Payment {payment_id} not found")
    return _rows_out([row])[0]


@router.put("/{payment_id}", response_model=PaymentResult)
def update_payment(payment_id: int, payload: PaymentUpdate, db: Session = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise LedgerValidationError("No fields to update")

    with ledger_transaction(db):
        payment = _lock_payment(db, payment_id)

        old_amount, old_status = money(payment.amount), payment.status
        new_amount = money(changes.pop("amount", old_amount))
        new_status = changes.pop("status", old_status)

        balance = apply_payment_update(
            db, payment.loan_id, old_amount, old_status, new_amount, new_status
        )

        payment.amount = new_amount
        payment.status = new_status
        for field, value in changes.items():
            setattr(payment, field, value)

    db.refresh(payment)
    logger.info(
        "payment %s updated (%s %s -> %s %s), loan %s balance now %s",
        payment_id, old_status, old_amount, new_status, new_amount,
        payment.loan_id, balance.remaining_balance,
    )

    return PaymentResult(
        payment=PaymentOut.model_validate(payment),
        new_remaining_balance=balance.remaining_balance,
        new_status=balance.status,
    )


@router.delete("/{payment_id}", response_model=PaymentDeleteResult)
def delete_payment(payment_id: int, db: Session = Depends(get_db)):
    with ledger_transaction(db):
        payment = _lock_payment(db, payment_id)
        loan_id = payment.loan_id

        balance = apply_payment_deletion(db, loan_id, payment.amount, payment.status)
        db.delete(payment)

    logger.info("payment %s deleted, loan %s balance now %s", payment_id, loan_id, balance.remaining_balance)

    return PaymentDeleteResult(
        payment_id=payment_id,
        loan_id=loan_id,
        new_remaining_balance=balance.remaining_balance,
        new_status=balance.status,
    )
