from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from loan_ledger.core.exceptions import LedgerValidationError
from loan_ledger.core.logging import get_logger
from loan_ledger.models.client_model import Client
from loan_ledger.models.loan_model import Loan
from loan_ledger.models.payment_model import Payment
from loan_ledger.routers.loans_router import PAYABLE_STATUSES
from loan_ledger.schemas.loan_schema import ReconcileOut
from loan_ledger.schemas.report_schema import (
    SummaryOut,
    LoanBalanceRowOut,
    DriftRowOut,
    OverdueLoanRowOut,
    PaymentHistoryRowOut,
)
from loan_ledger.utils.balance_ledger import (
    PAYMENT_COMPLETED,
    audit_balances,
    ledger_transaction,
    reconcile_balance,
)
from loan_ledger.utils.database import get_db
from loan_ledger.utils.loan_calculations import money

router = APIRouter(prefix="/reports", tags=["Reports"])

logger = get_logger(__name__)

# Reports only read balances. The one write path (repair) goes through
# reconcile_balance.

# loans that are expected to be paying down on a schedule
OVERDUE_CANDIDATE_STATUSES = ("active", "overdue")


def overdue_severity(days_overdue: int) -> str:
    if days_overdue > 30:
        return "Severe"
    if days_overdue > 7:
        return "Moderate"
    return "Mild"


@router.get("/summary", response_model=SummaryOut)
def summary(
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        db: Session = Depends(get_db),
):
    active_count, outstanding, avg_amount = (
        db.query(
            func.count(Loan.loan_id),
            func.coalesce(func.sum(Loan.remaining_balance), 0),
            func.coalesce(func.avg(Loan.loan_amount), 0),
        )
        .filter(Loan.status.in_(PAYABLE_STATUSES))
        .one()
    )

    collections_q = db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
        Payment.status == PAYMENT_COMPLETED
    )
    if date_from:
        collections_q = collections_q.filter(Payment.payment_date >= date_from)
    if date_to:
        collections_q = collections_q.filter(Payment.payment_date <= date_to)

    return SummaryOut(
        total_active_loans=int(active_count),
        total_outstanding=money(outstanding),
        collections=money(collections_q.scalar()),
        average_loan_amount=money(avg_amount),
        date_from=date_from,
        date_to=date_to,
    )


@router.get("/loans", response_model=list[LoanBalanceRowOut])
def loan_balances(
        loan_status: Optional[str] = Query(None, alias="status"),
        db: Session = Depends(get_db),
):
    paid = (
        db.query(
            Payment.loan_id.label("loan_id"),
            func.sum(Payment.amount).label("total_paid"),
        )
        .filter(Payment.status == PAYMENT_COMPLETED)
        .group_by(Payment.loan_id)
        .subquery()
    )

    q = (
        db.query(Loan, Client, func.coalesce(paid.c.total_paid, 0))
        .join(Client, Client.client_id == Loan.client_id)
        .outerjoin(paid, paid.c.loan_id == Loan.loan_id)
    )
    if loan_status:
        q = q.filter(Loan.status == loan_status)

    return [
        LoanBalanceRowOut(
            loan_id=loan.loan_id,
            client_id=client.client_id,
            client_name=client.full_name,
            status=loan.status,
            principal=money(loan.principal),
            total_paid=money(total_paid),
            remaining_balance=loan.remaining_balance,
        )
        for loan, client, total_paid in q.order_by(Loan.loan_id.desc()).all()
    ]


@router.get("/balance-audit", response_model=list[DriftRowOut])
def balance_audit(db: Session = Depends(get_db)):
    return audit_balances(db)


@router.post("/balance-audit/{loan_id}/reconcile", response_model=ReconcileOut)
def repair_balance(loan_id: int, db: Session = Depends(get_db)):
    with ledger_transaction(db):
        result = reconcile_balance(db, loan_id)

    logger.info("loan %s reconciled from report audit (drift %s)", loan_id, result.drift)
    return ReconcileOut.model_validate(result, from_attributes=True)


@router.get("/overdue-loans", response_model=list[OverdueLoanRowOut])
def overdue_loans(
        as_of: Optional[date] = None,
        db: Session = Depends(get_db),
):
    as_of = as_of or date.today()

    rows = (
        db.query(Loan, Client)
        .join(Client, Client.client_id == Loan.client_id)
        .filter(
            Loan.status.in_(OVERDUE_CANDIDATE_STATUSES),
            Loan.next_due_date.isnot(None),
            Loan.next_due_date < as_of,
        )
        .order_by(Loan.next_due_date.asc(), Loan.loan_id.asc())
        .all()
    )

    out = []
    for loan, client in rows:
        days = (as_of - loan.next_due_date).days
        out.append(
            OverdueLoanRowOut(
                loan_id=loan.loan_id,
                client_name=client.full_name,
                phone=client.phone,
                email=client.email,
                next_due_date=loan.next_due_date,
                days_overdue=days,
                amount_due=loan.installment_amount,
                loan_amount=loan.loan_amount,
                remaining_balance=loan.remaining_balance,
                overdue_severity=overdue_severity(days),
            )
        )
    return out


@router.get("/payment-history", response_model=list[PaymentHistoryRowOut])
def payment_history(
        date_from: date,
        date_to: date,
        db: Session = Depends(get_db),
):
    if date_from > date_to:
        raise LedgerValidationError("date_from must not be after date_to")

    on_time = or_(Loan.next_due_date.is_(None), Payment.payment_date <= Loan.next_due_date)

    rows = (
        db.query(
            Payment.payment_date,
            func.count(Payment.payment_id),
            func.coalesce(func.sum(Payment.amount), 0),
            func.coalesce(func.sum(case((on_time, 1), else_=0)), 0),
            func.coalesce(func.sum(case((Payment.payment_date > Loan.next_due_date, 1), else_=0)), 0),
            func.coalesce(func.avg(Payment.amount), 0),
        )
        .outerjoin(Loan, Loan.loan_id == Payment.loan_id)
        .filter(
            Payment.status == PAYMENT_COMPLETED,
            Payment.payment_date >= date_from,
            Payment.payment_date <= date_to,
        )
        .group_by(Payment.payment_date)
        .order_by(Payment.payment_date.desc())
        .all()
    )

    return [
        PaymentHistoryRowOut(
            payment_date=day,
            total_payments=int(count),
            total_amount=money(total),
            on_time_payments=int(on_time_count),
            late_payments=int(late_count),
            avg_payment_amount=money(avg),
        )
        for day, count, total, on_time_count, late_count, avg in rows
    ]
