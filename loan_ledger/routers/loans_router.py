from datetime import date, datetime
from math import ceil
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from starlette import status

from loan_ledger.core.exceptions import LedgerValidationError, NotFoundError
from loan_ledger.core.logging import get_logger
from loan_ledger.models.client_model import Client
from loan_ledger.models.loan_model import Loan
from loan_ledger.schemas.loan_schema import (
    LoanCreate,
    LoanUpdate,
    LoanApprove,
    LoanReject,
    LoanActivate,
    LoanOut,
    LoanListOut,
    ActiveLoanOut,
    LoanStatsOut,
    ReconcileOut,
)
from loan_ledger.utils.balance_ledger import ledger_transaction, reconcile_balance
from loan_ledger.utils.database import get_db
from loan_ledger.utils.loan_calculations import (
    money,
    add_months,
    compute_end_date,
    compute_installment_amount,
)

router = APIRouter(prefix="/loans", tags=["Loans"])

logger = get_logger(__name__)

# loans that can receive new payments
PAYABLE_STATUSES = ("approved", "active", "overdue")


# -------------------------------------------------
# Helpers
# -------------------------------------------------
def get_loan_or_404(db: Session, loan_id: int) -> Loan:
    loan = db.query(Loan).filter(Loan.loan_id == loan_id).first()
    if not loan:
        raise NotFoundError(f"Loan {loan_id} not found")
    return loan


def _lock_loan(db: Session, loan_id: int) -> Loan:
    # status checks read the row under lock, inside the writing transaction
    loan = (
        db.query(Loan)
        .filter(Loan.loan_id == loan_id)
        .with_for_update()
        .first()
    )
    if not loan:
        raise NotFoundError(f"Loan {loan_id} not found")
    return loan


def _require_status(loan: Loan, *allowed: str):
    if loan.status not in allowed:
        raise LedgerValidationError(
            f"Loan status '{loan.status}' does not allow this action (expected: {', '.join(allowed)})"
        )


def _refresh_schedule(loan: Loan):
    loan.end_date = compute_end_date(loan.start_date, loan.term_months)
    loan.installment_amount = compute_installment_amount(
        loan.principal, loan.interest_rate, loan.term_months
    )


# =================================================
# 🔹 STATIC ROUTES (ALWAYS FIRST)
# =================================================
@router.get("/stats", response_model=LoanStatsOut)
def loan_stats(db: Session = Depends(get_db)):
    out = LoanStatsOut()

    rows = db.query(Loan.status, func.count(Loan.loan_id)).group_by(Loan.status).all()
    for loan_status, count in rows:
        if loan_status in LoanStatsOut.model_fields:
            setattr(out, loan_status, count)
        out.total_loans += count

    total_amount, avg_amount, avg_rate = db.query(
        func.coalesce(func.sum(Loan.loan_amount), 0),
        func.coalesce(func.avg(Loan.loan_amount), 0),
        func.coalesce(func.avg(Loan.interest_rate), 0),
    ).one()

    out.total_amount = money(total_amount)
    out.average_amount = money(avg_amount)
    out.average_interest_rate = money(avg_rate)
    return out


@router.get("/active", response_model=list[ActiveLoanOut])
def active_loans(db: Session = Depends(get_db)):
    rows = (
        db.query(Loan, Client)
        .join(Client, Client.client_id == Loan.client_id)
        .filter(Loan.status.in_(PAYABLE_STATUSES))
        .order_by(Client.first_name.asc(), Client.last_name.asc())
        .all()
    )

    return [
        ActiveLoanOut(
            loan_id=loan.loan_id,
            client_id=client.client_id,
            client_name=client.full_name,
            loan_amount=loan.loan_amount,
            remaining_balance=loan.remaining_balance,
            status=loan.status,
        )
        for loan, client in rows
    ]


@router.get("", response_model=LoanListOut)
def list_loans(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=200),
        loan_status: Optional[str] = Query(None, alias="status"),
        client_id: Optional[int] = None,
        search: Optional[str] = None,
        db: Session = Depends(get_db),
):
    q = db.query(Loan).join(Client, Client.client_id == Loan.client_id)

    if loan_status:
        q = q.filter(Loan.status == loan_status)
    if client_id is not None:
        q = q.filter(Loan.client_id == client_id)
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Client.first_name.ilike(like),
                Client.last_name.ilike(like),
                Loan.purpose.ilike(like),
            )
        )

    total = q.count()
    rows = (
        q.order_by(Loan.loan_id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "loans": rows,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": ceil(total / limit),
        },
    }


# =================================================
# 🔹 LOAN CREATION
# =================================================
@router.post("", response_model=LoanOut, status_code=status.HTTP_201_CREATED)
def create_loan(payload: LoanCreate, db: Session = Depends(get_db)):
    client = db.query(Client).filter(Client.client_id == payload.client_id).first()
    if not client:
        raise NotFoundError(f"Client {payload.client_id} not found")
    if client.status != "active":
        raise LedgerValidationError(f"Client status not eligible for a loan: {client.status}")

    principal = money(payload.loan_amount)

    loan = Loan(
        client_id=payload.client_id,
        loan_amount=principal,
        interest_rate=payload.interest_rate,
        term_months=payload.term_months,
        purpose=payload.purpose,
        start_date=payload.start_date,
        payment_frequency=payload.payment_frequency,
        status="pending",
        # seeded from the requested amount; approval re-seeds it
        remaining_balance=principal,
    )
    _refresh_schedule(loan)

    with ledger_transaction(db):
        db.add(loan)

    db.refresh(loan)
    logger.info("loan %s created for client %s (%s)", loan.loan_id, loan.client_id, principal)
    return loan


# =================================================
# 🔹 DYNAMIC ROUTES (LAST)
# =================================================
@router.get("/{loan_id}", response_model=LoanOut)
def get_loan(loan_id: int, db: Session = Depends(get_db)):
    # balance is read as persisted, never recomputed here
    return get_loan_or_404(db, loan_id)


@router.put("/{loan_id}", response_model=LoanOut)
def update_loan(loan_id: int, payload: LoanUpdate, db: Session = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise LedgerValidationError("No fields to update")

    with ledger_transaction(db):
        loan = _lock_loan(db, loan_id)

        if "loan_amount" in changes and loan.approved_amount is not None:
            raise LedgerValidationError("Loan amount cannot change after approval")
        principal_changed = "loan_amount" in changes

        for field, value in changes.items():
            setattr(loan, field, money(value) if field == "loan_amount" else value)

        if changes.keys() & {"loan_amount", "interest_rate", "term_months", "start_date"}:
            _refresh_schedule(loan)

        if principal_changed:
            reconcile_balance(db, loan_id)

    db.refresh(loan)
    return loan


@router.post("/{loan_id}/approve", response_model=LoanOut)
def approve_loan(loan_id: int, payload: LoanApprove, db: Session = Depends(get_db)):
    with ledger_transaction(db):
        loan = _lock_loan(db, loan_id)
        _require_status(loan, "pending")

        loan.status = "approved"
        loan.approved_amount = money(payload.approved_amount or loan.loan_amount)
        loan.approval_notes = payload.notes
        loan.approved_by = payload.approved_by
        loan.approval_date = datetime.now()
        _refresh_schedule(loan)

        # seed the balance from the approved principal, once
        reconcile_balance(db, loan_id)

    db.refresh(loan)
    logger.info("loan %s approved for %s", loan_id, loan.approved_amount, extra={"loan_id": loan_id})
    return loan


@router.post("/{loan_id}/reject", response_model=LoanOut)
def reject_loan(loan_id: int, payload: LoanReject, db: Session = Depends(get_db)):
    with ledger_transaction(db):
        loan = _lock_loan(db, loan_id)
        _require_status(loan, "pending")

        loan.status = "rejected"
        loan.approval_notes = payload.notes
        loan.approved_by = payload.approved_by
        loan.approval_date = datetime.now()

    db.refresh(loan)
    logger.info("loan %s rejected", loan_id, extra={"loan_id": loan_id})
    return loan


@router.post("/{loan_id}/activate", response_model=LoanOut)
def activate_loan(loan_id: int, payload: LoanActivate, db: Session = Depends(get_db)):
    with ledger_transaction(db):
        loan = _lock_loan(db, loan_id)
        _require_status(loan, "approved")

        loan.status = "active"
        loan.start_date = payload.start_date or loan.start_date or date.today()
        loan.next_due_date = add_months(loan.start_date, 1)
        _refresh_schedule(loan)

    db.refresh(loan)
    return loan


@router.post("/{loan_id}/reconcile", response_model=ReconcileOut)
def reconcile_loan(loan_id: int, db: Session = Depends(get_db)):
    with ledger_transaction(db):
        result = reconcile_balance(db, loan_id)
    return ReconcileOut.model_validate(result, from_attributes=True)


@router.delete("/{loan_id}")
def delete_loan(loan_id: int, db: Session = Depends(get_db)):
    with ledger_transaction(db):
        # payments go with the loan (cascade)
        db.delete(_lock_loan(db, loan_id))

    logger.info("loan %s deleted", loan_id, extra={"loan_id": loan_id})
    return {"message": "Loan deleted successfully"}
