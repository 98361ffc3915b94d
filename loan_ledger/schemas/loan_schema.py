from pydantic import BaseModel, Field, field_validator
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Literal

from loan_ledger.schemas.common import Money, Pagination, empty_to_none

LoanStatus = Literal["pending", "approved", "active", "completed", "rejected", "overdue", "defaulted"]


class LoanCreate(BaseModel):
    client_id: int = Field(gt=0)

    loan_amount: Decimal = Field(gt=0, max_digits=15, decimal_places=2)
    interest_rate: Decimal = Field(ge=0, max_digits=5, decimal_places=2)
    term_months: int = Field(gt=0)

    purpose: Optional[str] = None
    start_date: Optional[date] = None
    payment_frequency: Literal["weekly", "biweekly", "monthly"] = "monthly"

    @field_validator("purpose", mode="before")
    def blank_to_none(cls, v):
        return empty_to_none(v)


class LoanUpdate(BaseModel):
    # no remaining_balance / approved_amount / status: those move through the workflow
    loan_amount: Optional[Decimal] = Field(None, gt=0, max_digits=15, decimal_places=2)
    interest_rate: Optional[Decimal] = Field(None, ge=0, max_digits=5, decimal_places=2)
    term_months: Optional[int] = Field(None, gt=0)
    purpose: Optional[str] = None
    start_date: Optional[date] = None
    next_due_date: Optional[date] = None
    payment_frequency: Optional[Literal["weekly", "biweekly", "monthly"]] = None


class LoanApprove(BaseModel):
    approved_amount: Optional[Decimal] = Field(None, gt=0, max_digits=15, decimal_places=2)
    notes: Optional[str] = None
    approved_by: Optional[int] = None


class LoanReject(BaseModel):
    notes: Optional[str] = None
    approved_by: Optional[int] = None


class LoanActivate(BaseModel):
    start_date: Optional[date] = None


class LoanOut(BaseModel):
    loan_id: int
    client_id: int

    loan_amount: Money
    approved_amount: Optional[Money] = None
    installment_amount: Optional[Money] = None
    interest_rate: Decimal
    term_months: int

    purpose: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    next_due_date: Optional[date] = None
    payment_frequency: str

    status: str
    remaining_balance: Optional[Money] = None

    approval_date: Optional[datetime] = None
    approval_notes: Optional[str] = None
    approved_by: Optional[int] = None
    created_on: Optional[datetime] = None

    class Config:
        from_attributes = True


class LoanListOut(BaseModel):
    loans: List[LoanOut]
    pagination: Pagination


class ActiveLoanOut(BaseModel):
    loan_id: int
    client_id: int
    client_name: str
    loan_amount: Money
    remaining_balance: Optional[Money] = None
    status: str


class LoanStatsOut(BaseModel):
    total_loans: int = 0
    pending: int = 0
    approved: int = 0
    active: int = 0
    completed: int = 0
    rejected: int = 0
    overdue: int = 0
    defaulted: int = 0
    total_amount: Money = Decimal("0.00")
    average_amount: Money = Decimal("0.00")
    average_interest_rate: Decimal = Decimal("0.00")


class ReconcileOut(BaseModel):
    loan_id: int
    previous_balance: Optional[Money] = None
    remaining_balance: Money
    drift: Money
    status: str
