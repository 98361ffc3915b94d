from pydantic import BaseModel
from datetime import date
from typing import Optional, Literal

from loan_ledger.schemas.common import Money


class SummaryOut(BaseModel):
    total_active_loans: int
    total_outstanding: Money
    collections: Money
    average_loan_amount: Money
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class LoanBalanceRowOut(BaseModel):
    loan_id: int
    client_id: int
    client_name: str
    status: str
    principal: Money
    total_paid: Money
    remaining_balance: Optional[Money] = None


class DriftRowOut(BaseModel):
    loan_id: int
    persisted_balance: Optional[Money] = None
    expected_balance: Money
    drift: Optional[Money] = None


class OverdueLoanRowOut(BaseModel):
    loan_id: int
    client_name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    next_due_date: date
    days_overdue: int
    amount_due: Optional[Money] = None
    loan_amount: Money
    remaining_balance: Optional[Money] = None
    overdue_severity: Literal["Mild", "Moderate", "Severe"]


class PaymentHistoryRowOut(BaseModel):
    payment_date: date
    total_payments: int
    total_amount: Money
    on_time_payments: int
    late_payments: int
    avg_payment_amount: Money
