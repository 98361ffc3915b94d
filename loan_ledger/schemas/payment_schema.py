from pydantic import BaseModel, Field, field_validator
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Literal

from loan_ledger.schemas.common import Money, Pagination, empty_to_none

PaymentStatus = Literal["pending", "completed", "failed"]
PaymentMethod = Literal["cash", "bank_transfer", "credit_card", "check", "online"]


class PaymentCreate(BaseModel):
    loan_id: int = Field(gt=0)
    amount: Decimal = Field(gt=0, max_digits=15, decimal_places=2)
    payment_date: Optional[date] = None
    payment_method: PaymentMethod = "cash"
    reference_number: Optional[str] = None
    status: PaymentStatus = "completed"
    notes: Optional[str] = None
    processed_by: Optional[int] = None

    @field_validator("reference_number", "notes", mode="before")
    def blank_to_none(cls, v):
        return empty_to_none(v)


class PaymentUpdate(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=15, decimal_places=2)
    payment_date: Optional[date] = None
    payment_method: Optional[PaymentMethod] = None
    reference_number: Optional[str] = None
    status: Optional[PaymentStatus] = None
    notes: Optional[str] = None
    processed_by: Optional[int] = None


class PaymentOut(BaseModel):
    payment_id: int
    loan_id: int
    client_id: int
    amount: Money
    payment_date: date
    payment_method: str
    reference_number: Optional[str] = None
    status: str
    notes: Optional[str] = None
    processed_by: Optional[int] = None
    created_on: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentResult(BaseModel):
    payment: PaymentOut
    new_remaining_balance: Money
    new_status: str


class PaymentDeleteResult(BaseModel):
    payment_id: int
    loan_id: int
    new_remaining_balance: Money
    new_status: str


class PaymentRowOut(PaymentOut):
    client_name: Optional[str] = None


class PaymentListOut(BaseModel):
    payments: List[PaymentRowOut]
    pagination: Pagination


class PaymentStatsOut(BaseModel):
    total_payments: int = 0
    total_amount: Money = Decimal("0.00")
    completed_payments: int = 0
    pending_payments: int = 0
    failed_payments: int = 0
    average_payment: Money = Decimal("0.00")
