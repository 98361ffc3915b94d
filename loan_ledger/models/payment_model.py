from sqlalchemy import (
    Column, Integer, String, Date, DateTime, Numeric, Text, ForeignKey, Index, CheckConstraint
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from loan_ledger.utils.database import Base


class Payment(Base):
    __tablename__ = "payments"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        Index("ix_payments_date", "payment_date"),
        Index("ix_payments_status", "status"),
        Index("ix_payments_method", "payment_method"),
    )

    payment_id = Column(Integer, primary_key=True, index=True)

    loan_id = Column(Integer, ForeignKey("loans.loan_id", ondelete="CASCADE"), nullable=False, index=True)
    # copy of loans.client_id, kept for query convenience
    client_id = Column(Integer, ForeignKey("clients.client_id", ondelete="CASCADE"), nullable=False, index=True)

    amount = Column(Numeric(15, 2), nullable=False)
    payment_date = Column(Date, server_default=func.current_date(), nullable=False)

    # cash / bank_transfer / credit_card / check / online
    payment_method = Column(String(20), nullable=False, default="cash")
    reference_number = Column(String(100), nullable=True)

    # pending / completed / failed
    status = Column(String(20), nullable=False, default="completed")

    notes = Column(Text, nullable=True)
    processed_by = Column(Integer, nullable=True)

    created_on = Column(DateTime, server_default=func.now())
    updated_on = Column(DateTime, server_default=func.now(), onupdate=func.now())

    loan = relationship("Loan", back_populates="payments")
