# loan_ledger/models/loan_model.py

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Date,
    DateTime,
    Numeric,
    ForeignKey,
    Index,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from loan_ledger.utils.database import Base


class Loan(Base):
    __tablename__ = "loans"

    __table_args__ = (
        Index("ix_loans_status", "status"),
        Index("ix_loans_client_status", "client_id", "status"),
        Index("ix_loans_dates", "start_date", "end_date"),
        Index("ix_loans_next_due", "next_due_date"),
    )

    loan_id = Column(Integer, primary_key=True, index=True)

    client_id = Column(Integer, ForeignKey("clients.client_id", ondelete="CASCADE"), nullable=False, index=True)

    # requested principal
    loan_amount = Column(Numeric(15, 2), nullable=False)
    # set on approval; when present it is the principal the balance is based on
    approved_amount = Column(Numeric(15, 2), nullable=True)
    installment_amount = Column(Numeric(10, 2), nullable=True)

    interest_rate = Column(Numeric(5, 2), nullable=False)
    term_months = Column(Integer, nullable=False)
    purpose = Column(Text, nullable=True)

    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    next_due_date = Column(Date, nullable=True)
    payment_frequency = Column(String(20), nullable=False, server_default="monthly")

    # pending / approved / active / completed / rejected / overdue / defaulted
    status = Column(String(20), nullable=False, server_default="pending")

    # derived: principal - sum(completed payments); only the balance ledger writes it
    remaining_balance = Column(Numeric(15, 2), nullable=True)

    approval_date = Column(DateTime, nullable=True)
    approval_notes = Column(Text, nullable=True)
    approved_by = Column(Integer, nullable=True)

    created_on = Column(DateTime, server_default=func.now())
    updated_on = Column(DateTime, server_default=func.now(), onupdate=func.now())

    client = relationship("Client", back_populates="loans")

    payments = relationship(
        "Payment",
        back_populates="loan",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def principal(self):
        return self.approved_amount if self.approved_amount is not None else self.loan_amount
