"""Pytest configuration and fixtures."""

import os

# never let the suite reach for a real server database
os.environ["DATABASE_URL"] = "sqlite://"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import loan_ledger.models  # noqa: F401  register tables
from loan_ledger.models.client_model import Client
from loan_ledger.models.loan_model import Loan
from loan_ledger.utils.database import Base, build_engine, get_db


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine, fresh schema per test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_loan(db):
    """Insert a client plus a loan and return the loan id.

    The balance is left unset so tests seed it through reconcile_balance,
    the same way the approval workflow does.
    """

    def _make(
            loan_amount: str = "10000.00",
            approved_amount: str | None = "10000.00",
            status: str = "approved",
            remaining_balance: str | None = None,
    ) -> int:
        client = Client(first_name="Maria", last_name="Santos", email=None)
        db.add(client)
        db.flush()

        loan = Loan(
            client_id=client.client_id,
            loan_amount=Decimal(loan_amount),
            approved_amount=Decimal(approved_amount) if approved_amount else None,
            interest_rate=Decimal("12.00"),
            term_months=12,
            status=status,
            remaining_balance=Decimal(remaining_balance) if remaining_balance else None,
        )
        db.add(loan)
        db.flush()
        loan_id = loan.loan_id

        # read the id before commit: touching the expired row afterwards
        # would open a new (write-locking) SQLite transaction
        db.commit()
        return loan_id

    return _make


@pytest.fixture
def api(session_factory):
    """TestClient wired to the per-test database."""
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def approved_loan(api):
    """Client + loan of 10000.00 taken through approval over the API."""
    client = api.post("/clients", json={"first_name": "Juan", "last_name": "Dela Cruz"}).json()
    loan = api.post(
        "/loans",
        json={
            "client_id": client["client_id"],
            "loan_amount": "12000.00",
            "interest_rate": "10.00",
            "term_months": 12,
            "start_date": "2024-01-15",
        },
    ).json()
    approved = api.post(
        f"/loans/{loan['loan_id']}/approve",
        json={"approved_amount": "10000.00", "notes": "ok"},
    )
    assert approved.status_code == 200
    return approved.json()
