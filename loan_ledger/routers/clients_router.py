from math import ceil
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import case, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette import status

from loan_ledger.core.exceptions import NotFoundError
from loan_ledger.core.logging import get_logger
from loan_ledger.models.client_model import Client
from loan_ledger.models.loan_model import Loan
from loan_ledger.schemas.client_schema import (
    ClientCreate,
    ClientUpdate,
    ClientOut,
    ClientListOut,
    ClientStatsOut,
    ClientBriefOut,
)
from loan_ledger.utils.database import get_db

router = APIRouter(prefix="/clients", tags=["Clients"])

logger = get_logger(__name__)


def _get_client_or_404(db: Session, client_id: int) -> Client:
    client = db.query(Client).filter(Client.client_id == client_id).first()
    if not client:
        raise NotFoundError(f"Client {client_id} not found")
    return client


def _commit_or_409(db: Session):
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A client with this email already exists.",
        )


# CREATE
@router.post("", response_model=ClientOut, status_code=status.HTTP_201_CREATED)
def create_client(payload: ClientCreate, db: Session = Depends(get_db)):
    client = Client(**payload.model_dump())
    db.add(client)
    _commit_or_409(db)
    db.refresh(client)

    logger.info("client %s created", client.client_id)
    return client


# READ ALL
@router.get("", response_model=ClientListOut)
def list_clients(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=200),
        search: Optional[str] = None,
        client_status: Optional[str] = Query(None, alias="status"),
        db: Session = Depends(get_db),
):
    q = db.query(Client)

    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Client.first_name.ilike(like),
                Client.last_name.ilike(like),
                Client.email.ilike(like),
            )
        )
    if client_status:
        q = q.filter(Client.status == client_status)

    total = q.count()
    rows = (
        q.order_by(Client.client_id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "clients": rows,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": ceil(total / limit),
        },
    }


# STATS
@router.get("/stats", response_model=ClientStatsOut)
def client_stats(db: Session = Depends(get_db)):
    total, active, inactive, blacklisted = db.query(
        func.count(Client.client_id),
        func.coalesce(func.sum(case((Client.status == "active", 1), else_=0)), 0),
        func.coalesce(func.sum(case((Client.status == "inactive", 1), else_=0)), 0),
        func.coalesce(func.sum(case((Client.status == "blacklisted", 1), else_=0)), 0),
    ).one()

    return ClientStatsOut(
        total_clients=int(total),
        active_clients=int(active),
        inactive_clients=int(inactive),
        blacklisted_clients=int(blacklisted),
    )


# CLIENTS WITH ACTIVE LOANS (payment form picker)
@router.get("/with-active-loans", response_model=list[ClientBriefOut])
def clients_with_active_loans(db: Session = Depends(get_db)):
    return (
        db.query(Client)
        .join(Loan, Loan.client_id == Client.client_id)
        .filter(Loan.status == "active")
        .distinct()
        .order_by(Client.last_name.asc(), Client.first_name.asc())
        .all()
    )


# READ ONE
@router.get("/{client_id}", response_model=ClientOut)
def get_client(client_id: int, db: Session = Depends(get_db)):
    return _get_client_or_404(db, client_id)


# UPDATE
@router.put("/{client_id}", response_model=ClientOut)
def update_client(client_id: int, payload: ClientUpdate, db: Session = Depends(get_db)):
    client = _get_client_or_404(db, client_id)

    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(client, field, value)

    _commit_or_409(db)
    db.refresh(client)
    return client


# DELETE
@router.delete("/{client_id}")
def delete_client(client_id: int, db: Session = Depends(get_db)):
    client = _get_client_or_404(db, client_id)

    # loans and their payments go with the client
    db.delete(client)
    db.commit()

    logger.info("client %s deleted", client_id)
    return {"message": "Client deleted successfully"}
