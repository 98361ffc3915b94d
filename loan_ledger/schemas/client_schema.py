from datetime import datetime
from typing import Optional, List, Literal

from pydantic import BaseModel, Field, field_validator

from loan_ledger.schemas.common import Pagination, empty_to_none


class ClientCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = None
    city: Optional[str] = Field(None, max_length=50)
    country: str = Field("United States", max_length=50)
    status: Literal["active", "inactive", "blacklisted"] = "active"

    @field_validator("email", "phone", "address", "city", mode="before")
    def blank_to_none(cls, v):
        return empty_to_none(v)


class ClientUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, min_length=1, max_length=50)
    email: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = None
    city: Optional[str] = Field(None, max_length=50)
    country: Optional[str] = Field(None, max_length=50)
    status: Optional[Literal["active", "inactive", "blacklisted"]] = None


class ClientOut(BaseModel):
    client_id: int
    first_name: str
    last_name: str
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: str
    status: str
    created_on: Optional[datetime] = None

    class Config:
        from_attributes = True


class ClientListOut(BaseModel):
    clients: List[ClientOut]
    pagination: Pagination


class ClientStatsOut(BaseModel):
    total_clients: int = 0
    active_clients: int = 0
    inactive_clients: int = 0
    blacklisted_clients: int = 0


class ClientBriefOut(BaseModel):
    client_id: int
    first_name: str
    last_name: str

    class Config:
        from_attributes = True
