from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, PlainSerializer

from loan_ledger.utils.loan_calculations import money

# money goes over the wire as a 2-place decimal string, e.g. "7500.00"
Money = Annotated[
    Decimal,
    PlainSerializer(lambda v: str(money(v)), return_type=str, when_used="json"),
]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


def empty_to_none(v):
    if v is None:
        return None
    v = str(v).strip()
    return v or None
