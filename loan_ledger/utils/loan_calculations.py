import calendar
from datetime import date
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def money(x) -> Decimal:
    """Always return 2-decimal Decimal with HALF_UP rounding."""
    if x is None:
        x = 0
    if not isinstance(x, Decimal):
        x = Decimal(str(x))
    return x.quantize(CENT, rounding=ROUND_HALF_UP)


def add_months(start: date, months: int) -> date:
    """
    Calendar month arithmetic, clamped to the last day of the target month.

    Example:
      2024-01-31 + 1 month => 2024-02-29
    """
    month_index = start.month - 1 + int(months)
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def compute_end_date(start: date | None, term_months: int) -> date | None:
    if start is None:
        return None
    return add_months(start, term_months)


def compute_installment_amount(
        principal: Decimal,
        interest_rate_percent: Decimal,
        term_months: int,
) -> Decimal:
    """
    FLAT MONTHLY:
      total_interest = principal * (rate% / 100) * (term_months / 12)
      installment    = (principal + total_interest) / term_months

    Example:
      principal=12000, rate=10, term=12 => total 13200.00, installment 1100.00
    """
    months = int(term_months)
    if months <= 0:
        raise ValueError("term_months must be > 0")

    principal = money(principal)
    rate = Decimal(str(interest_rate_percent)) / Decimal("100")
    total_interest = principal * rate * Decimal(months) / Decimal("12")
    return money((principal + total_interest) / Decimal(months))
