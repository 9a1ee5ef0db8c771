import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from services.errors import ValidationError

# GST applied to every rental; the TAX_RATE env var overrides it per deployment
DEFAULT_TAX_RATE = Decimal("0.18")

CENT = Decimal("0.01")


@dataclass(frozen=True)
class Quote:
    duration_days: int
    base_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal

    def to_dict(self):
        return {
            "duration_days": self.duration_days,
            "base_amount": str(self.base_amount),
            "tax_amount": str(self.tax_amount),
            "total_amount": str(self.total_amount),
        }


def to_money(value) -> Decimal:
    """Round half-up to 2 places. Floats go through str() to avoid binary noise."""
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}", "Invalid amount")


def to_date(value, field="date") -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            if "T" in text or " " in text:
                return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
            return date.fromisoformat(text)
        except ValueError:
            pass
    raise ValidationError(f"Invalid {field}: {value!r}", f"Invalid {field}. Use YYYY-MM-DD")


def duration_days(start_date, end_date) -> int:
    start = to_date(start_date, "start_date")
    end = to_date(end_date, "end_date")
    return max(1, math.ceil((end - start).days))


def price(daily_rate, start_date, end_date, tax_rate=None) -> Quote:
    start = to_date(start_date, "start_date")
    end = to_date(end_date, "end_date")
    if end <= start:
        raise ValidationError("end_date must be after start_date", "End date must be after start date")

    rate = to_money(daily_rate)
    if rate < 0:
        raise ValidationError("daily_rate must not be negative", "Invalid amount")

    days = duration_days(start, end)
    tax_rate = DEFAULT_TAX_RATE if tax_rate is None else Decimal(str(tax_rate))

    base = to_money(rate * days)
    tax = to_money(base * tax_rate)
    return Quote(duration_days=days, base_amount=base, tax_amount=tax, total_amount=base + tax)
