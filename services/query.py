"""
Typed filter / sort / pagination for booking listings.

Only whitelisted fields and operators are accepted, so a query string can
never reach the ORM as an arbitrary expression. Request syntax::

    ?status=pending                     equality
    ?status[in]=pending,confirmed       membership
    ?start_date[gte]=2024-01-01         comparison
    ?sort=-start_date,total_amount&page=2&limit=20
"""
import re
from datetime import datetime, time, timedelta
from dataclasses import dataclass, field
from typing import Any, List, Tuple

from sqlalchemy import and_, or_

from models.booking import Booking, BOOKING_STATUSES, PAID, REFUNDED, UNPAID
from services.errors import ValidationError
from services.pricing import to_date, to_money

EQUALITY_OPS = ("eq", "ne", "in")
RANGE_OPS = ("eq", "ne", "gt", "gte", "lt", "lte")

_KEY_RE = re.compile(r"^(?P<field>[a-z_]+)(?:\[(?P<op>[a-z]+)\])?$")


def _int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Expected an integer, got {value!r}", "Invalid filter value")


def _choice(choices):
    def parse(value):
        if value not in choices:
            raise ValidationError(f"Unknown value {value!r}", "Invalid filter value")
        return value
    return parse


def _datetime_day(value):
    return to_date(value, "created_at")


# field -> (column, value parser, allowed operators)
FILTER_FIELDS = {
    "status": (Booking.status, _choice(BOOKING_STATUSES), EQUALITY_OPS),
    "payment_status": (Booking.payment_status, _choice((UNPAID, PAID, REFUNDED)), EQUALITY_OPS),
    "bike_id": (Booking.bike_id, _int, EQUALITY_OPS),
    "customer_id": (Booking.customer_id, _int, EQUALITY_OPS),
    "vendor_id": (Booking.vendor_id, _int, EQUALITY_OPS),
    "start_date": (Booking.start_date, lambda v: to_date(v, "start_date"), RANGE_OPS),
    "end_date": (Booking.end_date, lambda v: to_date(v, "end_date"), RANGE_OPS),
    "created_at": (Booking.created_at, _datetime_day, RANGE_OPS),
    "total_amount": (Booking.total_amount, to_money, RANGE_OPS),
}

# timestamp columns filtered by calendar day
DAY_FIELDS = ("created_at",)

SORT_FIELDS = {
    "created_at": Booking.created_at,
    "start_date": Booking.start_date,
    "end_date": Booking.end_date,
    "total_amount": Booking.total_amount,
    "status": Booking.status,
    "id": Booking.id,
}

DEFAULT_SORT = "-created_at"

# keys that are not filters
CONTROL_KEYS = ("sort", "page", "limit")


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any

    def clause(self):
        column = FILTER_FIELDS[self.field][0]
        if self.field in DAY_FIELDS:
            return self._day_clause(column)
        if self.op == "eq":
            return column == self.value
        if self.op == "ne":
            return column != self.value
        if self.op == "in":
            return column.in_(self.value)
        if self.op == "gt":
            return column > self.value
        if self.op == "gte":
            return column >= self.value
        if self.op == "lt":
            return column < self.value
        return column <= self.value

    def _day_clause(self, column):
        # a calendar day on a timestamp column is the half-open range [day, day + 1)
        start = datetime.combine(self.value, time.min)
        end = start + timedelta(days=1)
        if self.op == "eq":
            return and_(column >= start, column < end)
        if self.op == "ne":
            return or_(column < start, column >= end)
        if self.op == "gt":
            return column >= end
        if self.op == "gte":
            return column >= start
        if self.op == "lt":
            return column < start
        return column < end


@dataclass
class BookingQuery:
    conditions: List[Condition] = field(default_factory=list)
    sort: List[Tuple[str, bool]] = field(default_factory=lambda: [("created_at", True)])
    page: int = 1
    limit: int = 10

    def where(self, field_name, op, raw_value):
        entry = FILTER_FIELDS.get(field_name)
        if entry is None:
            raise ValidationError(f"Unknown filter field {field_name!r}", "Unknown filter")
        _, parse, ops = entry
        if op not in ops:
            raise ValidationError(f"Operator {op!r} not allowed on {field_name!r}", "Unknown filter")
        if op == "in":
            raw = raw_value.split(",") if isinstance(raw_value, str) else list(raw_value)
            values = [parse(v.strip() if isinstance(v, str) else v) for v in raw if v != ""]
            if not values:
                raise ValidationError(f"Empty list for {field_name!r}", "Invalid filter value")
            value = values
        else:
            value = parse(raw_value)
        self.conditions.append(Condition(field_name, op, value))
        return self

    def scoped(self, field_name, value):
        """Force an equality filter (caller scope); replaces any user supplied one."""
        self.conditions = [c for c in self.conditions if c.field != field_name]
        return self.where(field_name, "eq", value)

    def clauses(self):
        return [c.clause() for c in self.conditions]

    def order_by(self):
        out = []
        for name, descending in self.sort:
            column = SORT_FIELDS[name]
            out.append(column.desc() if descending else column.asc())
        # stable paging
        out.append(Booking.id.desc())
        return out

    @property
    def offset(self):
        return (self.page - 1) * self.limit


def parse_sort(raw):
    raw = (raw or DEFAULT_SORT).strip()
    out = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        descending = part.startswith("-")
        name = part.lstrip("-+")
        if name not in SORT_FIELDS:
            raise ValidationError(f"Cannot sort by {name!r}", "Unknown sort field")
        out.append((name, descending))
    return out or [("created_at", True)]


def parse_query(args, default_limit=10, max_limit=100) -> BookingQuery:
    """Build a BookingQuery from a MultiDict/dict of request args."""
    page = _int(args.get("page", 1))
    limit = _int(args.get("limit", default_limit))
    if page < 1:
        raise ValidationError("page must be >= 1", "Invalid page")
    if limit < 1 or limit > max_limit:
        raise ValidationError(f"limit must be between 1 and {max_limit}", "Invalid page size")

    query = BookingQuery(sort=parse_sort(args.get("sort")), page=page, limit=limit)

    keys = args.keys() if hasattr(args, "keys") else args
    for key in keys:
        if key in CONTROL_KEYS:
            continue
        match = _KEY_RE.match(key)
        if not match:
            raise ValidationError(f"Malformed filter key {key!r}", "Unknown filter")
        query.where(match.group("field"), match.group("op") or "eq", args.get(key))
    return query
