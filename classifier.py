# classifier.py
# Expiry buckets, stock levels and today's dose slots for cabinet medicines.
#
# Everything here is a pure function of its arguments: callers pass "today"
# (and "now" where time of day matters) so the rules can be tested without a clock.

import re
from collections import namedtuple
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Union

from inventory import DoseLogEntry, MedicineRecord
from settings import DEFAULT_LOW_STOCK_THRESHOLD, DEFAULT_SOON_WINDOW_DAYS

DateLike = Union[date, datetime]

# A slot is still offered if it is at most this late.
SLOT_GRACE_MINUTES = 30

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


class ExpiryBucket(str, Enum):
    SAFE = "safe"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


class StockLevel(str, Enum):
    IN_STOCK = "in_stock"
    LOW = "low"
    OUT = "out"


DoseOutcome = namedtuple("DoseOutcome", "remaining low_stock out_of_stock")


def _as_date(d: DateLike) -> date:
    return d.date() if isinstance(d, datetime) else d


# -------------------------
# Expiry
# -------------------------
def classify_expiry(expiry: DateLike, today: DateLike,
                    soon_window_days: int = DEFAULT_SOON_WINDOW_DAYS) -> ExpiryBucket:
    """Bucket an expiry date relative to ``today`` at calendar-day granularity.

    Expired strictly before today; expiring soon from today up to and including
    ``today + soon_window_days``; safe after that.
    """
    expiry, today = _as_date(expiry), _as_date(today)
    if expiry < today:
        return ExpiryBucket.EXPIRED
    if expiry <= today + timedelta(days=soon_window_days):
        return ExpiryBucket.EXPIRING_SOON
    return ExpiryBucket.SAFE


def classify_medicine(medicine: MedicineRecord, today: DateLike,
                      soon_window_days: int = DEFAULT_SOON_WINDOW_DAYS) -> Optional[ExpiryBucket]:
    """None when the medicine has no expiry date recorded."""
    if medicine.expiry_date is None:
        return None
    return classify_expiry(medicine.expiry_date, today, soon_window_days)


def days_until_expiry(expiry: DateLike, today: DateLike) -> int:
    return (_as_date(expiry) - _as_date(today)).days


def is_expired(medicine: MedicineRecord, today: DateLike) -> bool:
    return classify_medicine(medicine, today) is ExpiryBucket.EXPIRED


def is_expiring_soon(medicine: MedicineRecord, today: DateLike,
                     soon_window_days: int = DEFAULT_SOON_WINDOW_DAYS) -> bool:
    return classify_medicine(medicine, today, soon_window_days) is ExpiryBucket.EXPIRING_SOON


def should_block_dose(medicine: MedicineRecord, today: DateLike) -> bool:
    return is_expired(medicine, today)


def should_show_blocking_alert(medicine: MedicineRecord, today: DateLike) -> bool:
    # once acknowledged, the prompt stays quiet until a new strip resets the flag
    return is_expired(medicine, today) and not medicine.expiry_alert_shown


def format_expiry(expiry: Optional[DateLike]) -> str:
    if expiry is None:
        return "Not set"
    return f"{_MONTHS[expiry.month - 1]} {expiry.year}"


def expiry_status_text(medicine: MedicineRecord, today: DateLike,
                       soon_window_days: int = DEFAULT_SOON_WINDOW_DAYS) -> str:
    bucket = classify_medicine(medicine, today, soon_window_days)
    if bucket is None:
        return "No expiry set"
    if bucket is ExpiryBucket.EXPIRED:
        return "Expired"
    if bucket is ExpiryBucket.EXPIRING_SOON:
        return f"Expiring in {days_until_expiry(medicine.expiry_date, today)} days"
    return "Valid"


def expiry_badge_text(medicine: MedicineRecord, today: DateLike,
                      soon_window_days: int = DEFAULT_SOON_WINDOW_DAYS) -> str:
    bucket = classify_medicine(medicine, today, soon_window_days)
    if bucket is ExpiryBucket.EXPIRED:
        return "EXPIRED"
    if bucket is ExpiryBucket.EXPIRING_SOON:
        return f"{days_until_expiry(medicine.expiry_date, today)}d left"
    return "Safe"


def expiry_alert_message(medicine: MedicineRecord, today: DateLike,
                         soon_window_days: int = DEFAULT_SOON_WINDOW_DAYS) -> str:
    bucket = classify_medicine(medicine, today, soon_window_days)
    if bucket is None:
        return "No expiry date set"
    days = days_until_expiry(medicine.expiry_date, today)
    if bucket is ExpiryBucket.EXPIRED:
        return f"Expired {-days} days ago"
    if bucket is ExpiryBucket.EXPIRING_SOON:
        return f"Expires in {days} days" if days > 0 else "Expires today"
    return f"Valid for {days} more days"


_EXPIRY_PATTERNS = (
    (re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$"), ("y", "m", "d")),
    (re.compile(r"^(\d{4})-(\d{1,2})$"), ("y", "m")),
    (re.compile(r"^(\d{1,2})/(\d{4})$"), ("m", "y")),
)


def parse_expiry(text: str) -> date:
    """Parse a printed expiry: YYYY-MM-DD, YYYY-MM or MM/YYYY.

    Month-only expiries resolve to the 1st of that month.
    """
    s = (text or "").strip()
    for pattern, order in _EXPIRY_PATTERNS:
        m = pattern.match(s)
        if not m:
            continue
        parts = dict(zip(order, (int(g) for g in m.groups())))
        try:
            return date(parts["y"], parts["m"], parts.get("d", 1))
        except ValueError as e:
            raise ValueError(f"invalid expiry {text!r}: {e}") from e
    raise ValueError(f"unrecognised expiry {text!r}; use YYYY-MM or YYYY-MM-DD")


def default_strip_expiry(today: DateLike) -> date:
    """1st of the month, six months after ``today``'s month."""
    today = _as_date(today)
    months = today.year * 12 + (today.month - 1) + 6
    return date(months // 12, months % 12 + 1, 1)


# -------------------------
# Stock
# -------------------------
def is_low_stock(tablet_count: int, threshold: int = DEFAULT_LOW_STOCK_THRESHOLD) -> bool:
    return 0 < tablet_count <= threshold


def is_out_of_stock(tablet_count: int) -> bool:
    return tablet_count <= 0


def stock_level(tablet_count: int, threshold: int = DEFAULT_LOW_STOCK_THRESHOLD) -> StockLevel:
    if is_out_of_stock(tablet_count):
        return StockLevel.OUT
    if is_low_stock(tablet_count, threshold):
        return StockLevel.LOW
    return StockLevel.IN_STOCK


def apply_dose(medicine: MedicineRecord, quantity_taken: int,
               threshold: int = DEFAULT_LOW_STOCK_THRESHOLD) -> DoseOutcome:
    """Stock left after a dose. Assumes 0 <= quantity_taken <= tablet_count."""
    remaining = medicine.tablet_count - quantity_taken
    return DoseOutcome(remaining, is_low_stock(remaining, threshold), remaining == 0)


# -------------------------
# Dose slots
# -------------------------
def logged_slots_today(medicine_id: str, todays_logs: Optional[Iterable[DoseLogEntry]]) -> List[str]:
    if not todays_logs:
        return []
    return [log.scheduled_time for log in todays_logs
            if log.medicine_id == medicine_id and log.scheduled_time is not None]


def available_dose_slots(medicine: MedicineRecord,
                         todays_logs: Optional[Iterable[DoseLogEntry]]) -> List[str]:
    """Scheduled slots of ``medicine`` with no dose logged today.

    ``todays_logs`` is the whole day's log set for the user; entries for other
    medicines are ignored. ``None`` means the logs could not be read, in which
    case no slot is excluded.
    """
    logged = set(logged_slots_today(medicine.id, todays_logs))
    return [t for t in medicine.schedule_times if t not in logged]


def _slot_minutes(label: str) -> Optional[int]:
    parts = label.split(":")
    if len(parts) != 2:
        return None
    try:
        return int(parts[0]) * 60 + int(parts[1])
    except ValueError:
        return None


def next_available_slot(schedule_times: Sequence[str], logged: Iterable[str],
                        now: Union[datetime, time]) -> Optional[str]:
    """Slot to preselect: the first unlogged one not more than 30 minutes past,
    else any unlogged one, else None."""
    logged = set(logged)
    open_slots = [t for t in schedule_times if t not in logged]
    now_t = now.time() if isinstance(now, datetime) else now
    now_minutes = now_t.hour * 60 + now_t.minute
    for t in open_slots:
        minutes = _slot_minutes(t)
        if minutes is not None and minutes >= now_minutes - SLOT_GRACE_MINUTES:
            return t
    return open_slots[0] if open_slots else None


def format_slot(label: str) -> str:
    minutes = _slot_minutes(label)
    if minutes is None:
        return label
    hour, minute = divmod(minutes, 60)
    period = "PM" if hour >= 12 else "AM"
    display = hour - 12 if hour > 12 else (12 if hour == 0 else hour)
    return f"{display}:{minute:02d} {period}"


# -------------------------
# Cabinet-wide
# -------------------------
@dataclass(frozen=True)
class CabinetSummary:
    total: int
    expired: int
    expiring_soon: int
    low_stock: int
    out_of_stock: int

    @property
    def needs_attention(self) -> bool:
        return self.expired > 0 or self.expiring_soon > 0

    @property
    def attention_count(self) -> int:
        return self.expired + self.expiring_soon + self.low_stock

    def __str__(self):
        return (f"Cabinet: {self.total} total, {self.expired} expired, "
                f"{self.expiring_soon} expiring soon")


def summarize(medicines: Sequence[MedicineRecord], today: DateLike,
              soon_window_days: int = DEFAULT_SOON_WINDOW_DAYS,
              threshold: int = DEFAULT_LOW_STOCK_THRESHOLD) -> CabinetSummary:
    buckets = [classify_medicine(m, today, soon_window_days) for m in medicines]
    return CabinetSummary(
        total=len(medicines),
        expired=sum(1 for b in buckets if b is ExpiryBucket.EXPIRED),
        expiring_soon=sum(1 for b in buckets if b is ExpiryBucket.EXPIRING_SOON),
        low_stock=sum(1 for m in medicines if is_low_stock(m.tablet_count, threshold)),
        out_of_stock=sum(1 for m in medicines if is_out_of_stock(m.tablet_count)),
    )


def needing_attention(medicines: Sequence[MedicineRecord], today: DateLike,
                      soon_window_days: int = DEFAULT_SOON_WINDOW_DAYS) -> List[MedicineRecord]:
    """Expired medicines first, then expiring ones; soonest expiry first within each."""
    order = {ExpiryBucket.EXPIRED: 0, ExpiryBucket.EXPIRING_SOON: 1}
    flagged = [(order[b], days_until_expiry(m.expiry_date, today), m)
               for m, b in ((m, classify_medicine(m, today, soon_window_days)) for m in medicines)
               if b in order]
    flagged.sort(key=lambda x: (x[0], x[1]))
    return [m for _, _, m in flagged]
