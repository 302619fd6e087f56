"""
Reset windows for document counters.

KOT numbers restart every local day; bill, receipt and expense-voucher
numbers restart on April 1 (local), the start of the fiscal year. The local
clock is a fixed UTC offset rather than a tz database zone, so a key only
depends on the instant and the offset passed in.

  period_key("kot", t)      -> "2025-03-15"
  period_key("bill", t)     -> "2024"   (FY 2024-25)
"""
import datetime as dt
from typing import Optional, Tuple

KOT = "kot"
BILL = "bill"
RECEIPT = "receipt"
EXPENSE = "expense"

COUNTER_FAMILIES = (KOT, BILL, RECEIPT, EXPENSE)
DAILY_FAMILIES = frozenset({KOT})

FISCAL_YEAR_START_MONTH = 4
DEFAULT_UTC_OFFSET_MINUTES = 330
DEFAULT_UTC_OFFSET = dt.timedelta(minutes=DEFAULT_UTC_OFFSET_MINUTES)


def offset_from_minutes(raw, default: dt.timedelta = DEFAULT_UTC_OFFSET) -> dt.timedelta:
    """Parse an offset in minutes (int or env string); fall back to `default`."""
    if raw is None:
        return default
    try:
        minutes = int(str(raw).strip())
    except ValueError:
        return default
    # Real-world offsets stay within UTC-12:00 .. UTC+14:00
    if not -720 <= minutes <= 840:
        return default
    return dt.timedelta(minutes=minutes)


def _check_family(family: str) -> str:
    if family not in COUNTER_FAMILIES:
        raise ValueError(f"Unknown counter family {family!r}")
    return family


def to_utc_naive(instant: dt.datetime) -> dt.datetime:
    """Aware datetimes are converted to UTC; naive ones are taken as UTC already."""
    if instant.tzinfo is not None:
        instant = instant.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return instant


def local_wall_clock(instant: dt.datetime, utc_offset: dt.timedelta = DEFAULT_UTC_OFFSET) -> dt.datetime:
    return to_utc_naive(instant) + utc_offset


def fiscal_start_year(local_day: dt.date) -> int:
    if local_day.month >= FISCAL_YEAR_START_MONTH:
        return local_day.year
    return local_day.year - 1


def fiscal_year_label(start_year: int) -> str:
    """2025 -> '2025-26'"""
    return f"{start_year}-{(start_year + 1) % 100:02d}"


def period_key(family: str, instant: Optional[dt.datetime] = None,
               utc_offset: dt.timedelta = DEFAULT_UTC_OFFSET) -> str:
    """Return the key of the reset window containing `instant` for `family`.

    `instant` defaults to now. Raises ValueError only for an unknown family.
    """
    _check_family(family)
    if instant is None:
        instant = dt.datetime.now(dt.timezone.utc)
    local = local_wall_clock(instant, utc_offset)
    if family in DAILY_FAMILIES:
        return local.strftime("%Y-%m-%d")
    return str(fiscal_start_year(local.date()))


def period_window(family: str, instant: Optional[dt.datetime] = None,
                  utc_offset: dt.timedelta = DEFAULT_UTC_OFFSET) -> Tuple[dt.datetime, dt.datetime]:
    """UTC bounds [start, end) of the reset window containing `instant`.

    Both bounds are naive UTC datetimes, matching the created_utc columns.
    """
    key = period_key(family, instant, utc_offset)
    if family in DAILY_FAMILIES:
        start_local = dt.datetime.strptime(key, "%Y-%m-%d")
        end_local = start_local + dt.timedelta(days=1)
    else:
        year = int(key)
        start_local = dt.datetime(year, FISCAL_YEAR_START_MONTH, 1)
        end_local = dt.datetime(year + 1, FISCAL_YEAR_START_MONTH, 1)
    return start_local - utc_offset, end_local - utc_offset


def period_digits(family: str, key: str) -> str:
    """Compact period marker used in display numbers.

    kot '2025-03-15' -> '250315'; yearly '2025' -> '2526'.
    """
    _check_family(family)
    if family in DAILY_FAMILIES:
        return key.replace("-", "")[2:]
    year = int(key)
    return f"{year % 100:02d}{(year + 1) % 100:02d}"
