import math
from datetime import date, datetime, time, timedelta, timezone

# ── Recurrence constants ──────────────────────────────────────────────────────

DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"
FREQUENCIES = (DAILY, WEEKLY, MONTHLY)

# Indexed by date.weekday(): Monday == 0
WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

DAILY_SAMPLE_SIZE = 3
PRAYERS_PER_LEVEL = 7

# Linear-congruential step used by the daily sample (shared with the browser client)
_LCG_MULTIPLIER = 9301
_LCG_INCREMENT = 49297
_LCG_MODULUS = 233280


# ── Clock helpers ─────────────────────────────────────────────────────────────

def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored timestamp takes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def as_local(moment, tz) -> datetime:
    """Return `moment` as an aware datetime in `tz`.

    Naive datetimes are read as UTC (storage form); plain dates as local midnight.
    """
    if moment is None:
        return datetime.now(tz)
    if not isinstance(moment, datetime):
        return datetime.combine(moment, time.min, tzinfo=tz)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz)


# ── Due rules ─────────────────────────────────────────────────────────────────

def weekday_name(day: date) -> str:
    return WEEKDAY_NAMES[day.weekday()]


def date_seed(day: date) -> int:
    """20250614 for 14 June 2025."""
    return int(day.strftime("%Y%m%d"))


def seeded_shuffle(items, seed: int) -> list:
    """Bottom-up Fisher–Yates pass driven by the date-seeded LCG.

    The output must stay identical to the browser client's shuffle, so the
    float expression for the swap index is kept as-is.
    """
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        seed = (seed * _LCG_MULTIPLIER + _LCG_INCREMENT) % _LCG_MODULUS
        j = math.floor(seed / _LCG_MODULUS * (i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def is_due_weekly(card: dict, day: date) -> bool:
    return card.get("frequency") == WEEKLY and card.get("day_of_week") == weekday_name(day)


def is_due_monthly(card: dict, day: date) -> bool:
    if card.get("frequency") != MONTHLY:
        return False
    if card.get("day_of_month") == day.day:
        return True
    return day.day in (card.get("days_of_month") or [])


def select_due(cards, frequency: str, day: date) -> list:
    """Cards to show for `frequency` on local calendar `day`.

    `cards` keeps the store's order. For "daily" the result is the daily
    sample followed by today's weekly and monthly matches; only the daily
    subset is ever sampled.
    """
    if frequency == WEEKLY:
        return [c for c in cards if is_due_weekly(c, day)]
    if frequency == MONTHLY:
        return [c for c in cards if is_due_monthly(c, day)]
    if frequency != DAILY:
        raise ValueError(f"unknown frequency: {frequency!r}")

    daily = [c for c in cards if c.get("frequency") == DAILY]
    if len(daily) > DAILY_SAMPLE_SIZE:
        daily = seeded_shuffle(daily, date_seed(day))[:DAILY_SAMPLE_SIZE]
    weekly = [c for c in cards if is_due_weekly(c, day)]
    monthly = [c for c in cards if is_due_monthly(c, day)]
    return daily + weekly + monthly


# ── Period windows ────────────────────────────────────────────────────────────

def _midnight(day: date, tz) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def day_window(moment: datetime):
    """[local midnight, next local midnight) around an aware `moment`."""
    tz = moment.tzinfo
    today = moment.date()
    return _midnight(today, tz), _midnight(today + timedelta(days=1), tz)


def period_window(frequency, moment: datetime):
    """Half-open window of the current period for `frequency`.

    Weeks start on Sunday. Anything that is not weekly or monthly gets the
    daily window.
    """
    tz = moment.tzinfo
    today = moment.date()
    if frequency == WEEKLY:
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        return _midnight(start, tz), _midnight(start + timedelta(days=7), tz)
    if frequency == MONTHLY:
        start = today.replace(day=1)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return _midnight(start, tz), _midnight(end, tz)
    return day_window(moment)


def utc_window(window):
    start, end = window
    return to_utc_naive(start), to_utc_naive(end)


# ── Leveling ──────────────────────────────────────────────────────────────────

def level_for(total_prayers: int) -> int:
    return max(1, total_prayers // PRAYERS_PER_LEVEL + 1)


def is_level_up(total_prayers: int) -> bool:
    """True right after the mark that opened a new level (8, 15, 22, ...)."""
    return total_prayers > 1 and total_prayers % PRAYERS_PER_LEVEL == 1
