"""Server-backed prayer storage.

`PrayerStore` holds the behaviour both backends share (due-card selection,
the single-card status check) and `DatabaseStorage` implements the rest on
top of Flask-SQLAlchemy. The guest mirror lives in `local_storage.py`.
Every operation is scoped to one owner; anything the owner cannot see is
reported as `NotFound`.
"""
import logging
import re
import time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import case, delete, func, or_, update
from sqlalchemy.exc import IntegrityError, OperationalError

from models import (
    DEFAULT_CATEGORIES,
    Category,
    PrayerCard,
    PrayerLog,
    PrayerRequest,
    PrayerStats,
    ReminderSettings,
    db,
)
from schedule import (
    FREQUENCIES,
    MONTHLY,
    PRAYERS_PER_LEVEL,
    WEEKDAY_NAMES,
    WEEKLY,
    as_local,
    day_window,
    is_level_up,
    period_window,
    select_due,
    to_utc_naive,
    utc_window,
    utcnow,
)

logger = logging.getLogger(__name__)

CARD_FIELDS = (
    "name", "frequency", "day_of_week", "day_of_month", "days_of_month",
    "scriptures", "scripture_references", "category_id",
)

_TIME_OF_DAY = re.compile(r"([01]\d|2[0-3]):[0-5]\d")


# ── Errors ────────────────────────────────────────────────────────────────────

class StorageError(Exception):
    code = "storage_error"
    status = 500


class NotFound(StorageError):
    """Missing, or owned by someone else; the two are never told apart."""
    code = "not_found"
    status = 404


class NothingToUndo(NotFound):
    code = "nothing_to_undo"


class ValidationError(StorageError):
    code = "validation_error"
    status = 400

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors or []


class TransientStorageError(StorageError):
    code = "storage_unavailable"
    status = 503


class StorageFull(StorageError):
    """The guest store would outgrow what the browser keeps."""
    code = "storage_full"
    status = 507


# ── Validation ────────────────────────────────────────────────────────────────

def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _string_list(value, field, errors):
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        errors.append(f"{field} must be a list of strings")
        return []
    return list(value)


def validate_card(data):
    """Return normalized card fields or raise ValidationError.

    Day fields the frequency does not use are cleared.
    """
    errors = []

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        errors.append("name is required")
    elif len(name.strip()) > 200:
        errors.append("name must be at most 200 characters")

    frequency = data.get("frequency")
    if frequency not in FREQUENCIES:
        errors.append(f"frequency must be one of {', '.join(FREQUENCIES)}")

    day_of_week = data.get("day_of_week") or None
    if day_of_week is not None and day_of_week not in WEEKDAY_NAMES:
        errors.append("day_of_week must be a weekday name")

    day_of_month = data.get("day_of_month")
    if day_of_month is not None and not (_is_int(day_of_month) and 1 <= day_of_month <= 31):
        errors.append("day_of_month must be between 1 and 31")

    days_of_month = data.get("days_of_month")
    if days_of_month is not None:
        if not isinstance(days_of_month, list) or not all(_is_int(d) and 1 <= d <= 31 for d in days_of_month):
            errors.append("days_of_month must be a list of days between 1 and 31")
        else:
            days_of_month = sorted(set(days_of_month)) or None

    scriptures = _string_list(data.get("scriptures"), "scriptures", errors)
    references = _string_list(data.get("scripture_references"), "scripture_references", errors)
    if len(scriptures) != len(references):
        errors.append("scriptures and scripture_references must have the same length")

    category_id = data.get("category_id")
    if category_id is not None and not _is_int(category_id):
        errors.append("category_id must be an integer")

    if errors:
        raise ValidationError("Invalid prayer card data", errors)

    if frequency != WEEKLY:
        day_of_week = None
    if frequency != MONTHLY:
        day_of_month = None
        days_of_month = None

    return {
        "name": name.strip(),
        "frequency": frequency,
        "day_of_week": day_of_week,
        "day_of_month": day_of_month,
        "days_of_month": days_of_month,
        "scriptures": scriptures,
        "scripture_references": references,
        "category_id": category_id,
    }


def validate_request_text(text):
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Invalid prayer request data", ["text is required"])
    return text.strip()


def validate_category(data):
    errors = []
    for field, limit in (("name", 100), ("color", 20), ("icon", 50)):
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"{field} is required")
        elif len(value.strip()) > limit:
            errors.append(f"{field} must be at most {limit} characters")
    if errors:
        raise ValidationError("Invalid category data", errors)
    return {field: data[field].strip() for field in ("name", "color", "icon")}


def validate_reminder_settings(data, default_timezone):
    errors = []
    times = data.get("reminder_times") or []
    if not isinstance(times, list) or not all(isinstance(t, str) and _TIME_OF_DAY.fullmatch(t) for t in times):
        errors.append("reminder_times must be a list of HH:MM times")
        times = []

    timezone = data.get("timezone") or default_timezone
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        errors.append(f"unknown timezone: {timezone}")

    if errors:
        raise ValidationError("Invalid reminder settings data", errors)
    return {
        "enable_reminders": bool(data.get("enable_reminders", False)),
        "reminder_times": sorted(set(times)),
        "timezone": timezone,
        "enable_browser_notifications": bool(data.get("enable_browser_notifications", False)),
    }


def default_reminder_settings(timezone):
    return {
        "enable_reminders": False,
        "reminder_times": [],
        "timezone": timezone,
        "enable_browser_notifications": False,
    }


# ── Retries ───────────────────────────────────────────────────────────────────

def retry_transient(action, description, attempts=3, backoff=1.0, exponential=False):
    """Run `action`, retrying dropped-connection style failures a few times."""
    for attempt in range(1, attempts + 1):
        try:
            return action()
        except OperationalError as err:
            db.session.rollback()
            if attempt >= attempts:
                logger.error("%s failed after %d attempts: %s", description, attempts, err)
                raise TransientStorageError(f"{description} failed after {attempts} attempts") from err
            delay = backoff * (2 ** (attempt - 1)) if exponential else backoff
            logger.warning("%s failed (attempt %d/%d), retrying in %.1fs: %s",
                           description, attempt, attempts, delay, err)
            time.sleep(delay)


def seed_default_categories(attempts=3, backoff=1.0):
    """Create the shared default categories unless any already exist."""
    def _seed():
        existing = Category.query.filter_by(is_default=True).count()
        if existing:
            logger.info("Found %d existing default categories", existing)
            return 0
        for name, color, icon in DEFAULT_CATEGORIES:
            db.session.add(Category(name=name, color=color, icon=icon, is_default=True, user_id=None))
        db.session.commit()
        logger.info("Default categories initialized")
        return len(DEFAULT_CATEGORIES)

    return retry_transient(_seed, "Default category initialization", attempts, backoff, exponential=True)


# ── Backends ──────────────────────────────────────────────────────────────────

class PrayerStore:
    """Interface shared by `DatabaseStorage` and `LocalStorage`.

    Both return plain dicts of identical shape. Subclasses provide
    list_cards, get_card, create/update/delete_card, the request, category
    and reminder-settings operations, get_stats, mark_complete,
    undo_complete and batch_status.
    """
    is_authenticated = False

    def __init__(self, tz):
        self.tz = tz

    def _local(self, moment=None):
        return as_local(moment, self.tz)

    def list_due(self, frequency, as_of=None):
        if frequency not in FREQUENCIES:
            raise ValidationError("Invalid frequency", [f"frequency must be one of {', '.join(FREQUENCIES)}"])
        return select_due(self.list_cards(), frequency, self._local(as_of).date())

    def has_prayed_today(self, card_id, now=None):
        return self.batch_status([card_id], now=now)[card_id]

    @staticmethod
    def _card_ids(card_ids):
        if not isinstance(card_ids, (list, tuple)) or not all(_is_int(i) for i in card_ids):
            raise ValidationError("Invalid card ids", ["card_ids must be a list of integers"])
        return list(card_ids)

    @staticmethod
    def _already_prayed(stats):
        return {"success": False, "already_prayed": True, "level_up": False, "stats": stats}

    @staticmethod
    def _prayed(stats):
        return {
            "success": True,
            "already_prayed": False,
            "level_up": is_level_up(stats["total_prayers"]),
            "stats": stats,
        }


class DatabaseStorage(PrayerStore):
    is_authenticated = True

    def __init__(self, user_id, tz, create_attempts=3, create_backoff=1.0):
        super().__init__(tz)
        self.user_id = user_id
        self.create_attempts = create_attempts
        self.create_backoff = create_backoff

    # Categories

    def _visible_categories(self):
        return Category.query.filter(or_(Category.user_id == self.user_id, Category.is_default.is_(True)))

    def list_categories(self):
        rows = self._visible_categories().order_by(Category.is_default, Category.name).all()
        return [c.to_dict() for c in rows]

    def create_category(self, data):
        fields = validate_category(data)
        category = Category(user_id=self.user_id, is_default=False, **fields)
        db.session.add(category)
        db.session.commit()
        return category.to_dict()

    def _check_category(self, category_id):
        if category_id is None:
            return
        if self._visible_categories().filter(Category.id == category_id).first() is None:
            raise NotFound("Category not found")

    # Cards

    def _owned_card(self, card_id):
        card = PrayerCard.query.filter_by(id=card_id, user_id=self.user_id).first()
        if card is None:
            raise NotFound("Prayer card not found")
        return card

    @staticmethod
    def _card_dict(card, category, active_count):
        data = card.to_dict()
        data["category"] = category.to_dict() if category else None
        data["active_request_count"] = int(active_count or 0)
        return data

    def list_cards(self):
        """All cards with category and active-request count, in one grouped query."""
        active = func.count(case((PrayerRequest.is_archived.is_(False), 1)))
        rows = (
            db.session.query(PrayerCard, Category, active)
            .outerjoin(Category, PrayerCard.category_id == Category.id)
            .outerjoin(PrayerRequest, PrayerRequest.prayer_card_id == PrayerCard.id)
            .filter(PrayerCard.user_id == self.user_id)
            .group_by(PrayerCard.id, Category.id)
            .order_by(PrayerCard.updated_at.desc(), PrayerCard.id.desc())
            .all()
        )
        return [self._card_dict(card, category, count) for card, category, count in rows]

    def get_card(self, card_id):
        card = self._owned_card(card_id)
        requests = self._request_rows(card.id)
        data = self._card_dict(card, card.category, sum(1 for r in requests if not r.is_archived))
        data["requests"] = [r.to_dict() for r in requests]
        return data

    def create_card(self, data):
        fields = validate_card(data)
        self._check_category(fields["category_id"])

        def _insert():
            now = utcnow()
            card = PrayerCard(user_id=self.user_id, created_at=now, updated_at=now, **fields)
            db.session.add(card)
            db.session.commit()
            return card

        card = retry_transient(_insert, "Creating prayer card", self.create_attempts, self.create_backoff)
        logger.info("Created prayer card %s for user %s", card.id, self.user_id)
        return self._card_dict(card, card.category, 0)

    def update_card(self, card_id, updates):
        card = self._owned_card(card_id)
        merged = card.to_dict()
        merged.update({k: v for k, v in updates.items() if k in CARD_FIELDS})
        fields = validate_card(merged)
        if fields["category_id"] != card.category_id:
            self._check_category(fields["category_id"])
        for key, value in fields.items():
            setattr(card, key, value)
        card.updated_at = utcnow()
        db.session.commit()
        return self.get_card(card.id)

    def delete_card(self, card_id):
        card = self._owned_card(card_id)
        db.session.delete(card)
        db.session.commit()
        logger.info("Deleted prayer card %s for user %s", card_id, self.user_id)

    # Requests

    @staticmethod
    def _request_rows(card_id):
        return (PrayerRequest.query
                .filter_by(prayer_card_id=card_id)
                .order_by(PrayerRequest.created_at.desc(), PrayerRequest.id.desc())
                .all())

    def _owned_request(self, request_id):
        prayer_request = (PrayerRequest.query
                          .join(PrayerCard, PrayerRequest.prayer_card_id == PrayerCard.id)
                          .filter(PrayerRequest.id == request_id, PrayerCard.user_id == self.user_id)
                          .first())
        if prayer_request is None:
            raise NotFound("Prayer request not found")
        return prayer_request

    def list_requests(self, card_id):
        card = self._owned_card(card_id)
        return [r.to_dict() for r in self._request_rows(card.id)]

    def create_request(self, card_id, text):
        card = self._owned_card(card_id)
        prayer_request = PrayerRequest(text=validate_request_text(text), prayer_card_id=card.id,
                                       is_archived=False)
        db.session.add(prayer_request)
        db.session.commit()
        return prayer_request.to_dict()

    def update_request(self, request_id, text):
        prayer_request = self._owned_request(request_id)
        prayer_request.text = validate_request_text(text)
        db.session.commit()
        return prayer_request.to_dict()

    def archive_request(self, request_id):
        prayer_request = self._owned_request(request_id)
        if not prayer_request.is_archived:
            prayer_request.is_archived = True
            prayer_request.archived_at = utcnow()
            db.session.commit()
        return prayer_request.to_dict()

    def delete_request(self, request_id):
        prayer_request = self._owned_request(request_id)
        db.session.delete(prayer_request)
        db.session.commit()

    # Reminder settings

    def get_reminder_settings(self):
        row = ReminderSettings.query.filter_by(user_id=self.user_id).first()
        return row.to_dict() if row else default_reminder_settings(self.tz.key)

    def save_reminder_settings(self, data):
        fields = validate_reminder_settings(data, self.tz.key)
        row = ReminderSettings.query.filter_by(user_id=self.user_id).first()
        if row is None:
            row = ReminderSettings(user_id=self.user_id, **fields)
            db.session.add(row)
        else:
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
        db.session.commit()
        return row.to_dict()

    # Stats and completion tracking

    def _get_or_create_stats(self):
        stats = PrayerStats.query.filter_by(user_id=self.user_id).first()
        if stats is None:
            db.session.add(PrayerStats(user_id=self.user_id, total_prayers=0, current_level=1))
            try:
                db.session.commit()
            except IntegrityError:
                # another request created the row first
                db.session.rollback()
            stats = PrayerStats.query.filter_by(user_id=self.user_id).one()
        return stats

    def _read_stats(self):
        total, level = (db.session.query(PrayerStats.total_prayers, PrayerStats.current_level)
                        .filter(PrayerStats.user_id == self.user_id)
                        .one())
        return {"total_prayers": total, "current_level": level}

    def get_stats(self):
        self._get_or_create_stats()
        return self._read_stats()

    def batch_status(self, card_ids, now=None):
        card_ids = self._card_ids(card_ids)
        status = {card_id: False for card_id in card_ids}
        if not card_ids:
            return status
        start, end = utc_window(day_window(self._local(now)))
        rows = (db.session.query(PrayerLog.prayer_card_id)
                .filter(PrayerLog.user_id == self.user_id,
                        PrayerLog.prayer_card_id.in_(card_ids),
                        PrayerLog.prayed_at >= start,
                        PrayerLog.prayed_at < end)
                .group_by(PrayerLog.prayer_card_id)
                .all())
        for (card_id,) in rows:
            status[card_id] = True
        return status

    def mark_complete(self, card_id, now=None):
        """Log a prayer for today and bump the counter in one transaction.

        The (user, card, day) unique constraint makes a racing second insert
        fail, which is reported the same way as the pre-check.
        """
        card = self._owned_card(card_id)
        local_now = self._local(now)
        self._get_or_create_stats()

        if self.has_prayed_today(card.id, now=local_now):
            logger.warning("User %s already prayed for card %s today", self.user_id, card.id)
            return self._already_prayed(self._read_stats())

        try:
            db.session.add(PrayerLog(user_id=self.user_id, prayer_card_id=card.id,
                                     prayed_at=to_utc_naive(local_now), prayed_on=local_now.date()))
            db.session.execute(
                update(PrayerStats)
                .where(PrayerStats.user_id == self.user_id)
                .values(total_prayers=PrayerStats.total_prayers + 1,
                        current_level=(PrayerStats.total_prayers + 1) // PRAYERS_PER_LEVEL + 1,
                        updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.warning("Concurrent prayer mark for user %s card %s ignored", self.user_id, card.id)
            return self._already_prayed(self._read_stats())

        stats = self._read_stats()
        logger.info("User %s prayed for card %s (total %d)", self.user_id, card.id, stats["total_prayers"])
        return self._prayed(stats)

    def _latest_log_id(self, card_id, start, end):
        row = (db.session.query(PrayerLog.id)
               .filter(PrayerLog.user_id == self.user_id,
                       PrayerLog.prayer_card_id == card_id,
                       PrayerLog.prayed_at >= start,
                       PrayerLog.prayed_at < end)
               .order_by(PrayerLog.prayed_at.desc(), PrayerLog.id.desc())
               .first())
        return row[0] if row else None

    def undo_complete(self, card_id, now=None):
        """Remove the latest log inside the card's own frequency period."""
        card = self._owned_card(card_id)
        self._get_or_create_stats()
        start, end = utc_window(period_window(card.frequency, self._local(now)))
        log_id = self._latest_log_id(card.id, start, end)
        if log_id is None:
            raise NothingToUndo("No prayer log found to undo")

        # A concurrent undo may have removed the same log since the select;
        # only the request whose DELETE matched may decrement.
        deleted = db.session.execute(
            delete(PrayerLog)
            .where(PrayerLog.id == log_id)
            .execution_options(synchronize_session=False)
        )
        if deleted.rowcount != 1:
            db.session.rollback()
            logger.warning("Prayer log %s for card %s was already removed", log_id, card.id)
            raise NothingToUndo("No prayer log found to undo")

        remaining = PrayerStats.total_prayers - 1
        db.session.execute(
            update(PrayerStats)
            .where(PrayerStats.user_id == self.user_id)
            .values(total_prayers=case((PrayerStats.total_prayers > 0, remaining), else_=0),
                    current_level=case((PrayerStats.total_prayers > 0, remaining // PRAYERS_PER_LEVEL + 1),
                                       else_=1),
                    updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        stats = self._read_stats()
        logger.info("User %s undid prayer for card %s (total %d)", self.user_id, card.id, stats["total_prayers"])
        return {"success": True, "stats": stats}


# ── Guest transfer ────────────────────────────────────────────────────────────

def transfer_guest_data(target, snapshot):
    """Copy a guest snapshot into `target`, card by card.

    Not atomic: a failure part-way leaves the cards already copied in place,
    and running it again copies them a second time. The caller clears guest
    data only after this returns.
    """
    categories = target.list_categories()
    by_name = {}
    for category in categories:
        by_name.setdefault(category["name"], category["id"])
    defaults = sorted(c["id"] for c in categories if c["is_default"])
    fallback = defaults[0] if defaults else None

    category_map = {
        guest["id"]: by_name[guest["name"]]
        for guest in snapshot.get("categories", [])
        if guest.get("name") in by_name
    }

    card_map = {}
    for card in snapshot.get("prayer_cards", []):
        payload = {field: card.get(field) for field in CARD_FIELDS}
        payload["category_id"] = category_map.get(card.get("category_id"), fallback)
        created = target.create_card(payload)
        card_map[card["id"]] = created["id"]

    request_count = 0
    for guest_request in snapshot.get("prayer_requests", []):
        new_card_id = card_map.get(guest_request.get("prayer_card_id"))
        if new_card_id is None:
            continue
        created = target.create_request(new_card_id, guest_request["text"])
        if guest_request.get("is_archived"):
            target.archive_request(created["id"])
        request_count += 1

    if snapshot.get("reminder_settings"):
        target.save_reminder_settings(snapshot["reminder_settings"])

    logger.info("Transferred %d cards and %d requests from guest data", len(card_map), request_count)
    return {"success": True, "cards": len(card_map), "requests": request_count}
