"""Guest-mode mirror of `DatabaseStorage`.

Everything lives in a flat string key/value store (the signed Flask session
in the app, a dict in tests), one JSON document per key. Shapes and rules
match the server backend so the client never has to care which one it has.
"""
import json
import logging
from datetime import datetime

from models import DEFAULT_CATEGORIES
from schedule import (
    MONTHLY,
    WEEKLY,
    day_window,
    level_for,
    period_window,
    to_utc_naive,
    utc_window,
    utcnow,
)
from storage import (
    CARD_FIELDS,
    NotFound,
    NothingToUndo,
    PrayerStore,
    StorageFull,
    default_reminder_settings,
    validate_card,
    validate_category,
    validate_reminder_settings,
    validate_request_text,
)

logger = logging.getLogger(__name__)

GUEST_USER_ID = "guest"

CATEGORIES_KEY = "prayer-cards-guest-categories"
CARDS_KEY = "prayer-cards-guest-prayer-cards"
REQUESTS_KEY = "prayer-cards-guest-prayer-requests"
REMINDER_SETTINGS_KEY = "prayer-cards-guest-reminder-settings"
LOGS_KEY = "prayer-cards-guest-prayer-logs"
STATS_KEY = "prayer-cards-guest-prayer-stats"
NEXT_ID_KEY = "prayer-cards-guest-next-id"

ALL_KEYS = (CATEGORIES_KEY, CARDS_KEY, REQUESTS_KEY, REMINDER_SETTINGS_KEY, LOGS_KEY, STATS_KEY, NEXT_ID_KEY)


def _parse(stamp):
    return datetime.fromisoformat(stamp)


def encoded_size(data):
    return len(json.dumps(data))


class LocalStorage(PrayerStore):
    is_authenticated = False

    def __init__(self, store, tz, max_bytes=None, measure=encoded_size):
        """`measure(mapping)` sizes the whole store as it would be persisted;
        writes that would take it past `max_bytes` raise `StorageFull`.
        """
        super().__init__(tz)
        self.store = store
        self.max_bytes = max_bytes
        self.measure = measure

    # ── Raw key/value access ──

    def _load(self, key, default=None):
        raw = self.store.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable guest data under %s", key)
            self.store.pop(key, None)
            return default

    def _save(self, key, value):
        encoded = json.dumps(value)
        if self.max_bytes is not None:
            pending = dict(self.store)
            pending[key] = encoded
            size = self.measure(pending)
            if size > self.max_bytes:
                logger.warning("Refusing guest write to %s: %d bytes exceeds %d", key, size, self.max_bytes)
                raise StorageFull("Guest storage is full. Sign in to keep more prayer cards and history.")
        self.store[key] = encoded

    def _next_id(self):
        next_id = self._load(NEXT_ID_KEY, 0) + 1
        self._save(NEXT_ID_KEY, next_id)
        return next_id

    # ── Categories ──

    def _categories(self):
        categories = self._load(CATEGORIES_KEY)
        if categories is None:
            now = utcnow().isoformat()
            categories = [
                {"id": self._next_id(), "name": name, "color": color, "icon": icon,
                 "is_default": True, "user_id": None, "created_at": now}
                for name, color, icon in DEFAULT_CATEGORIES
            ]
            self._save(CATEGORIES_KEY, categories)
        return categories

    def list_categories(self):
        return sorted(self._categories(), key=lambda c: (c["is_default"], c["name"]))

    def create_category(self, data):
        fields = validate_category(data)
        categories = self._categories()
        category = {"id": self._next_id(), **fields, "is_default": False,
                    "user_id": GUEST_USER_ID, "created_at": utcnow().isoformat()}
        categories.append(category)
        self._save(CATEGORIES_KEY, categories)
        return category

    def _check_category(self, category_id):
        if category_id is not None and not any(c["id"] == category_id for c in self._categories()):
            raise NotFound("Category not found")

    # ── Cards ──

    def _cards(self):
        return self._load(CARDS_KEY, [])

    def _find_card(self, cards, card_id):
        for card in cards:
            if card["id"] == card_id:
                return card
        raise NotFound("Prayer card not found")

    def _with_details(self, card, categories, requests):
        data = dict(card)
        data["category"] = next((c for c in categories if c["id"] == card["category_id"]), None)
        data["active_request_count"] = sum(
            1 for r in requests if r["prayer_card_id"] == card["id"] and not r["is_archived"]
        )
        return data

    def list_cards(self):
        categories = self._categories()
        requests = self._requests()
        cards = sorted(self._cards(), key=lambda c: (_parse(c["updated_at"]), c["id"]), reverse=True)
        return [self._with_details(card, categories, requests) for card in cards]

    def get_card(self, card_id):
        card = self._find_card(self._cards(), card_id)
        requests = self._requests()
        data = self._with_details(card, self._categories(), requests)
        data["requests"] = self._sorted_requests(r for r in requests if r["prayer_card_id"] == card_id)
        return data

    def create_card(self, data):
        fields = validate_card(data)
        self._check_category(fields["category_id"])
        now = utcnow().isoformat()
        card = {"id": self._next_id(), **fields, "user_id": GUEST_USER_ID,
                "created_at": now, "updated_at": now}
        cards = self._cards()
        cards.append(card)
        self._save(CARDS_KEY, cards)
        return self._with_details(card, self._categories(), [])

    def update_card(self, card_id, updates):
        cards = self._cards()
        card = self._find_card(cards, card_id)
        merged = dict(card)
        merged.update({k: v for k, v in updates.items() if k in CARD_FIELDS})
        fields = validate_card(merged)
        if fields["category_id"] != card["category_id"]:
            self._check_category(fields["category_id"])
        card.update(fields)
        card["updated_at"] = utcnow().isoformat()
        self._save(CARDS_KEY, cards)
        return self.get_card(card_id)

    def delete_card(self, card_id):
        cards = self._cards()
        self._find_card(cards, card_id)
        self._save(CARDS_KEY, [c for c in cards if c["id"] != card_id])
        self._save(REQUESTS_KEY, [r for r in self._requests() if r["prayer_card_id"] != card_id])
        self._save(LOGS_KEY, [log for log in self._logs() if log["prayer_card_id"] != card_id])

    # ── Requests ──

    def _requests(self):
        return self._load(REQUESTS_KEY, [])

    @staticmethod
    def _sorted_requests(requests):
        return sorted(requests, key=lambda r: (_parse(r["created_at"]), r["id"]), reverse=True)

    def _find_request(self, requests, request_id):
        for prayer_request in requests:
            if prayer_request["id"] == request_id:
                return prayer_request
        raise NotFound("Prayer request not found")

    def list_requests(self, card_id):
        self._find_card(self._cards(), card_id)
        return self._sorted_requests(r for r in self._requests() if r["prayer_card_id"] == card_id)

    def create_request(self, card_id, text):
        self._find_card(self._cards(), card_id)
        prayer_request = {
            "id": self._next_id(),
            "text": validate_request_text(text),
            "prayer_card_id": card_id,
            "is_archived": False,
            "archived_at": None,
            "created_at": utcnow().isoformat(),
        }
        requests = self._requests()
        requests.append(prayer_request)
        self._save(REQUESTS_KEY, requests)
        return prayer_request

    def update_request(self, request_id, text):
        requests = self._requests()
        prayer_request = self._find_request(requests, request_id)
        prayer_request["text"] = validate_request_text(text)
        self._save(REQUESTS_KEY, requests)
        return prayer_request

    def archive_request(self, request_id):
        requests = self._requests()
        prayer_request = self._find_request(requests, request_id)
        if not prayer_request["is_archived"]:
            prayer_request["is_archived"] = True
            prayer_request["archived_at"] = utcnow().isoformat()
            self._save(REQUESTS_KEY, requests)
        return prayer_request

    def delete_request(self, request_id):
        requests = self._requests()
        self._find_request(requests, request_id)
        self._save(REQUESTS_KEY, [r for r in requests if r["id"] != request_id])

    # ── Reminder settings ──

    def get_reminder_settings(self):
        return self._load(REMINDER_SETTINGS_KEY) or default_reminder_settings(self.tz.key)

    def save_reminder_settings(self, data):
        fields = validate_reminder_settings(data, self.tz.key)
        self._save(REMINDER_SETTINGS_KEY, fields)
        return fields

    # ── Stats and completion tracking ──

    def _logs(self):
        return self._load(LOGS_KEY, [])

    def _recent_logs(self, local_now):
        """Logs still inside some current daily, weekly or monthly window."""
        cutoff = min(period_window(MONTHLY, local_now)[0], period_window(WEEKLY, local_now)[0])
        cutoff = to_utc_naive(cutoff)
        return [log for log in self._logs() if _parse(log["prayed_at"]) >= cutoff]

    def _stats(self):
        stats = self._load(STATS_KEY)
        if stats is None:
            stats = {"total_prayers": 0, "current_level": 1}
            self._save(STATS_KEY, stats)
        return stats

    def get_stats(self):
        return dict(self._stats())

    def batch_status(self, card_ids, now=None):
        card_ids = self._card_ids(card_ids)
        status = {card_id: False for card_id in card_ids}
        start, end = utc_window(day_window(self._local(now)))
        for log in self._logs():
            if log["prayer_card_id"] in status and start <= _parse(log["prayed_at"]) < end:
                status[log["prayer_card_id"]] = True
        return status

    def mark_complete(self, card_id, now=None):
        self._find_card(self._cards(), card_id)
        local_now = self._local(now)
        if self.has_prayed_today(card_id, now=local_now):
            return self._already_prayed(self.get_stats())

        logs = self._recent_logs(local_now)
        logs.append({
            "id": self._next_id(),
            "prayer_card_id": card_id,
            "prayed_at": to_utc_naive(local_now).isoformat(),
            "prayed_on": local_now.date().isoformat(),
        })
        self._save(LOGS_KEY, logs)

        total = self._stats()["total_prayers"] + 1
        stats = {"total_prayers": total, "current_level": level_for(total)}
        self._save(STATS_KEY, stats)
        return self._prayed(dict(stats))

    def undo_complete(self, card_id, now=None):
        card = self._find_card(self._cards(), card_id)
        start, end = utc_window(period_window(card["frequency"], self._local(now)))
        logs = self._logs()
        in_period = [log for log in logs
                     if log["prayer_card_id"] == card_id and start <= _parse(log["prayed_at"]) < end]
        if not in_period:
            raise NothingToUndo("No prayer log found to undo")

        latest = max(in_period, key=lambda log: (_parse(log["prayed_at"]), log["id"]))
        self._save(LOGS_KEY, [log for log in logs if log["id"] != latest["id"]])

        total = max(0, self._stats()["total_prayers"] - 1)
        stats = {"total_prayers": total, "current_level": level_for(total)}
        self._save(STATS_KEY, stats)
        return {"success": True, "stats": dict(stats)}

    # ── Guest data lifecycle ──

    def has_guest_data(self):
        if self._load(CARDS_KEY) or self._load(REQUESTS_KEY):
            return True
        return any(not c["is_default"] for c in self._load(CATEGORIES_KEY, []))

    def export_guest_data(self):
        """Snapshot handed to `transfer_guest_data`; logs and stats stay behind."""
        return {
            "categories": self._categories(),
            "prayer_cards": self._cards(),
            "prayer_requests": self._requests(),
            "reminder_settings": self._load(REMINDER_SETTINGS_KEY),
        }

    def clear_all_data(self):
        for key in ALL_KEYS:
            self.store.pop(key, None)
        logger.info("Cleared guest data")
