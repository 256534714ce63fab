from datetime import datetime

import pytest

from conftest import TZ, daily, login, monthly, weekly
from local_storage import CARDS_KEY
from models import Category, PrayerCard, PrayerLog, PrayerRequest
from storage import ValidationError, transfer_guest_data


@pytest.fixture
def guest(local_store):
    categories = {c["name"]: c["id"] for c in local_store.list_categories()}
    mentors = local_store.create_category({"name": "Mentors", "color": "#333333", "icon": "fas fa-user"})

    work = local_store.create_card(weekly("Coworkers", "Friday", category_id=categories["Work"]))
    local_store.create_card(monthly("Mentor", days_of_month=[1, 15], category_id=mentors["id"]))
    local_store.create_card(daily("No category"))

    local_store.create_request(work["id"], "Team morale")
    archived = local_store.create_request(work["id"], "Promotion")
    local_store.archive_request(archived["id"])

    local_store.save_reminder_settings({"enable_reminders": True, "reminder_times": ["07:00"],
                                        "timezone": "America/Chicago"})
    local_store.mark_complete(work["id"], now=datetime(2025, 6, 13, 9, 0, tzinfo=TZ))
    return local_store


def _category_name(card):
    return card["category"]["name"] if card["category"] else None


def test_transfer_recreates_cards_requests_and_settings(guest, db_store):
    result = transfer_guest_data(db_store, guest.export_guest_data())

    assert result == {"success": True, "cards": 3, "requests": 2}
    cards = {c["name"]: c for c in db_store.list_cards()}
    assert _category_name(cards["Coworkers"]) == "Work"
    assert cards["Coworkers"]["day_of_week"] == "Friday"
    assert cards["Coworkers"]["active_request_count"] == 1
    assert cards["Mentor"]["days_of_month"] == [1, 15]

    requests = db_store.get_card(cards["Coworkers"]["id"])["requests"]
    assert {r["text"]: r["is_archived"] for r in requests} == {"Team morale": False, "Promotion": True}
    assert db_store.get_reminder_settings()["timezone"] == "America/Chicago"


def test_unmatched_categories_fall_back_to_the_first_default(guest, db_store):
    transfer_guest_data(db_store, guest.export_guest_data())

    first_default = Category.query.filter_by(is_default=True).order_by(Category.id).first()
    cards = {c["name"]: c for c in db_store.list_cards()}
    assert cards["Mentor"]["category_id"] == first_default.id
    assert cards["No category"]["category_id"] == first_default.id
    # custom guest categories are not created on the account
    assert Category.query.filter_by(name="Mentors").count() == 0


def test_logs_and_stats_stay_behind(guest, db_store):
    transfer_guest_data(db_store, guest.export_guest_data())

    assert PrayerLog.query.count() == 0
    assert db_store.get_stats() == {"total_prayers": 0, "current_level": 1}


def test_running_twice_duplicates(guest, db_store):
    snapshot = guest.export_guest_data()
    transfer_guest_data(db_store, snapshot)
    transfer_guest_data(db_store, snapshot)
    assert PrayerCard.query.count() == 6
    assert PrayerRequest.query.count() == 4


def test_failure_part_way_keeps_earlier_cards(guest, db_store):
    snapshot = guest.export_guest_data()
    snapshot["prayer_cards"][1]["frequency"] = "fortnightly"

    with pytest.raises(ValidationError):
        transfer_guest_data(db_store, snapshot)
    assert PrayerCard.query.count() == 1


def test_transfer_endpoint_requires_an_account(client):
    resp = client.post("/api/guest/transfer")
    assert resp.status_code == 401


def test_transfer_endpoint_moves_and_clears_guest_data(client, user):
    client.post("/api/prayer-cards", json=daily("From the guest days"))
    assert client.get("/api/guest/data").get_json()["has_guest_data"] is True

    login(client, user.id)
    resp = client.post("/api/guest/transfer")

    assert resp.status_code == 200
    assert resp.get_json()["cards"] == 1
    assert PrayerCard.query.one().name == "From the guest days"
    with client.session_transaction() as sess:
        assert CARDS_KEY not in sess
        assert sess["user_id"] == user.id
    assert client.get("/api/guest/data").get_json()["has_guest_data"] is False
