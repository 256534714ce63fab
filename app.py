import os
import logging
from datetime import date
from functools import wraps
from zoneinfo import ZoneInfo

from flask import Flask, request, jsonify, session
from sqlalchemy.exc import OperationalError

from models import db, User
from storage import (
    DatabaseStorage,
    StorageError,
    ValidationError,
    seed_default_categories,
    transfer_guest_data,
)
from local_storage import LocalStorage

logger = logging.getLogger(__name__)

basedir = os.path.abspath(os.path.dirname(__file__))

app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(basedir, "prayer_cards.db"),
)
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
# Calendar days, weeks and months are reckoned in this zone; storage stays UTC.
app.config["TIMEZONE"] = os.environ.get("APP_TIMEZONE", "America/Los_Angeles")
app.config["CARD_CREATE_ATTEMPTS"] = int(os.environ.get("CARD_CREATE_ATTEMPTS", "3"))
app.config["CARD_CREATE_BACKOFF"] = float(os.environ.get("CARD_CREATE_BACKOFF", "1.0"))
# Guest data rides in the session cookie; browsers drop cookies past ~4 KB.
app.config["GUEST_SESSION_MAX_BYTES"] = int(os.environ.get("GUEST_SESSION_MAX_BYTES", "3800"))

db.init_app(app)


# ── Session helpers ───────────────────────────────────────────────────────────

def current_user():
    """Return the signed-in User (the identity provider sets session["user_id"]), or None."""
    uid = session.get("user_id")
    if uid is None:
        return None
    return db.session.get(User, uid)


def app_timezone():
    return ZoneInfo(app.config["TIMEZONE"])


def session_cookie_size(data):
    """Length of the signed cookie value `data` would be sent as."""
    return len(app.session_interface.get_signing_serializer(app).dumps(data))


def guest_storage():
    session.permanent = True
    return LocalStorage(
        session,
        app_timezone(),
        max_bytes=app.config["GUEST_SESSION_MAX_BYTES"],
        measure=session_cookie_size,
    )


def get_storage():
    """Database-backed store for a signed-in user, the guest store otherwise."""
    user = current_user()
    if user is None:
        return guest_storage()
    return DatabaseStorage(
        user.id,
        app_timezone(),
        create_attempts=app.config["CARD_CREATE_ATTEMPTS"],
        create_backoff=app.config["CARD_CREATE_BACKOFF"],
    )


def account_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if current_user() is None:
            return jsonify({"error": "unauthorized", "message": "Please sign in to continue."}), 401
        return f(*args, **kwargs)
    return decorated


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", ["expected a JSON object"])
    return data


def as_of_arg():
    raw = request.args.get("date")
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError("Invalid date", ["date must be YYYY-MM-DD"])


# ── Errors ────────────────────────────────────────────────────────────────────

@app.errorhandler(StorageError)
def handle_storage_error(err):
    body = {"error": err.code, "message": str(err)}
    if isinstance(err, ValidationError):
        body["errors"] = err.errors
    return jsonify(body), err.status


@app.errorhandler(OperationalError)
def handle_database_unavailable(err):
    db.session.rollback()
    logger.error("Database unavailable: %s", err)
    return jsonify({"error": "storage_unavailable", "message": "Storage is temporarily unavailable."}), 503


# ── Identity ──────────────────────────────────────────────────────────────────

@app.route("/api/auth/user")
def auth_user():
    user = current_user()
    return jsonify({
        "authenticated": user is not None,
        "user": user.to_dict() if user else None,
    })


# ── Categories ────────────────────────────────────────────────────────────────

@app.route("/api/categories", methods=["GET", "POST"])
def categories():
    storage = get_storage()
    if request.method == "POST":
        return jsonify(storage.create_category(json_body())), 201
    return jsonify(storage.list_categories())


# ── Prayer cards ──────────────────────────────────────────────────────────────

@app.route("/api/prayer-cards", methods=["GET"])
def list_prayer_cards():
    storage = get_storage()
    frequency = request.args.get("frequency")
    if frequency:
        return jsonify(storage.list_due(frequency, as_of_arg()))
    return jsonify(storage.list_cards())


@app.route("/api/prayer-cards", methods=["POST"])
def create_prayer_card():
    return jsonify(get_storage().create_card(json_body())), 201


@app.route("/api/prayer-cards/<int:card_id>", methods=["GET", "PUT", "DELETE"])
def prayer_card(card_id):
    storage = get_storage()
    if request.method == "PUT":
        return jsonify(storage.update_card(card_id, json_body()))
    if request.method == "DELETE":
        storage.delete_card(card_id)
        return jsonify({"success": True})
    return jsonify(storage.get_card(card_id))


@app.route("/api/prayer-cards/<int:card_id>/requests", methods=["GET", "POST"])
def prayer_card_requests(card_id):
    storage = get_storage()
    if request.method == "POST":
        return jsonify(storage.create_request(card_id, json_body().get("text"))), 201
    return jsonify(storage.list_requests(card_id))


# ── Prayer requests ───────────────────────────────────────────────────────────

@app.route("/api/prayer-requests/<int:request_id>", methods=["PUT", "DELETE"])
def prayer_request(request_id):
    storage = get_storage()
    if request.method == "DELETE":
        storage.delete_request(request_id)
        return jsonify({"success": True})
    return jsonify(storage.update_request(request_id, json_body().get("text")))


@app.route("/api/prayer-requests/<int:request_id>/archive", methods=["PUT"])
def archive_prayer_request(request_id):
    return jsonify(get_storage().archive_request(request_id))


# ── Reminder settings ─────────────────────────────────────────────────────────

@app.route("/api/reminder-settings", methods=["GET", "PUT"])
def reminder_settings():
    storage = get_storage()
    if request.method == "PUT":
        return jsonify(storage.save_reminder_settings(json_body()))
    return jsonify(storage.get_reminder_settings())


# ── Prayer tracking ───────────────────────────────────────────────────────────

@app.route("/api/prayer-stats")
def prayer_stats():
    return jsonify(get_storage().get_stats())


@app.route("/api/prayer-cards/<int:card_id>/pray", methods=["POST", "DELETE"])
def pray(card_id):
    storage = get_storage()
    if request.method == "DELETE":
        return jsonify(storage.undo_complete(card_id))
    # already prayed today is a normal outcome, not an error
    return jsonify(storage.mark_complete(card_id))


@app.route("/api/prayer-cards/<int:card_id>/prayed-today")
def prayed_today(card_id):
    storage = get_storage()
    storage.get_card(card_id)
    return jsonify({"card_id": card_id, "prayed_today": storage.has_prayed_today(card_id)})


@app.route("/api/prayer-cards/batch-prayed-status", methods=["POST"])
def batch_prayed_status():
    status = get_storage().batch_status(json_body().get("card_ids"))
    return jsonify({str(card_id): prayed for card_id, prayed in status.items()})


# ── Guest data ────────────────────────────────────────────────────────────────

@app.route("/api/guest/data")
def guest_data():
    guest = guest_storage()
    return jsonify({
        "has_guest_data": guest.has_guest_data(),
        "data": guest.export_guest_data(),
    })


@app.route("/api/guest/transfer", methods=["POST"])
@account_required
def transfer_guest():
    guest = guest_storage()
    if not guest.has_guest_data():
        return jsonify({"success": True, "cards": 0, "requests": 0})
    try:
        result = transfer_guest_data(get_storage(), guest.export_guest_data())
    except Exception:
        logger.exception("Guest data transfer failed for user %s", session.get("user_id"))
        raise
    guest.clear_all_data()
    return jsonify(result)


# ── Startup ───────────────────────────────────────────────────────────────────

with app.app_context():
    db.create_all()
    seed_default_categories()

if __name__ == "__main__":
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    app.run(debug=True)
