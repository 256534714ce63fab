from flask_sqlalchemy import SQLAlchemy

from schedule import utcnow

db = SQLAlchemy()

# (name, color, icon), seeded once and shared by every user
DEFAULT_CATEGORIES = [
    ("Family",       "#10B981", "fas fa-home"),
    ("Friends",      "#F59E0B", "fas fa-users"),
    ("Personal",     "#EF4444", "fas fa-heart"),
    ("Work",         "#8B5CF6", "fas fa-briefcase"),
    ("Non Believer", "#EC4899", "fas fa-cross"),
    ("Small Group",  "#06B6D4", "fas fa-church"),
    ("World Issues", "#DC2626", "fas fa-globe"),
    ("Leadership",   "#6B73FF", "fas fa-crown"),
]


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    """Identity row for the provider's subject id; profile data lives with the provider."""
    __tablename__ = "user"

    id = db.Column(db.String(255), primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    cards = db.relationship("PrayerCard", backref="user", lazy=True, cascade="all, delete-orphan")
    stats = db.relationship("PrayerStats", backref="user", uselist=False, cascade="all, delete-orphan")
    reminder_settings = db.relationship("ReminderSettings", backref="user", uselist=False,
                                        cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
        }

    def __repr__(self):
        return f"<User {self.id}>"


class Category(db.Model):
    __tablename__ = "category"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    color = db.Column(db.String(20), nullable=False)
    icon = db.Column(db.String(50), nullable=False)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    # NULL for the shared defaults
    user_id = db.Column(db.String(255), db.ForeignKey("user.id", ondelete="CASCADE"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "icon": self.icon,
            "is_default": bool(self.is_default),
            "user_id": self.user_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Category {self.name}>"


class PrayerCard(db.Model):
    __tablename__ = "prayer_card"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    frequency = db.Column(db.String(20), nullable=False)
    day_of_week = db.Column(db.String(20), nullable=True)     # weekly only
    day_of_month = db.Column(db.Integer, nullable=True)       # legacy single monthly day
    days_of_month = db.Column(db.JSON, nullable=True)         # monthly, list of 1–31
    scriptures = db.Column(db.JSON, nullable=False, default=list)
    scripture_references = db.Column(db.JSON, nullable=False, default=list)
    category_id = db.Column(db.Integer, db.ForeignKey("category.id", ondelete="SET NULL"), nullable=True)
    user_id = db.Column(db.String(255), db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    category = db.relationship("Category")
    requests = db.relationship("PrayerRequest", backref="card", lazy=True, cascade="all, delete-orphan",
                               order_by="PrayerRequest.created_at.desc()")
    logs = db.relationship("PrayerLog", backref="card", lazy=True, cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "frequency": self.frequency,
            "day_of_week": self.day_of_week,
            "day_of_month": self.day_of_month,
            "days_of_month": list(self.days_of_month) if self.days_of_month is not None else None,
            "scriptures": list(self.scriptures or []),
            "scripture_references": list(self.scripture_references or []),
            "category_id": self.category_id,
            "user_id": self.user_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<PrayerCard {self.name} {self.frequency}>"


class PrayerRequest(db.Model):
    __tablename__ = "prayer_request"

    id = db.Column(db.Integer, primary_key=True)
    text = db.Column(db.Text, nullable=False)
    prayer_card_id = db.Column(db.Integer, db.ForeignKey("prayer_card.id", ondelete="CASCADE"), nullable=False)
    is_archived = db.Column(db.Boolean, nullable=False, default=False)
    # Set only when archived
    archived_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "text": self.text,
            "prayer_card_id": self.prayer_card_id,
            "is_archived": bool(self.is_archived),
            "archived_at": _iso(self.archived_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<PrayerRequest {self.id} card={self.prayer_card_id}>"


class PrayerLog(db.Model):
    """One completion event. `prayed_on` is the local calendar day of `prayed_at`."""
    __tablename__ = "prayer_log"
    __table_args__ = (
        db.UniqueConstraint("user_id", "prayer_card_id", "prayed_on", name="uq_prayer_log_day"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(255), db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    prayer_card_id = db.Column(db.Integer, db.ForeignKey("prayer_card.id", ondelete="CASCADE"), nullable=False)
    prayed_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    prayed_on = db.Column(db.Date, nullable=False)

    def __repr__(self):
        return f"<PrayerLog card={self.prayer_card_id} {self.prayed_at}>"


class PrayerStats(db.Model):
    __tablename__ = "prayer_stats"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(255), db.ForeignKey("user.id", ondelete="CASCADE"), unique=True, nullable=False)
    total_prayers = db.Column(db.Integer, nullable=False, default=0)
    current_level = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {"total_prayers": self.total_prayers, "current_level": self.current_level}

    def __repr__(self):
        return f"<PrayerStats total={self.total_prayers} level={self.current_level}>"


class ReminderSettings(db.Model):
    __tablename__ = "reminder_settings"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(255), db.ForeignKey("user.id", ondelete="CASCADE"), unique=True, nullable=False)
    enable_reminders = db.Column(db.Boolean, nullable=False, default=False)
    reminder_times = db.Column(db.JSON, nullable=False, default=list)   # ["09:00", "18:00"]
    timezone = db.Column(db.String(50), nullable=False)
    enable_browser_notifications = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "enable_reminders": bool(self.enable_reminders),
            "reminder_times": list(self.reminder_times or []),
            "timezone": self.timezone,
            "enable_browser_notifications": bool(self.enable_browser_notifications),
        }

    def __repr__(self):
        return f"<ReminderSettings user={self.user_id}>"
