from datetime import datetime, timezone

from sqlalchemy.types import DateTime, TypeDecorator

from .extensions import db
from .ids import id_to_str

MAX_PAGE_SIZE = 1000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores UTC and always hands back timezone-aware values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def paginate(query, model, order_by, before: int = 0, after: int = 0, count: int = 20):
    """Exclusive id bounds, then ordering, then the count limit."""
    if before:
        query = query.filter(model.id < before)
    if after:
        query = query.filter(model.id > after)
    count = max(1, min(count, MAX_PAGE_SIZE))
    return query.order_by(*order_by).limit(count)


class User(db.Model):
    __tablename__ = "users"

    AUDITED = (
        "username",
        "email",
        "email_unconfirmed",
        "secret",
        "joined",
        "given_name",
        "family_name",
        "last_active",
        "is_admin",
        "receive_newsletter",
    )

    id = db.Column(db.BigInteger, primary_key=True, autoincrement=False)
    username = db.Column(db.String(20), unique=True, nullable=False)
    given_name = db.Column(db.String(255), nullable=True)
    family_name = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=False)
    email_unconfirmed = db.Column(db.Boolean, nullable=False, default=True)
    email_confirmation = db.Column(db.String(64), nullable=False)
    secret = db.Column(db.String(128), nullable=False)
    joined = db.Column(UTCDateTime, nullable=False, default=utcnow)
    last_active = db.Column(UTCDateTime, nullable=False, default=utcnow)
    is_admin = db.Column(db.Boolean, nullable=False, default=False)
    receive_newsletter = db.Column(db.Boolean, nullable=False, default=False)

    subscription = db.relationship(
        "Subscription", uselist=False, back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<User {self.username} {id_to_str(self.id)}>"

    def to_dict(self) -> dict:
        return {
            "id": id_to_str(self.id),
            "username": self.username,
            "email": self.email,
            "email_unconfirmed": self.email_unconfirmed,
            "name": {"given": self.given_name, "family": self.family_name},
            "joined": self.joined.isoformat(),
            "last_active": self.last_active.isoformat(),
            "is_admin": self.is_admin,
            "receive_newsletter": self.receive_newsletter,
        }


class Account(db.Model):
    __tablename__ = "accounts"
    __table_args__ = (db.UniqueConstraint("provider", "foreign_id"),)

    AUDITED = (
        "provider",
        "foreign_id",
        "added",
        "email",
        "email_verified",
        "display_name",
        "given_name",
        "family_name",
        "picture",
        "locale",
        "timezone",
        "gender",
        "access_token",
        "refresh_token",
        "token_expires",
        "user_id",
    )

    id = db.Column(db.BigInteger, primary_key=True, autoincrement=False)
    provider = db.Column(db.String(32), nullable=False)
    foreign_id = db.Column(db.String(255), nullable=False)
    added = db.Column(UTCDateTime, nullable=False, default=utcnow)
    email = db.Column(db.String(255), nullable=True)
    email_verified = db.Column(db.Boolean, nullable=False, default=False)
    display_name = db.Column(db.String(512), nullable=True)
    given_name = db.Column(db.String(255), nullable=True)
    family_name = db.Column(db.String(255), nullable=True)
    picture = db.Column(db.String(1024), nullable=True)
    locale = db.Column(db.String(32), nullable=True)
    timezone = db.Column(db.String(64), nullable=True)
    gender = db.Column(db.String(32), nullable=True)

    # Never leave this module: no to_dict, no repr
    access_token = db.Column(db.String(2048), nullable=True)
    refresh_token = db.Column(db.String(2048), nullable=True)
    token_expires = db.Column(UTCDateTime, nullable=True)

    user_id = db.Column(db.BigInteger, db.ForeignKey("users.id"), nullable=True, index=True)

    def __repr__(self):
        return f"<Account {self.provider}:{self.foreign_id}>"

    def to_dict(self) -> dict:
        return {
            "id": id_to_str(self.id),
            "provider": self.provider,
            "foreign_id": self.foreign_id,
            "added": self.added.isoformat(),
            "email": self.email,
            "email_verified": self.email_verified,
            "display_name": self.display_name,
            "given_name": self.given_name,
            "family_name": self.family_name,
            "picture": self.picture,
            "locale": self.locale,
            "timezone": self.timezone,
            "gender": self.gender,
            "user_id": id_to_str(self.user_id) if self.user_id else None,
        }


class Device(db.Model):
    __tablename__ = "devices"

    AUDITED = ("name", "client_type", "last_seen", "last_ip", "created", "push_key", "user_id")

    id = db.Column(db.BigInteger, primary_key=True, autoincrement=False)
    name = db.Column(db.String(255), nullable=False)
    client_type = db.Column(db.String(32), nullable=False)
    last_seen = db.Column(UTCDateTime, nullable=False, default=utcnow)
    last_ip = db.Column(db.String(64), nullable=True)
    created = db.Column(UTCDateTime, nullable=False, default=utcnow)
    push_key = db.Column(db.String(1024), nullable=True)
    push_last_used = db.Column(UTCDateTime, nullable=True)
    user_id = db.Column(db.BigInteger, db.ForeignKey("users.id"), nullable=False, index=True)

    def __repr__(self):
        return f"<Device {self.name} {id_to_str(self.id)}>"


class Campaign(db.Model):
    __tablename__ = "campaigns"

    AUDITED = ("title", "description", "goal", "amount", "auxiliary", "starts", "ends")

    id = db.Column(db.BigInteger, primary_key=True, autoincrement=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    goal = db.Column(db.BigInteger, nullable=False, default=0)
    amount = db.Column(db.BigInteger, nullable=False, default=0)
    auxiliary = db.Column("auxilliary", db.Boolean, nullable=False, default=False)
    starts = db.Column(UTCDateTime, nullable=True)
    ends = db.Column(UTCDateTime, nullable=True)

    def is_current(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        started = self.starts is None or self.starts <= now
        return started and (self.ends is None or now < self.ends)


class Payment(db.Model):
    __tablename__ = "payments"

    AUDITED = (
        "remote_id",
        "amount",
        "message",
        "created",
        "completed",
        "user_id",
        "funding_source_id",
        "anonymous",
        "campaign_id",
        "status",
        "error",
    )

    id = db.Column(db.BigInteger, primary_key=True, autoincrement=False)
    remote_id = db.Column(db.String(255), nullable=False, default="")
    amount = db.Column(db.BigInteger, nullable=False)
    message = db.Column(db.Text, nullable=False, default="")
    created = db.Column(UTCDateTime, nullable=False, default=utcnow)
    completed = db.Column(UTCDateTime, nullable=True)
    user_id = db.Column(db.BigInteger, nullable=True, index=True)
    funding_source_id = db.Column(db.BigInteger, nullable=True)
    anonymous = db.Column(db.Boolean, nullable=False, default=False)
    campaign_id = db.Column("campaign", db.BigInteger, nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False)
    error = db.Column(db.Text, nullable=False, default="")


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    AUDITED = ("expires", "auto_renew", "funding_id", "funding_source", "user_id")

    id = db.Column(db.BigInteger, primary_key=True, autoincrement=False)
    expires = db.Column(UTCDateTime, nullable=False)
    auto_renew = db.Column(db.Boolean, nullable=False, default=False)
    funding_id = db.Column(db.BigInteger, nullable=True)
    funding_source = db.Column(db.String(32), nullable=True)
    user_id = db.Column(db.BigInteger, db.ForeignKey("users.id"), nullable=False, unique=True)

    user = db.relationship("User", back_populates="subscription")
