"""
Users: registration, username/secret authentication and lifecycle.

The relational row is the system of record. Redis carries the username
reservation (``usernames_to_ids``), a public profile cache (``users:{id}``)
and three sorted-set indices scored by unix time.
"""
import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime

from . import accounts, devices, pairing, payments
from .audit import created, deleted, diff, render, snapshot
from .errors import (
    EmailAlreadyConfirmed,
    InvalidConfirmationCode,
    InvalidCredentials,
    InvalidUsername,
    MissingEmail,
    NotFound,
    UsernameTaken,
)
from .ids import id_from_str, id_to_str
from .models import Subscription, User, utcnow
from .subscriptions import BY_EXPIRATION, new_subscription, status_for, subscription_key, trial_period

log = logging.getLogger(__name__)

USERNAMES = "usernames_to_ids"
BY_LAST_ACTIVE = "users_by_last_active"
BY_JOIN_DATE = "users_by_join_date"

USERNAME_MIN = 3
USERNAME_MAX = 20
_USERNAME_CHARS = re.compile(r"[A-Za-z0-9_-]+")

PROFILE_FIELDS = (
    "username",
    "email",
    "email_unconfirmed",
    "given_name",
    "family_name",
    "joined",
    "last_active",
    "is_admin",
)

# Compared against when the username is unknown so both paths do the same work
_DECOY_SECRET = secrets.token_hex(64)


def user_key(user_id: int) -> str:
    return f"users:{id_to_str(user_id)}"


def validate_username(username: str) -> None:
    if len(username) < USERNAME_MIN:
        raise InvalidUsername("Your username must be at least 3 characters long.")
    if len(username) > USERNAME_MAX:
        raise InvalidUsername("Your username must be at most 20 characters long.")
    if not _USERNAME_CHARS.fullmatch(username):
        raise InvalidUsername(
            "An invalid character was used in the username. "
            "Only a-z, A-Z, 0-9, -, and _ are allowed in usernames."
        )


def generate_secret() -> str:
    return secrets.token_hex(64)


def generate_email_confirmation() -> str:
    return secrets.token_hex(32)


def secrets_match(expected: str, supplied: str) -> bool:
    # Digests first so differing lengths cost the same as differing bytes
    a = hashlib.sha256(expected.encode()).digest()
    b = hashlib.sha256(supplied.encode()).digest()
    return hmac.compare_digest(a, b)


def _cache_profile(ctx, user: User) -> None:
    ctx.store.hset_many(user_key(user.id), {f: render(getattr(user, f)) for f in PROFILE_FIELDS})


def _index(ctx, user: User) -> None:
    member = id_to_str(user.id)
    pipe = ctx.store.batch()
    pipe.zadd(BY_JOIN_DATE, {member: user.joined.timestamp()})
    pipe.zadd(BY_LAST_ACTIVE, {member: user.last_active.timestamp()})
    if user.subscription is not None:
        pipe.zadd(BY_EXPIRATION, {member: user.subscription.expires.timestamp()})
    pipe.hset(user_key(user.id), mapping={f: render(getattr(user, f)) for f in PROFILE_FIELDS})
    ctx.store.flush(pipe)


def _release_username(ctx, username: str, owner: str) -> None:
    try:
        ctx.store.release(USERNAMES, username, owner)
    except Exception:
        log.exception("could not release username reservation for %s", owner)
        ctx.telemetry.incr("users.release_failed")


def register(ctx, username: str, email: str, given_name: str | None = None, family_name: str | None = None,
             email_unconfirmed: bool = True, is_admin: bool = False, newsletter: bool = False,
             now: datetime | None = None) -> User:
    ctx.ensure_writable()
    username = (username or "").strip()
    email = (email or "").strip()
    validate_username(username)
    if not email:
        raise MissingEmail()
    now = now or utcnow()

    user = User(
        id=ctx.ids.next(),
        username=username,
        email=email,
        email_unconfirmed=email_unconfirmed,
        email_confirmation=generate_email_confirmation(),
        secret=generate_secret(),
        joined=now,
        given_name=given_name.strip() if given_name is not None else None,
        family_name=family_name.strip() if family_name is not None else None,
        last_active=now,
        is_admin=is_admin,
        receive_newsletter=newsletter,
    )
    owner = id_to_str(user.id)
    ctx.store.reserve(USERNAMES, username, owner, conflict=UsernameTaken)
    try:
        user.subscription = new_subscription(ctx, user.id, now + trial_period(ctx))
        with ctx.transaction() as session:
            session.add(user)
    except Exception:
        _release_username(ctx, username, owner)
        raise

    _index(ctx, user)
    ctx.audit(user_key(user.id), created(snapshot(user, User.AUDITED)))
    ctx.audit(subscription_key(user.subscription.id), created(snapshot(user.subscription, Subscription.AUDITED)))
    ctx.log.info("registered user %s", owner)
    return user


def get_user(ctx, user_id: int) -> User:
    user = ctx.db.get(User, user_id)
    if user is None:
        raise NotFound("User was not found in the database.")
    return user


def get_user_by_username(ctx, username: str) -> User:
    owner = ctx.store.reserved_by(USERNAMES, username.strip())
    if owner is None:
        raise NotFound("User was not found in the database.")
    return get_user(ctx, id_from_str(owner))


def get_profile(ctx, user_id: int) -> dict:
    """Public profile from the ``users:{id}`` cache, refilled from the row on a miss."""
    profile = ctx.store.hgetall(user_key(user_id))
    if profile:
        return profile
    user = get_user(ctx, user_id)
    _cache_profile(ctx, user)
    return {f: render(getattr(user, f)) for f in PROFILE_FIELDS}


def authenticate(ctx, username: str, secret: str, now: datetime | None = None) -> tuple[User, str]:
    """Check a username/secret pair.

    Returns ``(user, status)`` where status is ok, grace_warning or expired;
    deciding whether grace or expiry is fatal is up to the caller. Unknown
    users and wrong secrets both raise InvalidCredentials.
    """
    owner = ctx.store.reserved_by(USERNAMES, (username or "").strip())
    # Unknown names still pay for a row lookup; id 0 is never assigned
    user = ctx.db.get(User, id_from_str(owner) if owner is not None else 0)
    expected = user.secret if user is not None else _DECOY_SECRET
    matched = secrets_match(expected, secret or "")
    if user is None or not matched:
        ctx.telemetry.incr("auth.failed")
        ctx.log.info("authentication failed")
        raise InvalidCredentials()

    now = now or utcnow()
    if not ctx.config.get("MAINTENANCE_MODE"):
        _touch(ctx, user, now)
    return user, status_for(ctx, user, now)


def _touch(ctx, user: User, now: datetime) -> None:
    before = user.last_active
    user.last_active = now
    ctx.commit()
    ctx.store.zadd(BY_LAST_ACTIVE, now.timestamp(), id_to_str(user.id))
    ctx.store.hset_many(user_key(user.id), {"last_active": render(now)})
    ctx.audit(user_key(user.id), {"last_active": (before, now)})


def _list_by_index(ctx, index: str, count: int, after: datetime | None, before: datetime | None) -> list[User]:
    high = f"({before.timestamp()}" if before else "+inf"
    low = f"({after.timestamp()}" if after else "-inf"
    members = ctx.store.zrevrange_by_score(index, high, low, count)
    if not members:
        return []
    ids = [id_from_str(m) for m in members]
    found = {u.id: u for u in User.query.filter(User.id.in_(ids)).all()}
    return [found[i] for i in ids if i in found]


def list_users_by_activity(ctx, count: int = 20, after: datetime | None = None,
                           before: datetime | None = None) -> list[User]:
    return _list_by_index(ctx, BY_LAST_ACTIVE, count, after, before)


def list_users_by_join_date(ctx, count: int = 20, after: datetime | None = None,
                            before: datetime | None = None) -> list[User]:
    return _list_by_index(ctx, BY_JOIN_DATE, count, after, before)


def _save(ctx, user: User, before: dict) -> dict:
    changes = diff(before, snapshot(user, User.AUDITED))
    if not changes:
        return changes
    ctx.commit()
    _cache_profile(ctx, user)
    ctx.audit(user_key(user.id), changes)
    return changes


def update_user(ctx, user: User, email: str | None = None, given_name: str | None = None,
                family_name: str | None = None, newsletter: bool | None = None) -> User:
    ctx.ensure_writable()
    before = snapshot(user, User.AUDITED)
    if email is not None:
        email = email.strip()
        if email and email != user.email:
            user.email = email
            user.email_confirmation = generate_email_confirmation()
            user.email_unconfirmed = True
    if given_name is not None:
        user.given_name = given_name.strip()
    if family_name is not None:
        user.family_name = family_name.strip()
    if newsletter is not None:
        user.receive_newsletter = newsletter
    _save(ctx, user, before)
    return user


def reset_secret(ctx, user: User) -> User:
    ctx.ensure_writable()
    before = snapshot(user, User.AUDITED)
    user.secret = generate_secret()
    _save(ctx, user, before)
    return user


def verify_email(ctx, user: User, code: str) -> User:
    ctx.ensure_writable()
    if not user.email_unconfirmed:
        raise EmailAlreadyConfirmed()
    if not secrets_match(user.email_confirmation, code or ""):
        raise InvalidConfirmationCode()
    before = snapshot(user, User.AUDITED)
    user.email_unconfirmed = False
    _save(ctx, user, before)
    return user


def _set_flag(ctx, user: User, field: str, value: bool) -> User:
    ctx.ensure_writable()
    before = snapshot(user, User.AUDITED)
    setattr(user, field, value)
    _save(ctx, user, before)
    return user


def make_admin(ctx, user: User) -> User:
    return _set_flag(ctx, user, "is_admin", True)


def strip_admin(ctx, user: User) -> User:
    return _set_flag(ctx, user, "is_admin", False)


def subscribe_to_newsletter(ctx, user: User) -> User:
    return _set_flag(ctx, user, "receive_newsletter", True)


def unsubscribe_from_newsletter(ctx, user: User) -> User:
    return _set_flag(ctx, user, "receive_newsletter", False)


def delete_user(ctx, user: User) -> None:
    """Delete the user and everything it owns.

    Accounts and devices are deleted, payments are anonymised, the
    subscription goes with the row, and live pairing tickets are revoked.
    """
    ctx.ensure_writable()
    user_id, username = user.id, user.username
    owner = id_to_str(user_id)
    before = snapshot(user, User.AUDITED)
    subscription = user.subscription
    sub_id = subscription.id if subscription is not None else None
    sub_before = snapshot(subscription, Subscription.AUDITED) if subscription is not None else None

    accounts.delete_accounts_by_user(ctx, user_id)
    devices.delete_devices_by_user(ctx, user_id)
    payments.anonymize_payments_by_user(ctx, user_id)
    with ctx.transaction() as session:
        session.delete(user)

    pipe = ctx.store.batch()
    pipe.hdel(USERNAMES, username.lower())
    pipe.delete(user_key(user_id))
    for index in (BY_LAST_ACTIVE, BY_JOIN_DATE, BY_EXPIRATION):
        pipe.zrem(index, owner)
    ctx.store.flush(pipe)
    pairing.revoke_user_tickets(ctx, user_id)

    ctx.audit(user_key(user_id), deleted(before))
    if sub_before is not None:
        ctx.audit(subscription_key(sub_id), deleted(sub_before))
    ctx.log.info("deleted user %s", owner)
