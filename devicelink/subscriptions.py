"""
Per-user subscriptions and the active / grace / expired classifier.
"""
from datetime import datetime, timedelta

from .audit import created, deleted, diff, snapshot
from .errors import InvalidInput, InvalidStatus, NotFound, SubscriptionExpired, SubscriptionGrace
from .ids import id_to_str
from .models import Subscription, paginate, utcnow

STATUS_OK = "ok"
STATUS_GRACE = "grace_warning"
STATUS_EXPIRED = "expired"

FUNDING_SOURCES = ("stripe",)
BY_EXPIRATION = "users_by_subscription_expiration"


def subscription_key(subscription_id: int) -> str:
    return f"subscriptions:{id_to_str(subscription_id)}"


def classify(expires: datetime, grace: timedelta, now: datetime) -> tuple[bool, bool]:
    """(active, in_grace) for an expiry; never both true."""
    active = now < expires
    in_grace = not active and now < expires + grace
    return active, in_grace


def grace_period(ctx) -> timedelta:
    return timedelta(days=ctx.config.get("GRACE_PERIOD_DAYS", 0))


def trial_period(ctx) -> timedelta:
    return timedelta(days=ctx.config.get("TRIAL_PERIOD_DAYS", 0))


def status_for(ctx, user, now: datetime | None = None) -> str:
    if not ctx.config.get("USE_SUBSCRIPTIONS", True) or user.is_admin:
        return STATUS_OK
    subscription = user.subscription
    if subscription is None:
        return STATUS_EXPIRED
    active, in_grace = classify(subscription.expires, grace_period(ctx), now or utcnow())
    if active:
        return STATUS_OK
    if in_grace:
        return STATUS_GRACE
    return STATUS_EXPIRED


def require_subscription(ctx, user, allow_grace: bool = True, now: datetime | None = None) -> str:
    """Raise SubscriptionExpired / SubscriptionGrace where the caller wants them fatal."""
    status = status_for(ctx, user, now)
    expires = user.subscription.expires if user.subscription is not None else None
    if status == STATUS_EXPIRED:
        raise SubscriptionExpired(expires)
    if status == STATUS_GRACE and not allow_grace:
        raise SubscriptionGrace(expires)
    return status


def _check_funding_source(funding_source: str | None) -> str | None:
    if funding_source is None:
        return None
    funding_source = funding_source.strip().lower()
    if funding_source not in FUNDING_SOURCES:
        raise InvalidInput("Unrecognised funding source.")
    return funding_source


def _index(ctx, subscription: Subscription) -> None:
    ctx.store.zadd(BY_EXPIRATION, subscription.expires.timestamp(), id_to_str(subscription.user_id))


def new_subscription(ctx, user_id: int, expires: datetime, auto_renew: bool = False,
                     funding_id: int | None = None, funding_source: str | None = None) -> Subscription:
    """Build an unsaved subscription; callers add it inside their own transaction."""
    return Subscription(
        id=ctx.ids.next(),
        expires=expires,
        auto_renew=auto_renew,
        funding_id=funding_id,
        funding_source=_check_funding_source(funding_source),
        user_id=user_id,
    )


def create_subscription(ctx, user_id: int, expires: datetime, auto_renew: bool = False,
                        funding_id: int | None = None, funding_source: str | None = None) -> Subscription:
    ctx.ensure_writable()
    subscription = new_subscription(ctx, user_id, expires, auto_renew, funding_id, funding_source)
    with ctx.transaction() as session:
        session.add(subscription)
    _index(ctx, subscription)
    ctx.audit(subscription_key(subscription.id), created(snapshot(subscription, Subscription.AUDITED)))
    return subscription


def get_subscription(ctx, subscription_id: int) -> Subscription:
    subscription = ctx.db.get(Subscription, subscription_id)
    if subscription is None:
        raise NotFound("Subscription not found.")
    return subscription


def get_subscription_for_user(ctx, user_id: int) -> Subscription:
    subscription = Subscription.query.filter_by(user_id=user_id).first()
    if subscription is None:
        raise NotFound("Subscription not found.")
    return subscription


def update_subscription(ctx, subscription: Subscription, expires: datetime | None = None,
                        auto_renew: bool | None = None, funding_id: int | None = None,
                        funding_source: str | None = None) -> Subscription:
    ctx.ensure_writable()
    if funding_source is not None:
        funding_source = _check_funding_source(funding_source)

    before = snapshot(subscription, Subscription.AUDITED)
    if expires is not None:
        subscription.expires = expires
    if auto_renew is not None:
        subscription.auto_renew = auto_renew
    if funding_id is not None:
        subscription.funding_id = funding_id
    if funding_source is not None:
        subscription.funding_source = funding_source
    changes = diff(before, snapshot(subscription, Subscription.AUDITED))
    if not changes:
        return subscription
    ctx.commit()
    if "expires" in changes:
        _index(ctx, subscription)
    ctx.audit(subscription_key(subscription.id), changes)
    return subscription


def extend_subscription(ctx, subscription: Subscription, days: int, now: datetime | None = None) -> Subscription:
    if days <= 0:
        raise InvalidInput("Extension must be a positive number of days.")
    base = max(subscription.expires, now or utcnow())
    return update_subscription(ctx, subscription, expires=base + timedelta(days=days))


def list_subscriptions_by_expiration(ctx, status: str | None = None, before: int = 0, after: int = 0,
                                     count: int = 20, now: datetime | None = None) -> list[Subscription]:
    now = now or utcnow()
    query = Subscription.query
    if status:
        status = status.strip().lower()
        if status == "expired":
            query = query.filter(Subscription.expires < now)
        elif status == "expiring_soon":
            query = query.filter(Subscription.expires > now, Subscription.expires < now + timedelta(hours=24))
        else:
            raise InvalidStatus()
    return paginate(query, Subscription, [Subscription.expires.desc()], before, after, count).all()


def cancel_subscription(ctx, subscription: Subscription) -> None:
    ctx.ensure_writable()
    subscription_id, user_id = subscription.id, subscription.user_id
    before = snapshot(subscription, Subscription.AUDITED)
    with ctx.transaction() as session:
        session.delete(subscription)
    ctx.store.zrem(BY_EXPIRATION, id_to_str(user_id))
    ctx.audit(subscription_key(subscription_id), deleted(before))
