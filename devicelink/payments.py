"""
Payments against campaigns and their status machine:

    pending -> charging -> success | error | retry
    retry -> charging
    success -> refunding -> refunded

``completed`` is set exactly while the status is success, error or refunded.
"""
from datetime import datetime

from .audit import created, deleted, diff, snapshot
from .errors import InvalidInput, InvalidStatus, NotFound
from .ids import id_to_str
from .models import Payment, paginate, utcnow

STATUS_PENDING = "pending"
STATUS_CHARGING = "charging"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_RETRY = "retry"
STATUS_REFUNDING = "refunding"
STATUS_REFUNDED = "refunded"

STATUSES = (
    STATUS_PENDING,
    STATUS_CHARGING,
    STATUS_SUCCESS,
    STATUS_ERROR,
    STATUS_RETRY,
    STATUS_REFUNDING,
    STATUS_REFUNDED,
)
COMPLETED_STATUSES = frozenset({STATUS_SUCCESS, STATUS_ERROR, STATUS_REFUNDED})

TRANSITIONS = {
    STATUS_PENDING: {STATUS_CHARGING},
    STATUS_CHARGING: {STATUS_SUCCESS, STATUS_ERROR, STATUS_RETRY},
    STATUS_RETRY: {STATUS_CHARGING},
    STATUS_SUCCESS: {STATUS_REFUNDING},
    STATUS_REFUNDING: {STATUS_REFUNDED},
}


def payment_key(payment_id: int) -> str:
    return f"payments:{id_to_str(payment_id)}"


def is_valid_status(status: str) -> bool:
    return status in STATUSES


def is_completed(status: str) -> bool:
    return status in COMPLETED_STATUSES


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, ())


def _check_amount(amount: int) -> int:
    if amount < 0:
        raise InvalidInput("Amount was negative.")
    return amount


def add_payment(ctx, amount: int, message: str = "", user_id: int | None = None,
                funding_source_id: int | None = None, campaign_id: int | None = None,
                anonymous: bool = False, now: datetime | None = None) -> Payment:
    ctx.ensure_writable()
    payment = Payment(
        amount=_check_amount(amount),
        message=(message or "").strip(),
        remote_id="",
        created=now or utcnow(),
        completed=None,
        user_id=user_id,
        funding_source_id=funding_source_id,
        anonymous=anonymous,
        campaign_id=campaign_id,
        status=STATUS_PENDING,
        error="",
    )
    payment.id = ctx.ids.next()
    with ctx.transaction() as session:
        session.add(payment)
    ctx.audit(payment_key(payment.id), created(snapshot(payment, Payment.AUDITED)))
    return payment


def get_payment(ctx, payment_id: int) -> Payment:
    payment = ctx.db.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found.")
    return payment


def list_payments(ctx, before: int = 0, after: int = 0, count: int = 20, statuses=(),
                  user_id: int | None = None, campaign_id: int | None = None,
                  funding_source_id: int | None = None) -> list[Payment]:
    """Newest first; ``statuses`` is bound as an expanded IN list."""
    statuses = list(statuses or ())
    for status in statuses:
        if not is_valid_status(status):
            raise InvalidStatus()
    query = Payment.query
    if user_id is not None:
        query = query.filter(Payment.user_id == user_id)
    if campaign_id is not None:
        query = query.filter(Payment.campaign_id == campaign_id)
    if funding_source_id is not None:
        query = query.filter(Payment.funding_source_id == funding_source_id)
    if statuses:
        query = query.filter(Payment.status.in_(statuses))
    return paginate(query, Payment, [Payment.created.desc(), Payment.id.desc()], before, after, count).all()


def update_payment(ctx, payment: Payment, amount: int | None = None, message: str | None = None,
                   user_id: int | None = None, funding_source_id: int | None = None,
                   campaign_id: int | None = None, anonymous: bool | None = None,
                   remote_id: str | None = None) -> Payment:
    ctx.ensure_writable()
    before = snapshot(payment, Payment.AUDITED)
    if amount is not None:
        payment.amount = _check_amount(amount)
    if message is not None:
        payment.message = message.strip()
    if user_id is not None:
        payment.user_id = user_id
    if funding_source_id is not None:
        payment.funding_source_id = funding_source_id
    if campaign_id is not None:
        payment.campaign_id = campaign_id
    if anonymous is not None:
        payment.anonymous = anonymous
    if remote_id is not None:
        payment.remote_id = remote_id.strip()
    changes = diff(before, snapshot(payment, Payment.AUDITED))
    if changes:
        ctx.commit()
        ctx.audit(payment_key(payment.id), changes)
    return payment


def update_payment_status(ctx, payment: Payment, status: str, error: str = "",
                          now: datetime | None = None) -> Payment:
    ctx.ensure_writable()
    status = (status or "").strip()
    if not is_valid_status(status) or not can_transition(payment.status, status):
        raise InvalidStatus(f"Invalid status transition: {payment.status} -> {status}")
    before = snapshot(payment, Payment.AUDITED)
    payment.status = status
    payment.error = (error or "").strip()
    payment.completed = (now or utcnow()) if is_completed(status) else None
    changes = diff(before, snapshot(payment, Payment.AUDITED))
    ctx.commit()
    ctx.audit(payment_key(payment.id), changes)
    return payment


def delete_payment(ctx, payment: Payment) -> None:
    ctx.ensure_writable()
    payment_id = payment.id
    before = snapshot(payment, Payment.AUDITED)
    with ctx.transaction() as session:
        session.delete(payment)
    ctx.audit(payment_key(payment_id), deleted(before))


def anonymize_payments_by_user(ctx, user_id: int) -> int:
    """Detach a user's payments from them, keeping the amounts on record."""
    ctx.ensure_writable()
    rows = Payment.query.filter_by(user_id=user_id).all()
    if not rows:
        return 0
    audits = []
    for payment in rows:
        before = snapshot(payment, Payment.AUDITED)
        payment.user_id = None
        payment.anonymous = True
        audits.append((payment.id, diff(before, snapshot(payment, Payment.AUDITED))))
    ctx.commit()
    for payment_id, changes in audits:
        ctx.audit(payment_key(payment_id), changes)
    return len(rows)
