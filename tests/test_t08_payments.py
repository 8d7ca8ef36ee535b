from datetime import datetime, timedelta, timezone

import pytest

from devicelink import payments
from devicelink.errors import InvalidInput, InvalidStatus, NotFound
from devicelink.payments import (
    STATUS_CHARGING,
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_REFUNDED,
    STATUS_REFUNDING,
    STATUS_RETRY,
    STATUS_SUCCESS,
)

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_t08_new_payment_is_pending(ctx):
    """T-08: payments start pending with no completion time."""
    payment = payments.add_payment(ctx, 1500, message=" thanks ", user_id=3, campaign_id=9, now=T0)
    assert payment.status == STATUS_PENDING
    assert payment.completed is None
    assert payment.message == "thanks"
    assert payment.created == T0


def test_t08_negative_amount_rejected(ctx):
    """T-08: negative amounts are invalid; zero is allowed."""
    with pytest.raises(InvalidInput):
        payments.add_payment(ctx, -1)
    assert payments.add_payment(ctx, 0).amount == 0


def test_t08_success_path_sets_completed(ctx):
    """T-08: completed stays unset until success, then equals the transition time."""
    payment = payments.add_payment(ctx, 1500, now=T0)
    payments.update_payment_status(ctx, payment, STATUS_CHARGING, now=T0 + timedelta(minutes=1))
    assert payment.completed is None
    done = T0 + timedelta(minutes=2)
    payments.update_payment_status(ctx, payment, STATUS_SUCCESS, now=done)
    assert payment.completed == done

    fields = {e.field for e in ctx.auditor.entries(payments.payment_key(payment.id), count=2)}
    assert fields == {"status", "completed"}


def test_t08_illegal_transition_is_invalid_status(ctx):
    """T-08: pending cannot jump straight to refunded."""
    payment = payments.add_payment(ctx, 1500)
    with pytest.raises(InvalidStatus) as excinfo:
        payments.update_payment_status(ctx, payment, STATUS_REFUNDED)
    assert excinfo.value.code == "invalid_status"
    assert payments.get_payment(ctx, payment.id).status == STATUS_PENDING


def test_t08_unknown_status_is_invalid(ctx):
    """T-08: statuses outside the machine are refused."""
    payment = payments.add_payment(ctx, 1500)
    with pytest.raises(InvalidStatus):
        payments.update_payment_status(ctx, payment, "succeeded")


def test_t08_retry_reenters_charging(ctx):
    """T-08: retry goes back to charging, then may still fail with an error."""
    payment = payments.add_payment(ctx, 1500)
    for status in (STATUS_CHARGING, STATUS_RETRY, STATUS_CHARGING):
        payments.update_payment_status(ctx, payment, status)
        assert payment.completed is None
    payments.update_payment_status(ctx, payment, STATUS_ERROR, error=" card declined ")
    assert payment.error == "card declined"
    assert payment.completed is not None


def test_t08_refund_path(ctx):
    """T-08: refunding clears completed and refunded sets it again."""
    payment = payments.add_payment(ctx, 1500)
    payments.update_payment_status(ctx, payment, STATUS_CHARGING)
    payments.update_payment_status(ctx, payment, STATUS_SUCCESS)
    payments.update_payment_status(ctx, payment, STATUS_REFUNDING)
    assert payment.completed is None
    payments.update_payment_status(ctx, payment, STATUS_REFUNDED)
    assert payment.completed is not None
    with pytest.raises(InvalidStatus):
        payments.update_payment_status(ctx, payment, STATUS_CHARGING)


def test_t08_completed_iff_terminal_status():
    """T-08: success, error and refunded are the completed statuses."""
    assert {s for s in payments.STATUSES if payments.is_completed(s)} == {
        STATUS_SUCCESS,
        STATUS_ERROR,
        STATUS_REFUNDED,
    }


def test_t08_list_filters_and_order(ctx):
    """T-08: listing is newest first and filters by status, user and campaign."""
    a = payments.add_payment(ctx, 100, user_id=1, campaign_id=10, now=T0)
    b = payments.add_payment(ctx, 200, user_id=2, campaign_id=10, now=T0 + timedelta(hours=1))
    c = payments.add_payment(ctx, 300, user_id=1, campaign_id=11, now=T0 + timedelta(hours=2))
    payments.update_payment_status(ctx, b, STATUS_CHARGING)

    assert [p.id for p in payments.list_payments(ctx)] == [c.id, b.id, a.id]
    assert [p.id for p in payments.list_payments(ctx, statuses=[STATUS_CHARGING])] == [b.id]
    pending_or_charging = payments.list_payments(ctx, statuses=[STATUS_PENDING, STATUS_CHARGING])
    assert len(pending_or_charging) == 3
    assert [p.id for p in payments.list_payments(ctx, user_id=1)] == [c.id, a.id]
    assert [p.id for p in payments.list_payments(ctx, campaign_id=10)] == [b.id, a.id]
    assert [p.id for p in payments.list_payments(ctx, count=1)] == [c.id]
    assert [p.id for p in payments.list_payments(ctx, before=c.id)] == [b.id, a.id]
    with pytest.raises(InvalidStatus):
        payments.list_payments(ctx, statuses=["lost"])


def test_t08_update_and_delete(ctx):
    """T-08: field updates are audited and deletes remove the row."""
    payment = payments.add_payment(ctx, 100)
    payments.update_payment(ctx, payment, amount=250, remote_id="ch_123", anonymous=True)
    assert (payment.amount, payment.remote_id, payment.anonymous) == (250, "ch_123", True)
    with pytest.raises(InvalidInput):
        payments.update_payment(ctx, payment, amount=-5)
    payment_id = payment.id
    payments.delete_payment(ctx, payment)
    with pytest.raises(NotFound):
        payments.get_payment(ctx, payment_id)
