from datetime import datetime, timedelta, timezone

import pytest

from devicelink import campaigns, payments
from devicelink.errors import InvalidInput, NotFound

NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


def _ids(rows):
    return [c.id for c in rows]


def test_t09_add_validates(ctx):
    """T-09: title and description are required and the goal is non-negative."""
    with pytest.raises(InvalidInput):
        campaigns.add_campaign(ctx, "  ", "desc")
    with pytest.raises(InvalidInput):
        campaigns.add_campaign(ctx, "title", "")
    with pytest.raises(InvalidInput):
        campaigns.add_campaign(ctx, "title", "desc", goal=-1)
    campaign = campaigns.add_campaign(ctx, "Server fund", "Pay for the servers", goal=100000)
    assert campaign.amount == 0
    entries = ctx.auditor.entries(campaigns.campaign_key(campaign.id), count=50)
    assert {e.field for e in entries} >= {"title", "description", "goal"}


def test_t09_is_current():
    """T-09: open ends count as started / never ending."""
    from devicelink.models import Campaign

    assert Campaign(starts=None, ends=None).is_current(NOW)
    assert Campaign(starts=NOW - DAY, ends=NOW + DAY).is_current(NOW)
    assert not Campaign(starts=NOW + DAY, ends=None).is_current(NOW)
    assert not Campaign(starts=NOW - DAY, ends=NOW).is_current(NOW)


def test_t09_non_admins_only_see_started(ctx):
    """T-09: a future campaign is hidden from non-admins."""
    future = campaigns.add_campaign(ctx, "Later", "Not yet", starts=NOW + DAY)
    with pytest.raises(NotFound):
        campaigns.get_campaign(ctx, future.id, now=NOW)
    assert campaigns.get_campaign(ctx, future.id, admin=True, now=NOW).id == future.id


def test_t09_list_current_and_auxiliary(ctx):
    """T-09: listing filters on current and auxiliary, ordered by start."""
    past = campaigns.add_campaign(ctx, "Past", "d", starts=NOW - 10 * DAY, ends=NOW - 5 * DAY)
    running = campaigns.add_campaign(ctx, "Running", "d", starts=NOW - 2 * DAY, ends=NOW + DAY)
    side = campaigns.add_campaign(ctx, "Side", "d", auxiliary=True, starts=NOW - DAY)
    future = campaigns.add_campaign(ctx, "Future", "d", starts=NOW + DAY)

    assert _ids(campaigns.list_campaigns(ctx, now=NOW)) == [past.id, running.id, side.id]
    assert _ids(campaigns.list_campaigns(ctx, admin=True, now=NOW)) == [past.id, running.id, side.id, future.id]
    assert _ids(campaigns.list_campaigns(ctx, current=True, now=NOW)) == [running.id, side.id]
    assert _ids(campaigns.list_campaigns(ctx, current=False, now=NOW)) == [past.id]
    assert _ids(campaigns.list_campaigns(ctx, current=True, auxiliary=False, now=NOW)) == [running.id]


def test_t09_refresh_amount_sums_successful_payments(ctx):
    """T-09: the raised amount is the sum of the campaign's successful payments."""
    campaign = campaigns.add_campaign(ctx, "Fund", "d", goal=1000)
    for amount, succeed in ((300, True), (200, True), (999, False)):
        payment = payments.add_payment(ctx, amount, campaign_id=campaign.id)
        payments.update_payment_status(ctx, payment, payments.STATUS_CHARGING)
        if succeed:
            payments.update_payment_status(ctx, payment, payments.STATUS_SUCCESS)
    payments.add_payment(ctx, 50, campaign_id=campaign.id + 1)

    campaigns.refresh_campaign_amount(ctx, campaign)
    assert campaign.amount == 500
    (entry,) = ctx.auditor.entries(campaigns.campaign_key(campaign.id), count=1)
    assert (entry.field, entry.from_value, entry.to_value) == ("amount", "0", "500")


def test_t09_update_and_delete(ctx):
    """T-09: updates are validated and audited; deletes remove the row."""
    campaign = campaigns.add_campaign(ctx, "Fund", "d", starts=NOW - DAY)
    campaigns.update_campaign(ctx, campaign, title="Fund 2024", goal=5000)
    assert (campaign.title, campaign.goal) == ("Fund 2024", 5000)
    with pytest.raises(InvalidInput):
        campaigns.update_campaign(ctx, campaign, description="  ")
    campaign_id = campaign.id
    campaigns.delete_campaign(ctx, campaign)
    with pytest.raises(NotFound):
        campaigns.get_campaign(ctx, campaign_id, admin=True)


def test_t09_rejected_update_leaves_nothing_behind(ctx):
    """T-09: a rejected update changes no field, even after an unrelated commit."""
    campaign = campaigns.add_campaign(ctx, "Spring", "d", goal=100)
    key = campaigns.campaign_key(campaign.id)
    audits = len(ctx.store.lrange(f"audit:{key}"))
    with pytest.raises(InvalidInput):
        campaigns.update_campaign(ctx, campaign, title="Hijacked", goal=5, description="   ")
    payments.add_payment(ctx, 5)
    ctx.db.expire_all()
    stored = campaigns.get_campaign(ctx, campaign.id, admin=True)
    assert (stored.title, stored.goal) == ("Spring", 100)
    assert len(ctx.store.lrange(f"audit:{key}")) == audits
