"""
Fundraising campaigns. A campaign window may be open at either end; it is
current while ``starts <= now < ends``.
"""
from datetime import datetime

from sqlalchemy import and_, func, or_

from .audit import created, deleted, diff, snapshot
from .errors import InvalidInput, NotFound
from .ids import id_to_str
from .models import Campaign, Payment, paginate, utcnow
from .payments import STATUS_SUCCESS


def campaign_key(campaign_id: int) -> str:
    return f"campaigns:{id_to_str(campaign_id)}"


def _check_text(value: str, what: str) -> str:
    value = (value or "").strip()
    if not value:
        raise InvalidInput(f"Campaign {what} empty")
    return value


def _check_goal(goal: int) -> int:
    if goal < 0:
        raise InvalidInput("Campaign goal negative")
    return goal


def _started(now: datetime):
    return or_(Campaign.starts.is_(None), Campaign.starts <= now)


def add_campaign(ctx, title: str, description: str, goal: int = 0, auxiliary: bool = False,
                 starts: datetime | None = None, ends: datetime | None = None) -> Campaign:
    ctx.ensure_writable()
    campaign = Campaign(
        title=_check_text(title, "title"),
        description=_check_text(description, "description"),
        goal=_check_goal(goal),
        amount=0,
        auxiliary=auxiliary,
        starts=starts,
        ends=ends,
    )
    campaign.id = ctx.ids.next()
    with ctx.transaction() as session:
        session.add(campaign)
    ctx.audit(campaign_key(campaign.id), created(snapshot(campaign, Campaign.AUDITED)))
    return campaign


def get_campaign(ctx, campaign_id: int, admin: bool = False, now: datetime | None = None) -> Campaign:
    """Non-admins only see campaigns that have started."""
    query = Campaign.query.filter(Campaign.id == campaign_id)
    if not admin:
        query = query.filter(_started(now or utcnow()))
    campaign = query.first()
    if campaign is None:
        raise NotFound("Campaign not found.")
    return campaign


def list_campaigns(ctx, current: bool | None = None, auxiliary: bool | None = None, before: int = 0,
                   after: int = 0, count: int = 20, admin: bool = False,
                   now: datetime | None = None) -> list[Campaign]:
    """Campaigns ordered by ``starts``; ``before``/``after`` are exclusive id bounds."""
    now = now or utcnow()
    query = Campaign.query
    if current is True:
        query = query.filter(_started(now), or_(Campaign.ends.is_(None), Campaign.ends > now))
    elif current is False:
        query = query.filter(and_(Campaign.ends.isnot(None), Campaign.ends <= now))
    if auxiliary is not None:
        query = query.filter(Campaign.auxiliary == auxiliary)
    if not admin:
        query = query.filter(_started(now))
    return paginate(query, Campaign, [Campaign.starts, Campaign.id], before, after, count).all()


def update_campaign(ctx, campaign: Campaign, title: str | None = None, description: str | None = None,
                    goal: int | None = None, auxiliary: bool | None = None, starts: datetime | None = None,
                    ends: datetime | None = None) -> Campaign:
    ctx.ensure_writable()
    # Reject before assigning: a failed call must leave the session clean
    if title is not None:
        title = _check_text(title, "title")
    if description is not None:
        description = _check_text(description, "description")
    if goal is not None:
        goal = _check_goal(goal)

    before = snapshot(campaign, Campaign.AUDITED)
    if title is not None:
        campaign.title = title
    if description is not None:
        campaign.description = description
    if goal is not None:
        campaign.goal = goal
    if auxiliary is not None:
        campaign.auxiliary = auxiliary
    if starts is not None:
        campaign.starts = starts
    if ends is not None:
        campaign.ends = ends
    changes = diff(before, snapshot(campaign, Campaign.AUDITED))
    if changes:
        ctx.commit()
        ctx.audit(campaign_key(campaign.id), changes)
    return campaign


def refresh_campaign_amount(ctx, campaign: Campaign) -> Campaign:
    """Recompute the raised amount from the campaign's successful payments."""
    ctx.ensure_writable()
    total = (
        ctx.db.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.campaign_id == campaign.id, Payment.status == STATUS_SUCCESS)
        .scalar()
    )
    before = snapshot(campaign, Campaign.AUDITED)
    campaign.amount = int(total)
    changes = diff(before, snapshot(campaign, Campaign.AUDITED))
    if changes:
        ctx.commit()
        ctx.audit(campaign_key(campaign.id), changes)
    return campaign


def delete_campaign(ctx, campaign: Campaign) -> None:
    ctx.ensure_writable()
    campaign_id = campaign.id
    before = snapshot(campaign, Campaign.AUDITED)
    with ctx.transaction() as session:
        session.delete(campaign)
    ctx.audit(campaign_key(campaign_id), deleted(before))
