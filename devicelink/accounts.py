"""
Accounts bind an identity provider's foreign id to a User.
"""
import logging
from datetime import datetime

from .audit import created, deleted, diff, snapshot
from .errors import NotFound
from .ids import id_to_str
from .models import Account, utcnow

log = logging.getLogger(__name__)

PROVIDER_GOOGLE = "google"


def account_key(account_id: int) -> str:
    return f"accounts:{id_to_str(account_id)}"


def _apply_profile(account: Account, profile) -> None:
    account.email = profile.email
    account.email_verified = profile.verified_email
    account.display_name = profile.display_name
    account.given_name = profile.given_name
    account.family_name = profile.family_name
    account.picture = profile.picture
    account.locale = profile.locale
    account.timezone = profile.timezone
    account.gender = profile.gender


def _apply_tokens(account: Account, tokens) -> None:
    # Empty tokens are stored as NULL; a missing refresh token keeps the old one
    account.access_token = tokens.access_token or None
    if tokens.refresh_token:
        account.refresh_token = tokens.refresh_token
    account.token_expires = tokens.expires


def get_account(ctx, account_id: int) -> Account:
    account = ctx.db.get(Account, account_id)
    if account is None:
        raise NotFound("Account not found.")
    return account


def get_account_by_foreign_id(ctx, provider: str, foreign_id: str) -> Account:
    account = Account.query.filter_by(provider=provider, foreign_id=foreign_id).first()
    if account is None:
        log.warning("Account not found. Foreign ID: %s", foreign_id)
        raise NotFound("Account not found.")
    return account


def list_accounts_by_user(ctx, user_id: int) -> list[Account]:
    return Account.query.filter_by(user_id=user_id).order_by(Account.added).all()


def _save(ctx, account: Account, before: dict) -> Account:
    changes = diff(before, snapshot(account, Account.AUDITED))
    if changes:
        ctx.commit()
        ctx.audit(account_key(account.id), changes)
    return account


def get_or_create_account(ctx, google, tokens, now: datetime | None = None) -> Account:
    """Resolve the Google profile behind ``tokens`` to an Account, creating it on first sight.

    An existing account gets the fresh tokens stored.
    """
    profile = google.fetch_profile(tokens.access_token)
    try:
        account = get_account_by_foreign_id(ctx, PROVIDER_GOOGLE, profile.id)
    except NotFound:
        pass
    else:
        return update_account_tokens(ctx, account, tokens)

    ctx.ensure_writable()
    account = Account(
        id=ctx.ids.next(),
        provider=PROVIDER_GOOGLE,
        foreign_id=profile.id,
        added=now or utcnow(),
        user_id=None,
    )
    _apply_profile(account, profile)
    _apply_tokens(account, tokens)
    with ctx.transaction() as session:
        session.add(account)
    ctx.audit(account_key(account.id), created(snapshot(account, Account.AUDITED)))
    return account


def update_account_tokens(ctx, account: Account, tokens) -> Account:
    ctx.ensure_writable()
    before = snapshot(account, Account.AUDITED)
    _apply_tokens(account, tokens)
    return _save(ctx, account, before)


def refresh_account_profile(ctx, google, account: Account) -> Account:
    ctx.ensure_writable()
    profile = google.fetch_profile(account.access_token or "")
    before = snapshot(account, Account.AUDITED)
    _apply_profile(account, profile)
    return _save(ctx, account, before)


def associate_user_with_account(ctx, account: Account, user_id: int) -> Account:
    ctx.ensure_writable()
    before = snapshot(account, Account.AUDITED)
    account.user_id = user_id
    return _save(ctx, account, before)


def delete_account(ctx, account: Account) -> None:
    ctx.ensure_writable()
    account_id = account.id
    before = snapshot(account, Account.AUDITED)
    with ctx.transaction() as session:
        session.delete(account)
    ctx.audit(account_key(account_id), deleted(before))


def delete_accounts_by_user(ctx, user_id: int) -> int:
    ctx.ensure_writable()
    doomed = [(a.id, snapshot(a, Account.AUDITED)) for a in list_accounts_by_user(ctx, user_id)]
    if not doomed:
        return 0
    with ctx.transaction():
        Account.query.filter_by(user_id=user_id).delete(synchronize_session=False)
    for account_id, before in doomed:
        ctx.audit(account_key(account_id), deleted(before))
    return len(doomed)
