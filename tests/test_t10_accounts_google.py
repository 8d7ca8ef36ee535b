from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from devicelink import accounts
from devicelink.errors import InvalidCredentials, InvalidInput, NotFound, Transient
from devicelink.google import TOKEN_URL, USERINFO_URL, GoogleClient, OAuthTokens

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

PROFILE = {
    "id": "1234567890",
    "email": "ada@example.com",
    "verified_email": True,
    "name": "Ada Lovelace",
    "given_name": "Ada",
    "family_name": "Lovelace",
    "picture": "https://example.com/ada.png",
    "locale": "en",
}


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON")
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(*responses):
    session = FakeSession(*responses)
    return GoogleClient("client-id", "client-secret", "https://app.example.com/cb", session=session), session


def test_t10_auth_url():
    """T-10: the consent URL carries client, callback, offline access and state."""
    client, _ = _client()
    query = parse_qs(urlparse(client.auth_url("xyz")).query)
    assert query["client_id"] == ["client-id"]
    assert query["redirect_uri"] == ["https://app.example.com/cb"]
    assert query["access_type"] == ["offline"]
    assert query["state"] == ["xyz"]


def test_t10_exchange_code():
    """T-10: a code is traded for tokens with an absolute expiry."""
    answer = {"access_token": "ya29.live", "refresh_token": "1//refresh", "expires_in": 3600}
    client, session = _client(FakeResponse(200, answer))
    tokens = client.exchange_code("the-code", now=T0)
    assert (tokens.access_token, tokens.refresh_token) == ("ya29.live", "1//refresh")
    assert tokens.expires == T0 + timedelta(hours=1)
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", TOKEN_URL)
    assert kwargs["data"]["grant_type"] == "authorization_code"
    assert "ya29" not in repr(tokens)
    assert "refresh" not in repr(tokens)


def test_t10_refresh_keeps_refresh_token():
    """T-10: a refresh answer without a refresh token keeps the old one."""
    client, _ = _client(FakeResponse(200, {"access_token": "at2", "expires_in": 60}))
    tokens = client.refresh("rt", now=T0)
    assert (tokens.access_token, tokens.refresh_token) == ("at2", "rt")


@pytest.mark.parametrize(
    "response,error",
    [
        (FakeResponse(401, {"error": "unauthorized"}), InvalidCredentials),
        (FakeResponse(200, {"error": {"code": 401, "message": "Invalid Credentials"}}), InvalidCredentials),
        (FakeResponse(400, {"error": "invalid_grant"}), InvalidInput),
        (FakeResponse(503, None), Transient),
        (FakeResponse(200, None), Transient),
        (requests.ConnectionError("refused"), Transient),
    ],
)
def test_t10_errors_map_to_taxonomy(response, error):
    """T-10: upstream failures become taxonomy errors."""
    client, _ = _client(response)
    with pytest.raises(error):
        client.fetch_profile("at")


def test_t10_fetch_profile():
    """T-10: the userinfo answer becomes a profile with the composed display name."""
    client, session = _client(FakeResponse(200, PROFILE))
    profile = client.fetch_profile("at")
    assert profile.display_name == "Ada Lovelace (ada@example.com)"
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", USERINFO_URL)
    assert kwargs["headers"]["Authorization"] == "Bearer at"


def test_t10_get_or_create_account(ctx):
    """T-10: first sight creates the account, second sight refreshes its tokens."""
    client, _ = _client(FakeResponse(200, PROFILE), FakeResponse(200, PROFILE))
    account = accounts.get_or_create_account(ctx, client, OAuthTokens("at", "rt", T0), now=T0)
    assert account.foreign_id == "1234567890"
    assert account.display_name == "Ada Lovelace (ada@example.com)"
    assert account.email_verified is True
    assert account.user_id is None

    again = accounts.get_or_create_account(ctx, client, OAuthTokens("at2", None, T0 + timedelta(hours=1)))
    assert again.id == account.id
    assert again.access_token == "at2"
    assert again.refresh_token == "rt"


def test_t10_tokens_never_exposed(ctx):
    """T-10: tokens stay out of to_dict, repr and the audit log."""
    client, _ = _client(FakeResponse(200, PROFILE))
    account = accounts.get_or_create_account(ctx, client, OAuthTokens("access-xyz", "refresh-xyz", T0))
    assert "access_token" not in account.to_dict()
    assert "refresh_token" not in account.to_dict()
    assert "xyz" not in repr(account)
    entries = ctx.auditor.entries(accounts.account_key(account.id), count=50)
    rendered = " ".join(e.from_value + e.to_value for e in entries)
    assert "xyz" not in rendered


def test_t10_empty_tokens_stored_null(ctx):
    """T-10: an empty access token is stored as NULL."""
    client, _ = _client(FakeResponse(200, PROFILE))
    account = accounts.get_or_create_account(ctx, client, OAuthTokens("", None, None))
    assert account.access_token is None
    assert account.refresh_token is None


def test_t10_associate_list_and_delete(ctx):
    """T-10: accounts attach to a user, list by user and delete."""
    client, _ = _client(FakeResponse(200, PROFILE))
    account = accounts.get_or_create_account(ctx, client, OAuthTokens("at", "rt", T0))
    accounts.associate_user_with_account(ctx, account, 77)
    assert [a.id for a in accounts.list_accounts_by_user(ctx, 77)] == [account.id]
    assert accounts.get_account_by_foreign_id(ctx, accounts.PROVIDER_GOOGLE, "1234567890").id == account.id

    account_id = account.id
    accounts.delete_account(ctx, account)
    with pytest.raises(NotFound):
        accounts.get_account(ctx, account_id)
    with pytest.raises(NotFound):
        accounts.get_account_by_foreign_id(ctx, accounts.PROVIDER_GOOGLE, "1234567890")


def test_t10_refresh_profile(ctx):
    """T-10: refreshing the profile pulls changed fields from Google."""
    changed = dict(PROFILE, family_name="King")
    client, _ = _client(FakeResponse(200, PROFILE), FakeResponse(200, changed))
    account = accounts.get_or_create_account(ctx, client, OAuthTokens("at", "rt", T0))
    accounts.refresh_account_profile(ctx, client, account)
    assert account.family_name == "King"
    assert account.display_name == "Ada King (ada@example.com)"
