"""
Google OAuth2 client: consent URL, code exchange, token refresh and the
userinfo profile. Built on requests; every call has a (connect, read)
timeout and failures are mapped onto the error taxonomy.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from urllib.parse import urlencode

import requests

from .errors import InvalidCredentials, InvalidInput, Transient
from .models import utcnow

log = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URL = "https://accounts.google.com/o/oauth2/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v1/userinfo"
SCOPES = "https://www.googleapis.com/auth/userinfo.profile https://www.googleapis.com/auth/userinfo.email"
REQUEST_TIMEOUT = (5, 30)


@dataclass
class OAuthTokens:
    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires: datetime | None = None


@dataclass
class GoogleProfile:
    id: str
    email: str = ""
    verified_email: bool = False
    name: str = ""
    given_name: str = ""
    family_name: str = ""
    picture: str = ""
    locale: str = ""
    timezone: str = ""
    gender: str = ""

    @classmethod
    def from_json(cls, data: dict) -> "GoogleProfile":
        if not data.get("id"):
            raise InvalidInput("Google userinfo missing id")
        return cls(
            id=str(data["id"]),
            email=data.get("email") or "",
            verified_email=bool(data.get("verified_email")),
            name=data.get("name") or "",
            given_name=data.get("given_name") or "",
            family_name=data.get("family_name") or "",
            picture=data.get("picture") or "",
            locale=data.get("locale") or "",
            timezone=data.get("timezone") or "",
            gender=data.get("gender") or "",
        )

    @property
    def display_name(self) -> str:
        return f"{self.given_name} {self.family_name} ({self.email})"


class GoogleClient:
    def __init__(self, client_id: str, client_secret: str, callback_url: str, session=None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self.http = session or requests.Session()

    @classmethod
    def from_config(cls, config, session=None) -> "GoogleClient":
        return cls(
            config.get("OAUTH_CLIENT_ID", ""),
            config.get("OAUTH_CLIENT_SECRET", ""),
            config.get("OAUTH_CALLBACK_URL", ""),
            session=session,
        )

    def auth_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.callback_url,
            "response_type": "code",
            "scope": SCOPES,
            "access_type": "offline",
            "state": state,
        }
        return f"{AUTH_URL}?{urlencode(params)}"

    def _call(self, method: str, url: str, **kwargs) -> dict:
        try:
            resp = self.http.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as e:
            log.error("google %s %s failed: %s", method, url, e)
            raise Transient(str(e)) from e
        if resp.status_code >= 500:
            raise Transient(f"google answered {resp.status_code}")
        if resp.status_code == 401:
            raise InvalidCredentials("Invalid OAuth credentials.")
        try:
            data = resp.json()
        except ValueError as e:
            raise Transient("google answered with a non-JSON body") from e
        if resp.status_code >= 400 or "error" in data:
            error = data.get("error")
            if isinstance(error, dict):
                if error.get("code") == 401:
                    raise InvalidCredentials("Invalid OAuth credentials.")
                error = error.get("message")
            raise InvalidInput(data.get("error_description") or error or f"google answered {resp.status_code}")
        return data

    def _tokens(self, data: dict, refresh_token: str | None = None, now: datetime | None = None) -> OAuthTokens:
        access_token = data.get("access_token")
        if not access_token:
            raise InvalidInput("Token exchange did not return access_token")
        expires_in = data.get("expires_in")
        expires = (now or utcnow()) + timedelta(seconds=int(expires_in)) if expires_in else None
        return OAuthTokens(access_token, data.get("refresh_token") or refresh_token, expires)

    def exchange_code(self, code: str, now: datetime | None = None) -> OAuthTokens:
        data = self._call(
            "POST",
            TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.callback_url,
            },
        )
        return self._tokens(data, now=now)

    def refresh(self, refresh_token: str, now: datetime | None = None) -> OAuthTokens:
        data = self._call(
            "POST",
            TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return self._tokens(data, refresh_token=refresh_token, now=now)

    def fetch_profile(self, access_token: str) -> GoogleProfile:
        data = self._call("GET", USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
        return GoogleProfile.from_json(data)
