"""Access tokens for Microsoft Graph.

``CredentialProvider`` decides *how* a token is obtained: it tries the
silent path for a known account first and falls back to one interactive
sign-in. ``OAuthCredentialSource`` does the actual OAuth 2.0 work against
the Microsoft identity platform using Authlib:

- authorization code flow with PKCE for a public client (no secret)
- refresh-token renewal for the silent path
- the token is kept in a JSON file under the data directory

The interactive part needs someone to visit a URL and come back with the
redirect URL; that is the ``sign_in`` callable supplied by the caller.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from pathlib import Path
from typing import Any, Callable, Protocol

import httpx
from authlib.common.security import generate_token
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import OAuth2Client
from authlib.oauth2 import OAuth2Error
from loguru import logger

from .config import DEFAULT_SCOPES, Settings
from .errors import AuthError
from .storage import read_json, remove_file, write_json

# Cached access tokens closer than this to expiry are refreshed.
EXPIRY_MARGIN = 60

SignIn = Callable[[str], str]


class CredentialSource(Protocol):
    def get_account(self) -> str | None: ...

    def acquire_silent(self, account: str) -> str: ...

    def acquire_interactive(self, scopes: list[str]) -> str: ...


class CredentialProvider:
    """Supplies a bearer token, silently when possible.

    Usage:
        provider = CredentialProvider(OAuthCredentialSource(settings, sign_in=prompt))
        token = provider.acquire()
    """

    def __init__(self, source: CredentialSource, scopes: list[str] | None = None) -> None:
        self.source = source
        self.scopes = list(scopes or DEFAULT_SCOPES)

    def acquire(self) -> str:
        """Return an access token.

        Raises:
            AuthError: If both the silent and the interactive attempt fail.
        """
        try:
            account = self.source.get_account()
        except Exception as exc:  # noqa: BLE001 - an unreadable account means signing in again
            logger.warning(f"looking up the signed-in account failed: {exc}")
            account = None
        if account:
            try:
                token = self.source.acquire_silent(account)
            except Exception as exc:  # noqa: BLE001 - any silent failure falls through to sign-in
                logger.warning(f"silent token acquisition for {account} failed: {exc}")
            else:
                if token:
                    logger.debug(f"token acquired silently for {account}")
                    return token
                logger.warning(f"silent token acquisition for {account} returned no token")
        else:
            logger.info("no signed-in account found")

        try:
            token = self.source.acquire_interactive(self.scopes)
        except Exception as exc:
            raise AuthError(f"Interactive sign-in failed: {exc}") from exc
        if not token:
            raise AuthError("Interactive sign-in returned no access token")
        logger.info("token acquired interactively")
        return token


def _account_from_id_token(id_token: str | None) -> str | None:
    """Read the signed-in user's name from an id token's claims.

    The signature is not checked; the claim is only used as a label for
    the token store.
    """
    if not id_token:
        return None
    parts = id_token.split(".")
    if len(parts) < 2:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (binascii.Error, ValueError):
        return None
    if not isinstance(claims, dict):
        return None
    return claims.get("preferred_username") or claims.get("upn") or claims.get("email")


class OAuthCredentialSource:
    """Microsoft identity platform OAuth using Authlib."""

    def __init__(
        self,
        settings: Settings,
        sign_in: SignIn | None = None,
        token_path: str | Path | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.sign_in = sign_in
        self.token_path = Path(token_path) if token_path else settings.token_path
        self.transport = transport

    @property
    def authorize_url(self) -> str:
        return f"{self.settings.authority}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.settings.authority}/oauth2/v2.0/token"

    def _client(self, scopes: list[str]) -> OAuth2Client:
        if not self.settings.client_id:
            raise AuthError("DONELOG_CLIENT_ID is not set")
        return OAuth2Client(
            client_id=self.settings.client_id,
            scope=" ".join(scopes),
            redirect_uri=self.settings.redirect_uri,
            token_endpoint_auth_method="none",
            code_challenge_method="S256",
            timeout=self.settings.timeout,
            transport=self.transport,
        )

    def _load(self) -> dict[str, Any] | None:
        if not self.token_path.exists():
            return None
        try:
            stored = read_json(self.token_path)
        except (OSError, ValueError) as exc:
            logger.error(f"failed to read token store {self.token_path}: {exc}")
            return None
        if not isinstance(stored, dict) or not isinstance(stored.get("token"), dict):
            logger.warning(f"ignoring malformed token store {self.token_path}")
            return None
        return stored

    def _save(self, account: str, token: dict[str, Any]) -> None:
        write_json(self.token_path, {"account": account, "token": dict(token)}, private=True)
        logger.debug(f"token saved for {account}")

    def get_account(self) -> str | None:
        stored = self._load()
        return stored.get("account") if stored else None

    def acquire_silent(self, account: str) -> str:
        stored = self._load()
        if not stored or stored.get("account") != account:
            raise AuthError(f"No stored session for {account}")
        token = stored["token"]

        expires_at = token.get("expires_at") or 0
        if token.get("access_token") and expires_at - EXPIRY_MARGIN > time.time():
            return token["access_token"]

        refresh_token = token.get("refresh_token")
        if not refresh_token:
            raise AuthError(f"Session for {account} has expired and cannot be refreshed")

        scopes = token.get("scope", "").split() or DEFAULT_SCOPES
        logger.info("access token expired, refreshing")
        try:
            with self._client(scopes) as client:
                new_token = dict(client.refresh_token(self.token_url, refresh_token=refresh_token))
        except (OAuthError, OAuth2Error, httpx.HTTPError) as exc:
            raise AuthError(f"Failed to refresh token: {exc}") from exc
        new_token.setdefault("refresh_token", refresh_token)
        self._save(account, new_token)
        return new_token["access_token"]

    def acquire_interactive(self, scopes: list[str]) -> str:
        if self.sign_in is None:
            raise AuthError("Interactive sign-in is not available")

        code_verifier = generate_token(48)
        with self._client(scopes) as client:
            url, state = client.create_authorization_url(
                self.authorize_url,
                code_verifier=code_verifier,
                prompt="select_account",
            )
            redirect = self.sign_in(url)
            if not redirect:
                raise AuthError("Sign-in was cancelled")
            try:
                token = dict(
                    client.fetch_token(
                        self.token_url,
                        authorization_response=redirect,
                        state=state,
                        code_verifier=code_verifier,
                    )
                )
            except (OAuthError, OAuth2Error, httpx.HTTPError) as exc:
                raise AuthError(f"Failed to exchange authorization code: {exc}") from exc

        account = _account_from_id_token(token.get("id_token")) or "default"
        self._save(account, token)
        return token["access_token"]

    def sign_out(self) -> bool:
        """Forget the stored session. Returns False if there was none."""
        if not remove_file(self.token_path):
            return False
        logger.info("signed out")
        return True
