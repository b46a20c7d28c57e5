"""Offline-access consent: authorization URL, callback completion, result page.

The callback stores the long-lived refresh token for the background sweep
and opts the account into sync.  Friend-share consents additionally grant
the friend read access to the user's primary calendar and set the user's
share flag on the accepted friendship.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlencode

from ora.calendar.oauth import (
    CALENDAR_ACL_SCOPE,
    CALENDAR_READONLY_SCOPE,
    GoogleTokenEndpoint,
    StaticTokenSource,
    build_authorization_url,
)
from ora.calendar.provider import GoogleCalendarClient, TokenSource
from ora.config import DEFAULTS, CalendarDefaults
from ora.consent.state import (
    FRIEND_SHARE_ACTION,
    REDIRECT_MODE,
    StatePayload,
    create_state,
    verify_state,
)
from ora.core.logging import uid_context
from ora.errors import ConsentFailedError, FriendshipNotFoundError
from ora.friends.graph import FriendGraph
from ora.store.base import SERVER_TIMESTAMP, DocumentStore, calendar_token_path, user_path

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/api/calendar-consent-callback"
CONSENT_MESSAGE_TYPE = "ora-calendar-consent"
MISSING_REFRESH_TOKEN = "Google did not return a refresh token."


def get_app_base_url(host: str | None, app_base_url: str | None = None) -> str:
    """Public origin used to build the OAuth redirect URI."""
    if app_base_url and app_base_url.strip():
        return app_base_url.strip().rstrip("/")
    if not host:
        raise ValueError("Missing host header.")
    protocol = "http" if "localhost" in host else "https"
    return f"{protocol}://{host}"


def redirect_uri_for(base_url: str) -> str:
    return f"{base_url.rstrip('/')}{CALLBACK_PATH}"


def html_result(ok: bool, message: str) -> str:
    """Completion page posting ``{type, ok}`` to the opener and closing itself."""
    safe = message.translate({ord(c): None for c in "<>&"})
    heading = "Calendar consent saved" if ok else "Calendar consent failed"
    flag = "true" if ok else "false"
    return f"""<!doctype html>
<html>
<head><meta charset="utf-8"><title>ORA Calendar Consent</title></head>
<body style="font-family: Arial, sans-serif; padding: 20px;">
  <h3>{heading}</h3>
  <p>{safe}</p>
  <script>
    if (window.opener) {{
      window.opener.postMessage({{ type: "{CONSENT_MESSAGE_TYPE}", ok: {flag} }}, "*");
      window.close();
    }}
  </script>
</body>
</html>"""


def redirect_result_url(base_url: str, ok: bool) -> str:
    return f"{base_url.rstrip('/')}/?{urlencode({'calendarConsent': 'ok' if ok else 'error'})}"


@dataclass(frozen=True)
class ConsentResult:
    ok: bool
    uid: str
    message: str
    friend_uid: str | None = None
    shared: bool = False
    redirect: bool = False


ClientFactory = Callable[[TokenSource], GoogleCalendarClient]


class ConsentFlow:
    """Server half of the consent round trip."""

    def __init__(
        self,
        store: DocumentStore,
        token_endpoint: GoogleTokenEndpoint,
        *,
        client_id: str,
        state_secret: str,
        client_factory: ClientFactory | None = None,
        defaults: CalendarDefaults = DEFAULTS,
    ) -> None:
        self._store = store
        self._endpoint = token_endpoint
        self._client_id = client_id
        self._state_secret = state_secret
        self._client_factory = client_factory or (lambda source: GoogleCalendarClient(source))
        self._defaults = defaults
        self._friends = FriendGraph(store)

    def start(
        self,
        uid: str,
        base_url: str,
        *,
        friend_uid: str | None = None,
        redirect: bool = False,
    ) -> str:
        """Return the Google authorization URL for *uid*."""
        scopes = [CALENDAR_READONLY_SCOPE]
        if friend_uid:
            scopes.append(CALENDAR_ACL_SCOPE)
        state = create_state(
            uid,
            self._state_secret,
            action=FRIEND_SHARE_ACTION if friend_uid else None,
            friend_uid=friend_uid,
            mode=REDIRECT_MODE if redirect else None,
        )
        return build_authorization_url(
            client_id=self._client_id,
            redirect_uri=redirect_uri_for(base_url),
            scopes=scopes,
            state=state,
        )

    def verify(self, state: str) -> StatePayload:
        return verify_state(state, self._state_secret, max_age=self._defaults.state_max_age)

    async def complete(self, code: str, state: str, base_url: str) -> ConsentResult:
        """Finish the consent for the callback's *code* and *state*.

        Raises
        ------
        StateInvalidError
            When *state* is tampered with or expired.
        TokenExchangeError
            When the provider rejects the authorization code.
        ConsentFailedError
            When no refresh token is available for the account.
        FriendshipNotFoundError
            For a friend share whose friendship is no longer accepted.
        """
        payload = self.verify(state)
        with uid_context(payload.uid):
            grant = await self._endpoint.exchange_code(code, redirect_uri_for(base_url))

            token_path = calendar_token_path(payload.uid)
            existing = await self._store.get(token_path) or {}
            previous = existing.get("refreshToken")
            refresh_token = grant.refresh_token or (previous if isinstance(previous, str) else None)
            if not refresh_token:
                raise ConsentFailedError(MISSING_REFRESH_TOKEN)

            batch = self._store.batch()
            batch.set(
                token_path,
                {"refreshToken": refresh_token, "updatedAt": SERVER_TIMESTAMP},
                merge=True,
            )
            batch.set(
                user_path(payload.uid),
                {
                    "calendarConsentStatus": "granted",
                    "calendarSyncEnabled": True,
                    "updatedAt": SERVER_TIMESTAMP,
                },
                merge=True,
            )
            await batch.commit()
            logger.info(
                "Calendar consent granted (new refresh token: %s)",
                grant.refresh_token is not None,
            )

            redirect = payload.redirect
            friend_uid = payload.friend_uid if payload.is_friend_share else None
            if friend_uid is None:
                return ConsentResult(
                    ok=True,
                    uid=payload.uid,
                    message="Automatic calendar sync is enabled.",
                    redirect=redirect,
                )

            await self._share_with_friend(payload.uid, friend_uid, grant.access_token)
            return ConsentResult(
                ok=True,
                uid=payload.uid,
                message="Your calendar is now shared with your friend.",
                friend_uid=friend_uid,
                shared=True,
                redirect=redirect,
            )

    async def _share_with_friend(self, uid: str, friend_uid: str, access_token: str) -> None:
        if not await self._friends.has_accepted(uid, friend_uid):
            logger.warning("Friend share skipped; friendship with %s is not accepted", friend_uid)
            raise FriendshipNotFoundError()

        friend = await self._store.get(user_path(friend_uid)) or {}
        email = friend.get("email")
        if not isinstance(email, str) or not email.strip():
            raise ConsentFailedError("Friend has no email address on file.")

        client = self._client_factory(StaticTokenSource(access_token))
        try:
            created = await client.grant_reader_access(email.strip())
        finally:
            await client.aclose()
        await self._friends.mark_share_completed(uid, friend_uid)
        logger.info(
            "Calendar shared with friend %s (%s)",
            friend_uid,
            "new rule" if created else "rule already present",
        )
