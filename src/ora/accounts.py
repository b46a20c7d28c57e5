"""User document bootstrap.

Every signed-in user gets a ``users/{uid}`` document the first time an
auth state change reports them.  The document carries the searchable
``emailLower`` and a default ``handle`` next to the profile defaults.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from ora.store.base import SERVER_TIMESTAMP, DocumentStore, user_path

logger = logging.getLogger(__name__)

DEFAULT_HANDLE_BASE = "ora"
DEFAULT_ROLE = "user"


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    return email.strip().lower() or None


def normalize_handle(raw: str) -> str:
    value = raw.strip().lower()
    value = re.sub(r"\s+", "_", value)
    value = re.sub(r"[^a-z0-9_]", "", value)
    value = re.sub(r"_+", "_", value)
    return value.strip("_")


def build_default_handle(
    uid: str, display_name: str | None = None, email: str | None = None
) -> str:
    """``<normalized name>_<first 4 of uid>``, falling back to ``ora`` for short names."""
    if display_name is not None:
        candidate = display_name
    elif email:
        candidate = email.split("@")[0]
    else:
        candidate = DEFAULT_HANDLE_BASE
    base = normalize_handle(candidate or DEFAULT_HANDLE_BASE)
    if len(base) < 3:
        base = DEFAULT_HANDLE_BASE
    return f"{base}_{uid[:4].lower()}"


@dataclass(frozen=True)
class AuthUser:
    uid: str
    email: str | None = None
    display_name: str | None = None
    photo_url: str | None = None


AuthListener = Callable[[AuthUser | None], Awaitable[None]]


class AuthStateSource(Protocol):
    """Something that reports sign-in changes, e.g. an identity provider session."""

    def add_listener(self, listener: AuthListener) -> Callable[[], None]:
        """Register *listener*; the returned callable unregisters it."""
        ...


def default_user_document(user: AuthUser) -> dict[str, Any]:
    data: dict[str, Any] = {
        "email": user.email,
        "emailLower": normalize_email(user.email),
        "handle": build_default_handle(user.uid, user.display_name, user.email),
        "role": DEFAULT_ROLE,
        "oraTutorialSeen": False,
        "createdAt": SERVER_TIMESTAMP,
    }
    if user.display_name:
        data["displayName"] = user.display_name
    if user.photo_url:
        data["photoURL"] = user.photo_url
    return data


async def ensure_user_document(store: DocumentStore, user: AuthUser) -> bool:
    """Create ``users/{uid}`` when missing.  Returns True when it was created.

    An existing document only gets ``emailLower`` and ``handle`` backfilled
    when they are absent; nothing else is overwritten.
    """
    path = user_path(user.uid)
    existing = await store.get(path)
    if existing is None:
        await store.set(path, default_user_document(user))
        logger.info("Created user document for %s", user.uid)
        return True

    backfill: dict[str, Any] = {}
    email_lower = normalize_email(existing.get("email") or user.email)
    if not existing.get("emailLower") and email_lower:
        backfill["emailLower"] = email_lower
    if not existing.get("handle"):
        backfill["handle"] = build_default_handle(
            user.uid,
            existing.get("displayName") or user.display_name,
            existing.get("email") or user.email,
        )
    if backfill:
        await store.set(path, backfill, merge=True)
    return False


class UserDocumentService:
    """Keeps user documents in place while attached to an auth state source."""

    def __init__(self, store: DocumentStore, auth_source: AuthStateSource) -> None:
        self._store = store
        self._auth_source = auth_source
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self._auth_source.add_listener(self._on_auth_state)

    def stop(self) -> None:
        if self._unsubscribe is None:
            return
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        unsubscribe()

    async def _on_auth_state(self, user: AuthUser | None) -> None:
        if user is None:
            return
        try:
            await ensure_user_document(self._store, user)
        except Exception:
            logger.exception("Failed to ensure user document for %s", user.uid)
