"""Signed OAuth ``state`` tokens.

Format: ``base64url(json_payload) + "." + base64url(hmac_sha256(encoded))``.
The payload carries the uid, an issue time in epoch milliseconds, a random
nonce and, for friend-share consents, the action and the friend's uid.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta

from ora.config import DEFAULTS
from ora.errors import StateInvalidError

FRIEND_SHARE_ACTION = "friend_share"
REDIRECT_MODE = "redirect"


@dataclass(frozen=True)
class StatePayload:
    uid: str
    ts: int
    nonce: str
    action: str | None = None
    friend_uid: str | None = None
    mode: str | None = None

    @property
    def is_friend_share(self) -> bool:
        return self.action == FRIEND_SHARE_ACTION and bool(self.friend_uid)

    @property
    def redirect(self) -> bool:
        return self.mode == REDIRECT_MODE


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(encoded: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), encoded.encode("utf-8"), hashlib.sha256).digest()
    return _b64encode(digest)


def _now_ms() -> int:
    return int(time.time() * 1000)


def create_state(
    uid: str,
    secret: str,
    *,
    action: str | None = None,
    friend_uid: str | None = None,
    mode: str | None = None,
    now_ms: int | None = None,
) -> str:
    payload: dict[str, object] = {
        "uid": uid,
        "ts": now_ms if now_ms is not None else _now_ms(),
        "nonce": secrets.token_hex(12),
    }
    if action:
        payload["action"] = action
    if friend_uid:
        payload["friendUid"] = friend_uid
    if mode:
        payload["mode"] = mode
    encoded = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{encoded}.{_sign(encoded, secret)}"


def verify_state(
    state: str,
    secret: str,
    *,
    max_age: timedelta = DEFAULTS.state_max_age,
    now_ms: int | None = None,
) -> StatePayload:
    """Check the signature and age of *state* and return its payload.

    Raises
    ------
    StateInvalidError
        On a malformed token, a signature mismatch, missing fields or an
        issue time older than *max_age*.
    """
    encoded, _, provided = state.partition(".")
    if not encoded or not provided:
        raise StateInvalidError("Invalid state format.")

    expected = _sign(encoded, secret)
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise StateInvalidError("Invalid state signature.")

    try:
        data = json.loads(_b64decode(encoded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise StateInvalidError("Invalid state payload.") from exc
    if not isinstance(data, dict):
        raise StateInvalidError("Invalid state payload.")

    uid = data.get("uid")
    ts = data.get("ts")
    if not isinstance(uid, str) or not uid:
        raise StateInvalidError("Invalid state payload.")
    if isinstance(ts, bool) or not isinstance(ts, int) or not ts:
        raise StateInvalidError("Invalid state payload.")

    current = now_ms if now_ms is not None else _now_ms()
    if current - ts > max_age.total_seconds() * 1000:
        raise StateInvalidError("Expired state.")

    def _text(key: str) -> str | None:
        value = data.get(key)
        return value if isinstance(value, str) and value else None

    return StatePayload(
        uid=uid,
        ts=ts,
        nonce=str(data.get("nonce") or ""),
        action=_text("action"),
        friend_uid=_text("friendUid"),
        mode=_text("mode"),
    )
