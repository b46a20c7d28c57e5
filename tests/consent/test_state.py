"""Tests for signed OAuth state tokens."""

from __future__ import annotations

import base64
import json
from datetime import timedelta

import pytest

from ora.consent.state import FRIEND_SHARE_ACTION, _sign, create_state, verify_state
from ora.errors import StateInvalidError

pytestmark = pytest.mark.unit

SECRET = "state-secret"
ISSUED = 1_773_134_100_000


def _decode_payload(state: str) -> dict:
    encoded = state.split(".")[0]
    return json.loads(base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)))


class TestCreateState:
    def test_payload_fields(self):
        state = create_state("u1", SECRET, now_ms=ISSUED)
        payload = _decode_payload(state)

        assert payload["uid"] == "u1"
        assert payload["ts"] == ISSUED
        assert len(payload["nonce"]) == 24
        assert "action" not in payload
        assert "=" not in state

    def test_nonce_makes_tokens_unique(self):
        first = create_state("u1", SECRET, now_ms=ISSUED)

        assert first != create_state("u1", SECRET, now_ms=ISSUED)


class TestVerifyState:
    def test_round_trip_with_friend_share(self):
        state = create_state(
            "u1",
            SECRET,
            action=FRIEND_SHARE_ACTION,
            friend_uid="u2",
            mode="redirect",
            now_ms=ISSUED,
        )

        payload = verify_state(state, SECRET, now_ms=ISSUED + 1000)

        assert payload.uid == "u1"
        assert payload.friend_uid == "u2"
        assert payload.mode == "redirect"
        assert payload.is_friend_share

    def test_plain_consent_is_not_friend_share(self):
        payload = verify_state(create_state("u1", SECRET, now_ms=ISSUED), SECRET, now_ms=ISSUED)

        assert not payload.is_friend_share
        assert payload.mode is None

    def test_wrong_secret(self):
        state = create_state("u1", SECRET, now_ms=ISSUED)

        with pytest.raises(StateInvalidError, match="signature"):
            verify_state(state, "other-secret", now_ms=ISSUED)

    def test_tampered_payload(self):
        state = create_state("u1", SECRET, now_ms=ISSUED)
        _, signature = state.split(".")
        forged = base64.urlsafe_b64encode(
            json.dumps({"uid": "attacker", "ts": ISSUED, "nonce": "x"}).encode()
        ).rstrip(b"=").decode()

        with pytest.raises(StateInvalidError, match="signature"):
            verify_state(f"{forged}.{signature}", SECRET, now_ms=ISSUED)

    @pytest.mark.parametrize("state", ["", "no-dot", ".sig", "payload."])
    def test_malformed(self, state):
        with pytest.raises(StateInvalidError, match="format"):
            verify_state(state, SECRET, now_ms=ISSUED)

    def test_expired(self):
        state = create_state("u1", SECRET, now_ms=ISSUED)

        verify_state(state, SECRET, now_ms=ISSUED + 600_000)
        with pytest.raises(StateInvalidError, match="Expired"):
            verify_state(state, SECRET, now_ms=ISSUED + 600_001)

    def test_custom_max_age(self):
        state = create_state("u1", SECRET, now_ms=ISSUED)

        with pytest.raises(StateInvalidError):
            verify_state(state, SECRET, max_age=timedelta(seconds=1), now_ms=ISSUED + 2000)

    def test_signed_payload_missing_uid(self):
        encoded = base64.urlsafe_b64encode(json.dumps({"ts": ISSUED}).encode()).rstrip(b"=")
        encoded_text = encoded.decode()

        with pytest.raises(StateInvalidError, match="payload"):
            verify_state(f"{encoded_text}.{_sign(encoded_text, SECRET)}", SECRET, now_ms=ISSUED)
