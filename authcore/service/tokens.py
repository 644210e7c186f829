from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from authcore.clock import Clock, SystemClock
from authcore.config import Settings, parse_ttl
from authcore.logging import get_logger
from authcore.service.errors import ConfigurationError, InvalidToken

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = (ACCESS, REFRESH)

DEFAULT_EXPIRING_SOON_SECONDS = 300

__all__ = [
    "ACCESS",
    "REFRESH",
    "TokenCodec",
    "parse_ttl",
]


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _split(token: str) -> Optional[tuple[str, str, str]]:
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        return None
    return parts[0], parts[1], parts[2]


class TokenCodec:
    """Signs and verifies HS256 access and refresh tokens.

    Access and refresh tokens are signed with different secrets so a refresh
    token can never pass as an access token even if the ``type`` claim were
    forged. Verification is a pure check and never touches storage.
    """

    def __init__(
        self,
        *,
        access_secret: Optional[str],
        refresh_secret: Optional[str],
        access_ttl_seconds: int = parse_ttl("1h"),
        refresh_ttl_seconds: int = parse_ttl("7d"),
        issuer: str = "authcore",
        audience: str = "authcore-clients",
        clock: Optional[Clock] = None,
        expiring_soon_seconds: int = DEFAULT_EXPIRING_SOON_SECONDS,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ConfigurationError(
                "access and refresh token secrets are required",
                detail={"missing": [
                    name
                    for name, value in (
                        ("ACCESS_TOKEN_SECRET", access_secret),
                        ("REFRESH_TOKEN_SECRET", refresh_secret),
                    )
                    if not value
                ]},
            )
        if hmac.compare_digest(access_secret.encode(), refresh_secret.encode()):
            raise ConfigurationError("access and refresh token secrets must differ")
        if access_ttl_seconds <= 0 or refresh_ttl_seconds <= 0:
            raise ConfigurationError("token TTLs must be positive")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self.ttls = {ACCESS: access_ttl_seconds, REFRESH: refresh_ttl_seconds}
        self.issuer = issuer
        self.audience = audience
        self.clock = clock or SystemClock()
        self.expiring_soon_seconds = expiring_soon_seconds

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Optional[Clock] = None) -> "TokenCodec":
        return cls(
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
            expiring_soon_seconds=settings.expiring_soon_threshold_seconds,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return self.ttls[ACCESS]

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.ttls[REFRESH]

    def _sign(self, kind: str, signing_input: str) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode(self, kind: str, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(kind, signing_input)}"

    def _claims(self, kind: str, user_id: str, token_id: str) -> dict[str, Any]:
        now = self.clock.now()
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "type": kind,
            "jti": token_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.ttls[kind])).timestamp()),
        }

    def issue_access(self, user_id: str, email: str) -> str:
        payload = self._claims(ACCESS, user_id, str(uuid.uuid4()))
        payload["email"] = email
        return self._encode(ACCESS, payload)

    def issue_refresh(self, user_id: str) -> tuple[str, str]:
        """Return ``(token, token_id)``; the id is fresh per call."""
        token_id = str(uuid.uuid4())
        return self._encode(REFRESH, self._claims(REFRESH, user_id, token_id)), token_id

    def expires_at(self, claims: dict[str, Any]) -> datetime:
        return datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)

    def verify(self, token: str, expected_kind: str) -> dict[str, Any]:
        """Validate signature, algorithm, issuer, audience, expiry and kind.

        Raises :class:`InvalidToken`; the reason is logged, never returned.
        """
        if expected_kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {expected_kind}")
        parts = _split(token)
        if parts is None:
            self._reject("malformed", expected_kind)
        header_b64, payload_b64, sig_b64 = parts
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            self._reject("header_decode_failed", expected_kind)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            alg = header.get("alg") if isinstance(header, dict) else None
            self._reject("invalid_algorithm", expected_kind, alg=alg)
        expected_sig = self._sign(expected_kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            self._reject("bad_signature", expected_kind)
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            self._reject("payload_decode_failed", expected_kind)
        if not isinstance(payload, dict):
            self._reject("payload_decode_failed", expected_kind)
        if payload.get("iss") != self.issuer:
            self._reject("issuer_mismatch", expected_kind)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            self._reject("audience_mismatch", expected_kind)
        if payload.get("type") != expected_kind:
            self._reject("kind_mismatch", expected_kind, actual=payload.get("type"))
        if not payload.get("sub"):
            self._reject("missing_subject", expected_kind)
        try:
            exp_ts = int(payload["exp"])
        except (KeyError, TypeError, ValueError, OverflowError):
            self._reject("missing_expiry", expected_kind)
        # Inclusive: a token is expired at its exp second
        if self.clock.now().timestamp() >= exp_ts:
            self._reject("expired", expected_kind)
        return payload

    @staticmethod
    def _reject(reason: str, kind: str, **fields: Any) -> None:
        logger.info("token_rejected", reason=reason, kind=kind, **fields)
        raise InvalidToken()

    def decode_unsafe(self, token: str) -> Optional[dict[str, Any]]:
        """Decode the payload without checking the signature. Hints only."""
        parts = _split(token)
        if parts is None:
            return None
        try:
            payload = json.loads(_decode_segment(parts[1]))
        except (ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def remaining_seconds(self, token: str) -> int:
        payload = self.decode_unsafe(token)
        if not payload:
            return 0
        try:
            exp_ts = int(payload["exp"])
        except (KeyError, TypeError, ValueError, OverflowError):
            return 0
        return max(0, exp_ts - int(self.clock.now().timestamp()))

    def is_expiring_soon(self, token: str, threshold_seconds: Optional[int] = None) -> bool:
        threshold = (
            self.expiring_soon_seconds if threshold_seconds is None else threshold_seconds
        )
        remaining = self.remaining_seconds(token)
        return 0 < remaining <= threshold
