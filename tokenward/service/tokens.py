from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from tokenward.logging import get_logger
from tokenward.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_HEADER = {"alg": "HS256", "typ": "JWT"}
_RESERVED_CLAIMS = frozenset({"sub", "iat", "exp", "type"})


class TokenCodecError(Exception):
    """Base for every reason ``TokenCodec.parse`` rejects a token."""


class TokenMalformedError(TokenCodecError):
    pass


class TokenSignatureError(TokenCodecError):
    pass


class TokenExpiredError(TokenCodecError):
    pass


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    email: Optional[str] = None
    roles: tuple[str, ...] = ()
    token_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _json_segment(data: dict[str, Any]) -> str:
    return _encode_segment(json.dumps(data, separators=(",", ":")).encode())


class TokenCodec:
    """HS256 JWT issuance and validation.

    The signing key is injected at construction and never looked up globally,
    so each test can use its own disposable key. Instances hold no mutable
    state and are safe to share across threads. Token type is carried in the
    ``type`` claim but not enforced here; callers decide which types they accept.
    """

    def __init__(
        self, secret: str, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._key = secret.encode()
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self,
        subject: str,
        token_type: str,
        expires_at: datetime,
        claims: Optional[dict[str, Any]] = None,
    ) -> str:
        """Sign a token for ``subject`` that expires at ``expires_at``.

        ``claims`` may add ``email``, ``roles``, ``jti`` or anything else
        JSON-serializable, but cannot override sub/iat/exp/type.
        """
        extra = dict(claims or {})
        clash = _RESERVED_CLAIMS.intersection(extra)
        if clash:
            raise ValueError(f"reserved claims cannot be overridden: {sorted(clash)}")
        payload: dict[str, Any] = {
            "sub": subject,
            "iat": int(self._clock().timestamp()),
            "exp": int(expires_at.timestamp()),
            "type": token_type,
        }
        if "roles" in extra:
            extra["roles"] = sorted(extra["roles"])
        payload.update(extra)
        signing_input = f"{_json_segment(_HEADER)}.{_json_segment(payload)}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def parse(self, token: str) -> TokenClaims:
        """Verify signature and expiry and return the typed claims.

        Raises:
            TokenMalformedError: the token cannot be decoded
            TokenSignatureError: wrong algorithm or signature mismatch
            TokenExpiredError: the current time is at or past ``exp``
        """
        if not isinstance(token, str):
            raise TokenMalformedError("token must be a string")
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenMalformedError("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError) as exc:
            raise TokenMalformedError("undecodable header") from exc
        if not isinstance(header, dict):
            raise TokenMalformedError("header is not an object")
        # Only HS256 is accepted to rule out algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=str(header.get("alg")))
            raise TokenSignatureError("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenSignatureError("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError) as exc:
            raise TokenMalformedError("undecodable payload") from exc
        if not isinstance(payload, dict):
            raise TokenMalformedError("payload is not an object")

        subject = payload.get("sub")
        token_type = payload.get("type")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformedError("missing or invalid time claims") from exc
        if not isinstance(subject, str) or not isinstance(token_type, str):
            raise TokenMalformedError("missing subject or type claim")
        if self._clock().timestamp() >= exp_ts:
            raise TokenExpiredError("token expired")

        roles = payload.get("roles") or []
        if not isinstance(roles, list):
            raise TokenMalformedError("roles claim must be a list")
        return TokenClaims(
            subject=subject,
            token_type=token_type,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            email=payload.get("email"),
            roles=tuple(str(role) for role in roles),
            token_id=payload.get("jti"),
            raw=payload,
        )
