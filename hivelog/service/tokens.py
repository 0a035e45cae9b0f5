"""Signed session tokens (HS256 JWT) for access and refresh flows."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Union

from hivelog.logging import get_logger, token_fingerprint
from hivelog.service.errors import InvalidTokenError, ValidationError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def parse_duration(value: Union[str, int]) -> int:
    """Convert a duration such as ``"15m"``, ``"1h"`` or ``"7d"`` into seconds.

    A bare integer (or digit string) is taken as seconds.
    """
    if isinstance(value, bool):
        raise ValidationError(f"invalid duration: {value!r}")
    if isinstance(value, int):
        seconds = value
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ValidationError(f"invalid duration: {value!r}")
        amount, unit = match.groups()
        seconds = int(amount) * _UNIT_SECONDS[unit.lower()]
    if seconds <= 0:
        raise ValidationError(f"duration must be positive: {value!r}")
    return seconds


@dataclass(frozen=True)
class PrincipalClaims:
    """Identity fields carried inside a session token."""

    principal_id: str
    display_name: str
    roles: Sequence[str] = field(default_factory=tuple)


@dataclass(frozen=True)
class TokenClaims:
    """Decoded, verified token payload.

    ``roles`` is left exactly as it was encoded (list or comma-joined
    string); normalization happens when a Principal is built.
    """

    principal_id: str
    display_name: str
    roles: Any
    issued_at: int
    expires_at: int
    token_id: Optional[str] = None
    token_type: str = ACCESS

    def as_principal_claims(self) -> PrincipalClaims:
        roles = self.roles if isinstance(self.roles, (list, tuple)) else (self.roles,)
        return PrincipalClaims(self.principal_id, self.display_name, tuple(roles))


class TokenService:
    """Issues and verifies HS256 tokens; secrets are supplied per call."""

    ALGORITHM = "HS256"

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], float]] = None,
        leeway_seconds: int = 0,
    ) -> None:
        self._clock = clock or time.time
        self.leeway_seconds = leeway_seconds

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(
        self,
        claims: PrincipalClaims,
        ttl: Union[str, int],
        secret: str,
        *,
        token_type: str = ACCESS,
    ) -> str:
        if not secret:
            raise ValueError("a signing secret is required")
        now = int(self._clock())
        roles = claims.roles
        payload = {
            "sub": claims.principal_id,
            "name": claims.display_name,
            "roles": list(roles) if isinstance(roles, (list, tuple)) else roles,
            "iat": now,
            "exp": now + parse_duration(ttl),
            "jti": uuid.uuid4().hex,
            "typ": token_type,
        }
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def verify(
        self, token: str, secret: str, *, token_type: Optional[str] = None
    ) -> TokenClaims:
        """Return the verified claims or raise :class:`InvalidTokenError`.

        Every failure raises the same error; the reason only goes to the log.
        """
        reason = None
        payload: Optional[dict] = None
        try:
            payload = self._verified_payload(token, secret)
        except _Rejected as exc:
            reason = exc.reason
        if payload is not None:
            reason = self._claims_problem(payload, token_type)
        if reason:
            logger.info(
                "token_rejected",
                reason=reason,
                fingerprint=token_fingerprint(token) if isinstance(token, str) else None,
            )
            raise InvalidTokenError()
        return TokenClaims(
            principal_id=str(payload["sub"]),
            display_name=str(payload.get("name") or ""),
            roles=payload.get("roles", []),
            issued_at=int(payload.get("iat") or 0),
            expires_at=int(payload["exp"]),
            token_id=payload.get("jti"),
            token_type=payload.get("typ", ACCESS),
        )

    def _verified_payload(self, token: str, secret: str) -> dict:
        if not isinstance(token, str) or not secret:
            raise _Rejected("malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise _Rejected("malformed") from None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise _Rejected("malformed_header") from None
        if not isinstance(header, dict) or header.get("alg") != self.ALGORITHM:
            raise _Rejected("algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise _Rejected("signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise _Rejected("malformed_payload") from None
        if not isinstance(payload, dict):
            raise _Rejected("malformed_payload")
        return payload

    def _claims_problem(self, payload: dict, token_type: Optional[str]) -> Optional[str]:
        if not payload.get("sub"):
            return "missing_subject"
        exp = _as_timestamp(payload.get("exp"))
        if exp is None:
            return "missing_expiry"
        if exp <= self._clock() - self.leeway_seconds:
            return "expired"
        if token_type and payload.get("typ", ACCESS) != token_type:
            return "token_type"
        return None

    def remaining_seconds(self, token: str) -> Optional[int]:
        """Seconds until the token's ``exp``, read without checking the signature.

        Only for sizing revocation TTLs; never for an authorization decision.
        """
        try:
            payload_b64 = token.split(".")[1]
            payload = json.loads(self._decode_segment(payload_b64))
        except (AttributeError, IndexError, ValueError, UnicodeDecodeError):
            return None
        if not isinstance(payload, dict):
            return None
        exp = _as_timestamp(payload.get("exp"))
        if exp is None:
            return None
        # Round up: a token with a fraction of a second left still verifies
        return max(0, math.ceil(exp - self._clock()))


class _Rejected(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def _as_timestamp(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
