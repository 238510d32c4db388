from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from identitykit.config import AuthConfig
from identitykit.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
PASSWORD_RESET = "password-reset"
TOKEN_KINDS = frozenset({ACCESS, REFRESH, PASSWORD_RESET})

Clock = Callable[[], datetime]


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


class InvalidToken(Exception):
    """Token is malformed, forged, or was issued for another purpose."""


class ExpiredToken(InvalidToken):
    """Token is authentic but past its ``exp`` claim."""


class TokenCodec:
    """HS256 JWT issue and verification for access, refresh and reset tokens."""

    def __init__(self, config: AuthConfig, *, clock: Optional[Clock] = None) -> None:
        self.config = config
        self._clock = clock or utc_clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.config.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(
        self,
        account_id: str,
        kind: str,
        ttl_seconds: int,
        roles: Optional[Iterable[str]] = None,
    ) -> str:
        now = int(self._clock().timestamp())
        payload: dict[str, Any] = {
            "iss": self.config.jwt_issuer,
            "aud": self.config.jwt_audience,
            "sub": str(account_id),
            "iat": now,
            "exp": now + int(ttl_seconds),
            "jti": str(uuid.uuid4()),
            "type": kind,
        }
        if roles is not None:
            payload["groups"] = sorted(roles)
        return self._encode_jwt(payload)

    def issue_access(self, account_id: str, roles: Iterable[str], ttl_seconds: int) -> str:
        return self._issue(account_id, ACCESS, ttl_seconds, roles)

    def issue_refresh(self, account_id: str, roles: Iterable[str], ttl_seconds: int) -> str:
        return self._issue(account_id, REFRESH, ttl_seconds, roles)

    def issue_reset(self, account_id: str, ttl_seconds: int) -> str:
        return self._issue(account_id, PASSWORD_RESET, ttl_seconds)

    def decode(self, token: str) -> dict[str, Any]:
        """Return the verified claims of ``token``.

        Signature, algorithm, issuer, audience and expiry are all checked;
        the ``type`` claim is not.
        """
        claims = self._verify(token)
        self._check_expiry(claims)
        return claims

    def _verify(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidToken("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidToken("malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken("malformed token header") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidToken("bad signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken("malformed token payload") from None
        if not isinstance(payload, dict):
            raise InvalidToken("malformed token payload")

        if payload.get("iss") != self.config.jwt_issuer:
            raise InvalidToken("wrong issuer")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.config.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.config.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidToken("wrong audience")
        return payload

    def _check_expiry(self, claims: dict[str, Any]) -> None:
        try:
            exp_ts = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken("missing exp claim") from None
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self.config.clock_skew_leeway_seconds:
            raise ExpiredToken("token expired")

    def parse_subject(self, token: str, kind: str) -> str:
        """Verify ``token`` as a ``kind`` token and return its subject.

        Raises :class:`ExpiredToken` only for a token that is otherwise valid
        for ``kind``; every other failure is :class:`InvalidToken`.
        """
        if kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {kind}")
        claims = self._verify(token)
        if claims.get("type") != kind:
            raise InvalidToken("wrong token type")
        subject = claims.get("sub")
        if not subject or not isinstance(subject, str):
            raise InvalidToken("missing subject")
        self._check_expiry(claims)
        return subject
