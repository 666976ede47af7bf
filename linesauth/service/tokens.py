from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from linesauth.config import Settings
from linesauth.logging import get_logger
from linesauth.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def to_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "access_expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


@dataclass
class TokenClaims:
    user_id: str
    token_type: str
    jti: str
    issued_at: int
    expires_at: int
    version: Optional[int] = None

    @property
    def expires_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


class TokenIssuer:
    """Mints and verifies HS256 access/refresh tokens.

    The two token classes are signed with independent secrets, so a refresh
    token can never pass as an access token and the other way round. Payloads
    carry the subject id and never the role; callers re-read the user on every
    verification.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock
        self._secrets = {
            ACCESS: settings.access_token_secret.encode(),
            REFRESH: settings.refresh_token_secret.encode(),
        }

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, token_type: str, signing_input: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode(self, token_type: str, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(token_type, signing_input)}"

    def issue(self, user_id: str, *, token_version: int = 0) -> TokenPair:
        now = int(self._clock())
        access_exp = now + self.settings.access_token_ttl_minutes * 60
        refresh_exp = now + self.settings.refresh_token_ttl_minutes * 60
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "iat": now,
        }
        access_token = self._encode(
            ACCESS,
            {**base, "typ": ACCESS, "jti": uuid.uuid4().hex, "exp": access_exp, "ver": token_version},
        )
        refresh_token = self._encode(
            REFRESH,
            {**base, "typ": REFRESH, "jti": uuid.uuid4().hex, "exp": refresh_exp},
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=datetime.fromtimestamp(access_exp, tz=timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(refresh_exp, tz=timezone.utc),
        )

    def verify_access(self, token: str) -> TokenClaims:
        return self._decode(token, ACCESS)

    def verify_refresh(self, token: str) -> TokenClaims:
        return self._decode(token, REFRESH)

    def _decode(self, token: str, expected_type: str) -> TokenClaims:
        if not token or not isinstance(token, str) or not token.isascii():
            raise InvalidTokenError("invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("invalid token")

        # Reject anything but HS256 to rule out algorithm confusion.
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("invalid token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("invalid token")

        expected_sig = self._sign(expected_type, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError("invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("invalid token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("invalid token")

        if payload.get("typ") != expected_type:
            raise InvalidTokenError("invalid token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("invalid token")
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise InvalidTokenError("invalid token")
        try:
            exp_ts = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("invalid token")
        if self._clock() > exp_ts + self.settings.jwt_leeway_seconds:
            raise TokenExpiredError("token expired")

        version = payload.get("ver")
        return TokenClaims(
            user_id=sub,
            token_type=expected_type,
            jti=str(payload.get("jti", "")),
            issued_at=int(payload.get("iat", 0) or 0),
            expires_at=exp_ts,
            version=int(version) if isinstance(version, int) else None,
        )
