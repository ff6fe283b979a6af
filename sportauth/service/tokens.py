from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sportauth.logging import get_logger
from sportauth.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
MFA_CHALLENGE = "mfa_challenge"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_in": self.expires_in,
        }


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """HS256 access/refresh tokens over two distinct secrets.

    Access tokens are signed with ``access_secret`` and refresh tokens with
    ``refresh_secret`` so one can never be replayed as the other. Every token
    carries a random ``jti``, so two tokens minted in the same second for the
    same subject still differ.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        challenge_ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token secrets must be non-empty")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {
            ACCESS: access_secret.encode(),
            REFRESH: refresh_secret.encode(),
            MFA_CHALLENGE: access_secret.encode(),
        }
        self._ttls = {
            ACCESS: access_ttl_seconds,
            REFRESH: refresh_ttl_seconds,
            MFA_CHALLENGE: challenge_ttl_seconds,
        }
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    @property
    def access_ttl_seconds(self) -> int:
        return self._ttls[ACCESS]

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._ttls[REFRESH]

    def _sign(self, signing_input: str, token_type: str) -> str:
        return _encode_segment(
            hmac.new(
                self._secrets[token_type], signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode(self, subject_id: str, subject_email: str, token_type: str) -> str:
        now = int(self._clock())
        payload = {
            "sub": subject_id,
            "email": subject_email,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + self._ttls[token_type],
            "jti": str(uuid.uuid4()),
            "typ": token_type,
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _verify(self, token: str, token_type: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalidError("Invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("Invalid token") from None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("Invalid token") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", token_type=token_type)
            raise TokenInvalidError("Invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError("Invalid token")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_payload_decode_failed", token_type=token_type)
            raise TokenInvalidError("Invalid token") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("Invalid token")
        if payload.get("typ") != token_type:
            raise TokenInvalidError("Invalid token")
        if payload.get("iss") != self.issuer:
            raise TokenInvalidError("Invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalidError("Invalid token")
        if not payload.get("sub"):
            raise TokenInvalidError("Invalid token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("Invalid token") from None
        if exp_ts <= self._clock():
            raise TokenExpiredError("Token expired")
        return payload

    def issue_pair(self, subject_id: str, subject_email: str) -> TokenPair:
        return TokenPair(
            access_token=self._encode(subject_id, subject_email, ACCESS),
            refresh_token=self._encode(subject_id, subject_email, REFRESH),
            expires_in=self._ttls[ACCESS],
        )

    def verify_access(self, token: str) -> dict[str, Any]:
        return self._verify(token, ACCESS)

    def verify_refresh(self, token: str) -> dict[str, Any]:
        return self._verify(token, REFRESH)

    def issue_mfa_challenge(self, subject_id: str, subject_email: str) -> str:
        """Short-lived token binding a pending MFA login to one account."""
        return self._encode(subject_id, subject_email, MFA_CHALLENGE)

    def verify_mfa_challenge(self, token: str) -> dict[str, Any]:
        return self._verify(token, MFA_CHALLENGE)

    @staticmethod
    def decode_unverified(token: Optional[str]) -> Optional[dict[str, Any]]:
        """Read claims without checking anything. Never use for authorization."""
        if not token or not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        try:
            payload = json.loads(_decode_segment(parts[1]))
        except (ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None
