from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Optional

from kbsync.config import Settings
from kbsync.logging import get_logger
from kbsync.service.errors import AuthenticationError
from kbsync.service.fs import is_safe_owner_id

logger = get_logger(__name__)


class SessionResolver:
    """Resolves request credentials to an owner id.

    Tokens are HS256 JWTs whose ``sub`` claim is the owner id; issuer,
    audience and expiry are checked against ``Settings``.
    """

    def __init__(self, settings: Settings, *, clock_skew_leeway: timedelta = timedelta(seconds=30)) -> None:
        self.settings = settings
        self._clock_skew_leeway = clock_skew_leeway

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def issue_token(self, owner_id: str, *, ttl: timedelta = timedelta(minutes=30)) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": owner_id,
            "iat": int(time.time()),
            "exp": int(time.time() + ttl.total_seconds()),
        }
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode_token(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 before checking the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not sig_b64.isascii():
            return None
        if not hmac.compare_digest(self._sign(signing_input), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def resolve_owner(
        self, authorization: Optional[str] = None, cookie_token: Optional[str] = None
    ) -> str:
        token = None
        if authorization:
            scheme, _, value = authorization.partition(" ")
            if scheme.lower() == "bearer" and value.strip():
                token = value.strip()
        if token is None and cookie_token:
            token = cookie_token
        if not token:
            raise AuthenticationError("missing credentials")
        payload = self.decode_token(token)
        if payload is None:
            raise AuthenticationError("invalid or expired token")
        owner_id = payload.get("sub")
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise AuthenticationError("token has no subject")
        if not is_safe_owner_id(owner_id):
            logger.warning("jwt_subject_rejected", reason="unsafe_owner_id")
            raise AuthenticationError("token subject is not a valid owner id")
        return owner_id
