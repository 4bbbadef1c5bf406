from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.service.errors import AuthError, ConflictError, ValidationError
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass(frozen=True)
class AuthContext:
    """Verified owner identity carried by a request or a realtime connection."""

    user_id: str
    token_id: Optional[str] = None


class AuthService:
    """Password credentials and HS256 access tokens."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def signup(self, email: str, password: str) -> tuple[User, dict[str, str]]:
        email = (email or "").strip()
        if "@" not in email:
            raise ValidationError("invalid email address", detail={"field": "email"})
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        pwd_hash, algo = self._hash_password(password)
        try:
            # User row and credential are written together or not at all
            user = self.store.create_user(email, password_hash=pwd_hash, password_algo=algo)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        self.logger.info("user_signed_up", user_id=user.id)
        return user, self.issue_token(user)

    async def login(self, email: str, password: str) -> tuple[User, dict[str, str]]:
        user = self.store.get_user_by_email((email or "").strip())
        if not user or not self.verify_password(user.id, password):
            raise AuthError("invalid credentials")
        self.logger.info("user_logged_in", user_id=user.id)
        return user, self.issue_token(user)

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve an ``Authorization`` header value to an identity, or None."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        return self.authenticate_token(token)

    def authenticate_token(self, token: str) -> Optional[AuthContext]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        user_id = payload.get("sub")
        if not user_id or not self.store.get_user(user_id):
            return None
        return AuthContext(user_id=user_id, token_id=payload.get("jti"))

    def issue_token(self, user: User) -> dict[str, str]:
        now = self._now()
        exp = int((now + timedelta(minutes=self.settings.access_token_ttl_minutes)).timestamp())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "exp": exp,
        }
        return {
            "access_token": self._encode_jwt(payload),
            "token_type": "bearer",
            "expires_at": datetime.fromtimestamp(exp, tz=timezone.utc).isoformat(),
        }

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 so "none" or RS256 headers never verify
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None
