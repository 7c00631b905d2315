import hashlib
import hmac
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

ALGORITHM = "HS256"
ACCESS_AUDIENCE = "web"
REFRESH_AUDIENCE = "refresh"

# Claims copied from the caller into signed tokens
_ACCESS_CLAIMS = ("id", "email", "role")
_REFRESH_CLAIMS = ("id",)


class TokenError(Exception):
    """Base class for token verification failures."""


class TokenExpiredError(TokenError):
    pass


class TokenInvalidError(TokenError):
    pass


class TokenConfigurationError(RuntimeError):
    """A signing secret is missing; the service cannot issue tokens."""


def random_token(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def hash_token(value: str) -> str:
    # SHA-256 is fine for hashing random high-entropy tokens
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def secure_compare(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class TokenService:
    """Signs and verifies access and refresh JWTs.

    Access and refresh tokens use separate secrets *and* audiences, so a
    leaked access token cannot be replayed as a refresh token and vice versa.
    """

    def __init__(
        self,
        access_secret: Optional[str],
        refresh_secret: Optional[str],
        *,
        issuer: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
    ):
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_config(cls, config) -> "TokenService":
        return cls(
            config.get("JWT_SECRET"),
            config.get("JWT_REFRESH_SECRET"),
            issuer=config.get("JWT_ISSUER", "BackOffice"),
            access_ttl=timedelta(minutes=config.get("JWT_EXPIRE_MINUTES", 15)),
            refresh_ttl=timedelta(days=config.get("JWT_REFRESH_EXPIRE_DAYS", 7)),
        )

    def _secret_for(self, audience: str) -> str:
        if audience == ACCESS_AUDIENCE:
            secret = self.access_secret
        elif audience == REFRESH_AUDIENCE:
            secret = self.refresh_secret
        else:
            raise ValueError(f"Unknown token audience: {audience}")
        if not secret:
            raise TokenConfigurationError(f"Signing secret for audience '{audience}' is not configured")
        return secret

    def _sign(self, claims: dict, allowed: tuple, audience: str, ttl: timedelta) -> str:
        secret = self._secret_for(audience)
        now = datetime.now(timezone.utc)
        payload = {k: claims[k] for k in allowed if k in claims}
        if "id" in payload:
            payload["sub"] = str(payload["id"])
        payload.update({
            "iss": self.issuer,
            "aud": audience,
            "iat": now,
            "exp": now + ttl,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(payload, secret, algorithm=ALGORITHM)

    def issue_access(self, claims: dict) -> str:
        return self._sign(claims, _ACCESS_CLAIMS, ACCESS_AUDIENCE, self.access_ttl)

    def issue_refresh(self, claims: dict) -> str:
        return self._sign(claims, _REFRESH_CLAIMS, REFRESH_AUDIENCE, self.refresh_ttl)

    def verify(self, token: str, audience: str = ACCESS_AUDIENCE) -> dict:
        """Return the claims of a valid token.

        Raises TokenExpiredError for a well-formed but expired token and
        TokenInvalidError for anything else (bad signature, wrong audience or
        issuer, garbage input).
        """
        secret = self._secret_for(audience)
        if not token or not isinstance(token, str):
            raise TokenInvalidError("Token missing")
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[ALGORITHM],
                audience=audience,
                issuer=self.issuer,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError("Token expired") from exc
        except JWTError as exc:
            raise TokenInvalidError("Token invalid") from exc

