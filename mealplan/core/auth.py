"""
Clerk identity resolution.

Handles:
- Session JWT verification (HS256 with CLERK_SECRET_KEY in dev/test,
  RS256 against the Clerk JWKS in production)
- Identity extraction (user id from 'sub', email from the session claims)
- Optional X-User-Id / X-User-Email header identity for tests and local dev
"""
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm

from mealplan.core.config import Settings
from mealplan.core.errors import AuthError
from mealplan.core.logging import log_event

JWKS_TTL_SECONDS = 86400
JWKS_TIMEOUT_SECONDS = 5


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None


def _default_fetch_jwks(jwks_url: str) -> Dict[str, Any]:
    response = httpx.get(jwks_url, timeout=JWKS_TIMEOUT_SECONDS)
    response.raise_for_status()
    return response.json()


def _email_from_claims(claims: Dict[str, Any]) -> Optional[str]:
    for key in ("email", "email_address", "primary_email_address"):
        value = claims.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class IdentityResolver:
    """Resolve the calling user's identity from request headers."""

    def __init__(self, settings: Settings, fetch_jwks: Callable[[str], Dict[str, Any]] = _default_fetch_jwks):
        self.settings = settings
        self._fetch_jwks = fetch_jwks
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_fetched_at = 0.0

    def _jwks_url(self) -> Optional[str]:
        if self.settings.CLERK_JWKS_URL:
            return self.settings.CLERK_JWKS_URL
        if self.settings.CLERK_ISSUER:
            return f"{self.settings.CLERK_ISSUER.rstrip('/')}/.well-known/jwks.json"
        return None

    def _get_jwks(self, jwks_url: str) -> Dict[str, Any]:
        if self._jwks and (time.time() - self._jwks_fetched_at) < JWKS_TTL_SECONDS:
            return self._jwks
        self._jwks = self._fetch_jwks(jwks_url)
        self._jwks_fetched_at = time.time()
        return self._jwks

    def verify_token(self, token: str) -> Dict[str, Any]:
        """
        Verify a Clerk session JWT and return its claims.

        Raises jwt.PyJWTError on invalid token.
        """
        secret = self.settings.CLERK_SECRET_KEY
        if secret and not self._jwks_url():
            return jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
            )

        jwks_url = self._jwks_url()
        if not jwks_url:
            raise jwt.PyJWTError("CLERK_ISSUER or CLERK_JWKS_URL must be configured for RS256 verification")

        kid = jwt.get_unverified_header(token).get("kid")
        if not kid:
            raise jwt.PyJWTError("Token missing 'kid' in header")

        try:
            jwks = self._get_jwks(jwks_url)
        except httpx.HTTPError as e:
            raise jwt.PyJWTError(f"Failed to fetch JWKS: {e}")

        matching_key = next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)
        if not matching_key:
            raise jwt.PyJWTError(f"Key ID '{kid}' not found in JWKS")

        public_key = RSAAlgorithm.from_jwk(json.dumps(matching_key))
        return jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            issuer=self.settings.CLERK_ISSUER,
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )

    def resolve(self, headers) -> Optional[Identity]:
        """
        Identity from request headers, or None if the request is anonymous.

        Priority:
        1. Clerk JWT from Authorization header
        2. X-User-Id / X-User-Email headers (only with AUTH_HEADER_FALLBACK)

        Raises:
            AuthError: a bearer token was sent but failed verification
        """
        auth_header = headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            try:
                claims = self.verify_token(auth_header[7:])
            except jwt.ExpiredSignatureError:
                raise AuthError("Token expired", code="token_expired")
            except jwt.PyJWTError as e:
                log_event("info", "auth.token_invalid", extra={"reason": str(e)})
                raise AuthError("Invalid token", code="token_invalid")
            user_id = claims.get("sub")
            if not user_id:
                raise AuthError("Token has no subject", code="token_invalid")
            return Identity(user_id=user_id, email=_email_from_claims(claims))

        if self.settings.AUTH_HEADER_FALLBACK:
            user_id = headers.get("x-user-id")
            if user_id:
                return Identity(user_id=user_id, email=headers.get("x-user-email") or None)

        return None
