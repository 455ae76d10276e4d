"""
Identity resolution - credential token -> verified (user_id, role).
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from jose import ExpiredSignatureError, JWTError, jwt
from loguru import logger

from stores.base import AccountStore, StoreError
from stores.models import Role
from .errors import ConversationUnavailable, InvalidCredential, UnknownSubject


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: Role


def create_access_token(
    user_id: str,
    secret_key: str,
    algorithm: str = "HS256",
    expires_minutes: int = 60 * 24 * 7,
    extra_claims: Optional[Dict[str, Any]] = None,
) -> str:
    """Issue a token in the format the marketplace API hands out."""
    to_encode: Dict[str, Any] = dict(extra_claims or {})
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"userId": user_id, "exp": expire})
    return jwt.encode(to_encode, secret_key, algorithm=algorithm)


def extract_handshake_credential(
    headers: Optional[Mapping[str, str]] = None,
    query_params: Optional[Mapping[str, str]] = None,
    auth: Optional[Mapping[str, Any]] = None,
) -> Optional[str]:
    """Pick the credential from the handshake carriers; first present wins.

    Order: Authorization bearer header, ``token`` header, ``token`` query
    parameter, explicit auth payload.
    """
    # Header names are case-insensitive; plain dicts may use any casing.
    headers = {str(k).lower(): v for k, v in (headers or {}).items()}
    authorization = headers.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token

    token = (headers.get("token") or "").strip()
    if token:
        return token

    token = ((query_params or {}).get("token") or "").strip()
    if token:
        return token

    token = (auth or {}).get("token")
    if isinstance(token, str) and token.strip():
        return token.strip()
    return None


class IdentityResolver:
    """Verifies credentials against the customer and provider account stores."""

    def __init__(self, accounts: AccountStore, secret_key: str, algorithm: str = "HS256"):
        self.accounts = accounts
        self.secret_key = secret_key
        self.algorithm = algorithm

    def decode_subject(self, credential: Optional[str]) -> str:
        if not credential:
            raise InvalidCredential("Authentication failed: token is missing")
        try:
            claims = jwt.decode(credential, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise InvalidCredential("Authentication failed: token has expired")
        except JWTError as e:
            logger.debug(f"Token verification failed: {e}")
            raise InvalidCredential()

        subject = claims.get("userId") or claims.get("sub")
        if not subject:
            raise InvalidCredential("Authentication failed: token has no subject")
        return str(subject)

    async def resolve(self, credential: Optional[str]) -> Identity:
        """Resolve a credential; customers are looked up before providers."""
        user_id = self.decode_subject(credential)
        try:
            account = await self.accounts.get_customer(user_id)
            if account is None:
                account = await self.accounts.get_provider(user_id)
        except StoreError as e:
            raise ConversationUnavailable("Account storage is temporarily unavailable") from e

        if account is None:
            raise UnknownSubject()
        return Identity(user_id=account.id, role=account.role)
