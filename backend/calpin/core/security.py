import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from ..config import Settings
from ..models.user import Principal

logger = logging.getLogger(__name__)

# Missing credentials are reported by get_current_principal, not by the scheme
bearer_scheme = HTTPBearer(auto_error=False)


def _credentials_exception(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(
    data: Dict[str, Any],
    settings: Settings,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a new access token.

    Args:
        data: The claims to encode; ``sub``, ``email`` and ``name`` identify the principal
        settings: Supplies the signing key and algorithm
        expires_delta: Optional expiration time delta

    Returns:
        str: The encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta, "type": "access"})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


class PrincipalVerifier(ABC):
    """Turns an opaque bearer credential into a verified principal."""

    @abstractmethod
    def verify(self, credential: str) -> Principal:
        """Return the principal or raise a 401 HTTPException."""


class JwtPrincipalVerifier(PrincipalVerifier):
    def __init__(self, settings: Settings):
        self.secret_key = settings.SECRET_KEY
        self.algorithm = settings.ALGORITHM

    def verify(self, credential: str) -> Principal:
        try:
            payload = jwt.decode(credential, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.info("Rejected bearer token: %s", e)
            raise _credentials_exception()

        user_id = payload.get("sub")
        email = payload.get("email")
        if not user_id or not isinstance(email, str) or "@" not in email:
            raise _credentials_exception()
        name = payload.get("name") or email.split("@", 1)[0]
        return Principal(id=str(user_id), email=email.strip().lower(), name=str(name))


def email_domain_allowed(email: str, domains: Iterable[str]) -> bool:
    domain = email.rsplit("@", 1)[-1].lower()
    return any(domain == d.strip().lower().lstrip("@") for d in domains)


def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    """Resolve the caller, enforce the domain allow-list and record the user.

    Raises:
        HTTPException: 401 for a missing or invalid credential, 403 for an
            email outside the allowed domains
    """
    if credentials is None or not credentials.credentials:
        raise _credentials_exception("Not authenticated")

    state = request.app.state
    principal = state.verifier.verify(credentials.credentials)
    if not email_domain_allowed(principal.email, state.settings.ALLOWED_EMAIL_DOMAINS):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Sign in with an allowed organization email address",
        )

    state.coordinator.register_principal(principal)
    return principal
