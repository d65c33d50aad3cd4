"""
API Dependencies

FastAPI dependency injection for authentication, company resolution and
the access gate.

Security: bearer tokens are Supabase JWTs, verified against the project's
JWKS (ES256) with an HS256 fallback on the JWT secret. Tokens are never
decoded without verification.
"""

import logging
from typing import Annotated, Optional

import jwt
from jwt import PyJWKClient
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config.settings import get_settings
from app.domain.company import Company
from app.domain.trial import has_access, trial_status
from app.infrastructure.db.dependencies import CompanyRepoDep
from app.infrastructure.exceptions import AccessDeniedError
from app.infrastructure.services.subscription_lifecycle_service import (
    SubscriptionLifecycleService,
    get_subscription_lifecycle_service,
)


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# PyJWKClient caches keys internally; one client per process.
_jwks_client: Optional[PyJWKClient] = None

_DECODE_OPTIONS = {"require": ["exp", "sub", "iss"]}


def _get_jwks_client() -> PyJWKClient:
    global _jwks_client
    if _jwks_client is None:
        jwks_url = f"{get_settings().supabase_url}/auth/v1/.well-known/jwks.json"
        _jwks_client = PyJWKClient(jwks_url, cache_keys=True)
    return _jwks_client


def verify_token(token: str) -> dict:
    """
    Verify a Supabase access token and return its claims.

    JWKS (ES256) is tried first; when it fails and SUPABASE_JWT_SECRET is
    configured, HS256 is tried.

    Raises:
        HTTPException 401: expired or unverifiable token
    """
    settings = get_settings()
    issuer = f"{settings.supabase_url}/auth/v1"

    try:
        signing_key = _get_jwks_client().get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["ES256"],
            issuer=issuer,
            audience="authenticated",
            options=_DECODE_OPTIONS,
        )
    except (jwt.exceptions.PyJWKClientError, jwt.InvalidTokenError) as jwks_err:
        logger.debug("JWKS verification failed: %s", jwks_err)

    if settings.supabase_jwt_secret:
        try:
            return jwt.decode(
                token,
                settings.supabase_jwt_secret,
                algorithms=["HS256"],
                issuer=issuer,
                audience="authenticated",
                options=_DECODE_OPTIONS,
            )
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired",
            )
        except jwt.InvalidTokenError as e:
            logger.warning("HS256 JWT verification failed: %s", e)

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or unverifiable token",
    )


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Authenticated user ID (``sub`` claim).

    Raises:
        HTTPException 401: token missing, expired, or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = verify_token(credentials.credentials).get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
        )

    return user_id


async def get_current_company(
    companies: CompanyRepoDep,
    user_id: str = Depends(get_current_user_id),
) -> Company:
    """
    Company owned by the authenticated user.

    Raises:
        HTTPException 404: user has not created a company yet
    """
    company = await companies.get_by_user_id(user_id)
    if company is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Company not found. Complete onboarding first.",
        )
    return company


async def require_app_access(
    company: Company = Depends(get_current_company),
) -> Company:
    """
    Gate for protected functionality.

    Evaluated on every request against the wall clock; a trial that ends
    mid-session is enforced on the next request.

    Raises:
        AccessDeniedError: trial over and no subscription
    """
    if not has_access(company):
        logger.info(f"Access denied for company {company.id}: trial expired")
        raise AccessDeniedError(trial_status=trial_status(company).value)
    return company


def get_lifecycle_service() -> SubscriptionLifecycleService:
    """Subscription lifecycle service provider."""
    return get_subscription_lifecycle_service()


# Type aliases for route signatures
CurrentCompany = Annotated[Company, Depends(get_current_company)]
AccessGrantedCompany = Annotated[Company, Depends(require_app_access)]
LifecycleServiceDep = Annotated[SubscriptionLifecycleService, Depends(get_lifecycle_service)]
