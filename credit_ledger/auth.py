import logging
import secrets
from typing import Callable, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings
from .errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

TokenVerifier = Callable[[str], str]


class JWTTokenVerifier:
    """Resolves a signed ID token (e.g. a Firebase ID token) to its subject."""

    def __init__(self, key: str, algorithms: list[str], audience: Optional[str] = None):
        self.key = key
        self.algorithms = algorithms
        self.audience = audience

    def __call__(self, token: str) -> str:
        try:
            payload = jwt.decode(
                token,
                self.key,
                algorithms=self.algorithms,
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Invalid or expired token")
        except jwt.InvalidTokenError:
            raise Unauthorized("Invalid or expired token")

        user_id = payload.get("user_id") or payload.get("sub") or payload.get("uid")
        if not user_id or not isinstance(user_id, str):
            raise Unauthorized("Invalid token payload")
        return user_id


class DevTokenVerifier:
    """Accepts one shared token and maps it to a fixed test uid."""

    def __init__(self, token: str, user_id: str):
        if not token:
            raise ValueError("dev_auth_token must be set when dev auth is enabled")
        self.token = token
        self.user_id = user_id

    def __call__(self, token: str) -> str:
        if not secrets.compare_digest(token, self.token):
            raise Unauthorized("Invalid token")
        return self.user_id


def build_token_verifier(settings: Settings) -> Optional[TokenVerifier]:
    if settings.dev_auth_enabled:
        return DevTokenVerifier(settings.dev_auth_token, settings.dev_auth_uid)
    if settings.auth_jwt_key:
        return JWTTokenVerifier(
            settings.auth_jwt_key,
            settings.auth_jwt_algorithms_list,
            audience=settings.auth_jwt_audience or None,
        )
    return None


def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    if not credentials or not credentials.credentials:
        logger.warning("missing_bearer_token", extra={"path": request.url.path})
        raise Unauthorized()

    verifier: Optional[TokenVerifier] = request.app.state.token_verifier
    if verifier is None:
        logger.error("token_verifier_not_configured", extra={"path": request.url.path})
        raise Unauthorized("Authentication is not configured")

    try:
        user_id = verifier(credentials.credentials.strip())
    except Unauthorized:
        logger.warning("token_rejected", extra={"path": request.url.path})
        raise
    request.state.user_id = user_id
    return user_id


def get_admin_user_id(request: Request, user_id: str = Depends(get_current_user_id)) -> str:
    allowed = request.app.state.settings.admin_user_ids_list
    if allowed and user_id not in allowed:
        logger.warning("admin_access_denied", extra={"user_id": user_id, "path": request.url.path})
        raise Forbidden()
    return user_id
