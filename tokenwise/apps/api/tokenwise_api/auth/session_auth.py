"""Session authentication for user-facing token and subscription endpoints.

Supabase JWT-based session auth.

FLOW:
1. User logs in via POST /v1/auth/login -> receives JWT access_token
2. User calls an endpoint with Authorization: Bearer <jwt>
3. Dependency validates the JWT with Supabase and extracts user_id
4. Returns SessionAuthContext(user_id, email)

SECURITY:
- JWT signature and expiry verified by Supabase
- user_id comes only from the verified token, never from the request body
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tokenwise_api.context import request_id_var, user_id_var
from tokenwise_api.schemas import ProblemDetail
from tokenwise_api.supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

# HTTPBearer scheme for session JWT
session_security = HTTPBearer(auto_error=False, description="Supabase JWT Session Token")


class SessionAuthContext:
    """Session authentication context for user-authenticated requests."""

    def __init__(self, user_id: str, email: Optional[str] = None):
        self.user_id = user_id
        self.email = email


def create_auth_problem(
    status_code: int,
    title: str,
    detail: str,
    request: Request,
    code: str = "UNAUTHORIZED",
) -> HTTPException:
    """Create RFC 9457 Problem Detail for auth errors.

    Args:
        status_code: HTTP status code (401 or 403)
        title: Problem title
        detail: Human-readable detail
        request: FastAPI request
        code: Machine-readable error code

    Returns:
        HTTPException whose detail is the problem body
    """
    request_id = request_id_var.get()

    problem = ProblemDetail(
        type=f"https://api.tokenwise.app/problems/{title.lower().replace(' ', '-')}",
        title=title,
        status=status_code,
        detail=detail,
        instance=f"urn:tokenwise:trace:{request_id}" if request_id else str(request.url.path),
        code=code,
    )

    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return HTTPException(
        status_code=status_code,
        detail=problem.model_dump(exclude_none=True),
        headers=headers,
    )


async def get_session_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(session_security),
) -> SessionAuthContext:
    """Get session authentication context from Supabase JWT.

    Raises:
        HTTPException: 401 if authentication fails (RFC 9457 Problem Detail)
    """
    if not credentials:
        raise create_auth_problem(
            status_code=status.HTTP_401_UNAUTHORIZED,
            title="Unauthorized",
            detail="Missing Authorization header. Please log in first.",
            request=request,
        )

    try:
        supabase = get_supabase_client()

        # Supabase validates JWT signature and expiration
        user_response = supabase.auth.get_user(credentials.credentials)

        if not user_response or not user_response.user:
            raise create_auth_problem(
                status_code=status.HTTP_401_UNAUTHORIZED,
                title="Unauthorized",
                detail="Invalid or expired session token. Please log in again.",
                request=request,
            )

        user = user_response.user

    except HTTPException:
        raise
    except Exception as e:
        logger.warning(
            "session.jwt.invalid",
            extra={"error_type": type(e).__name__},
        )
        raise create_auth_problem(
            status_code=status.HTTP_401_UNAUTHORIZED,
            title="Unauthorized",
            detail="Session validation failed. Please log in again.",
            request=request,
        )

    user_id_var.set(user.id)
    # Read by the completion log; context vars set here stay inside the handler
    request.state.user_id = user.id
    logger.debug("session.auth.success")

    return SessionAuthContext(user_id=user.id, email=user.email)
