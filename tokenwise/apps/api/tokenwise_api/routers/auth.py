"""Auth endpoints: email signup and login through Supabase Auth.

Endpoints:
- POST /v1/auth/signup: Email signup; creates the user's free subscription
- POST /v1/auth/login: Email login (returns JWT session)

SECURITY:
- email_redirect_to is FORCED to API_BASE_URL/v1/auth/confirmed
- Passwords never logged
"""

import logging
import os

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from tokenwise_api.context import request_id_var
from tokenwise_api.db.session import get_db
from tokenwise_api.schemas import AuthResponse, LoginRequest, ProblemDetail, SignupRequest
from tokenwise_api.subscription.transitions import create_free_subscription
from tokenwise_api.supabase_client import get_supabase_client

router = APIRouter(prefix="/v1/auth", tags=["auth"])
logger = logging.getLogger(__name__)


def _get_redirect_url() -> str:
    """Confirmation redirect URL (API_BASE_URL/v1/auth/confirmed)."""
    base_url = os.getenv("API_BASE_URL") or "http://localhost:8000"
    return f"{base_url}/v1/auth/confirmed"


def _ensure_subscription(db: Session, user_id: str) -> bool:
    """Create the free subscription row if missing.

    A failure here is logged and reported as False; the Supabase user
    already exists and the next login retries the creation.
    """
    try:
        create_free_subscription(db, user_id)
        return True
    except Exception as e:
        logger.error(
            "auth.subscription_creation_failed",
            extra={"error_type": type(e).__name__},
            exc_info=True,
        )
        return False


@router.post("/signup", status_code=status.HTTP_202_ACCEPTED, response_model=AuthResponse)
def signup(request: SignupRequest, db: Session = Depends(get_db)) -> AuthResponse:
    """Register new user with email/password.

    Flow:
    1. Supabase creates the user (email_confirmed=false) and sends the confirmation email
    2. Tokenwise creates the free subscription row (+ "created" event)
    3. User confirms the email, then logs in

    Raises:
        HTTPException 409: Email already registered (problem+json)
        HTTPException 500: Supabase error
    """
    try:
        supabase = get_supabase_client()
        logger.info("auth.signup.attempt")

        response = supabase.auth.sign_up(
            {
                "email": request.email,
                "password": request.password,
                "options": {"email_redirect_to": _get_redirect_url()},
            }
        )

        if not response.user:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Signup failed: No user returned from Supabase",
            )

    except HTTPException:
        raise
    except Exception as e:
        logger.error("auth.signup.error", extra={"error_type": type(e).__name__})

        error_msg = str(e).lower()
        if "already registered" in error_msg or "already exists" in error_msg:
            problem = ProblemDetail(
                type="https://api.tokenwise.app/problems/auth-conflict",
                title="Email Already Registered",
                status=409,
                detail="This email is already registered. Please login instead.",
                instance=f"urn:tokenwise:trace:{request_id_var.get()}",
                code="CONFLICT",
            )
            return JSONResponse(
                status_code=409,
                content=problem.model_dump(exclude_none=True),
                media_type="application/problem+json",
            )

        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Signup failed",
        )

    user_id = response.user.id
    subscription_ok = _ensure_subscription(db, user_id)

    logger.info(
        "auth.signup.success",
        extra={
            "subscription_created": subscription_ok,
            "email_confirmed": response.user.email_confirmed_at is not None,
        },
    )

    return AuthResponse(
        user_id=user_id,
        email=response.user.email or request.email,
        email_confirmed=response.user.email_confirmed_at is not None,
        plan="free" if subscription_ok else None,
        message="Check your email to confirm your account",
    )


@router.post("/login", status_code=status.HTTP_200_OK, response_model=AuthResponse)
def login(request: LoginRequest, db: Session = Depends(get_db)) -> AuthResponse:
    """Login with email/password; returns JWT session tokens.

    Also creates the free subscription row if signup could not.

    Raises:
        HTTPException 401: Invalid credentials or email not confirmed
        HTTPException 500: Supabase error
    """
    try:
        supabase = get_supabase_client()
        logger.info("auth.login.attempt")

        response = supabase.auth.sign_in_with_password(
            {"email": request.email, "password": request.password}
        )

        if not response.user or not response.session:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )

    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth.login.error", extra={"error_type": type(e).__name__})

        error_msg = str(e).lower()
        if "not confirmed" in error_msg or "email not verified" in error_msg:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Email not confirmed. Please check your email.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if "invalid" in error_msg or "wrong" in error_msg or "not found" in error_msg:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )

        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Login failed",
        )

    _ensure_subscription(db, response.user.id)
    logger.info("auth.login.success")

    return AuthResponse(
        user_id=response.user.id,
        email=response.user.email or request.email,
        email_confirmed=response.user.email_confirmed_at is not None,
        access_token=response.session.access_token,
        refresh_token=response.session.refresh_token,
    )
