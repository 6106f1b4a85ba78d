"""Shared API dependencies."""

import hmac

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlmodel import Session, select

from backend.config import settings
from backend.database import get_session
from backend.errors import WebhookAuthFailure, WebhookNotConfigured
from backend.models.user import User
from backend.services.auth import decode_access_token

bearer_scheme = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> User:
    """Validate JWT and return the current user."""
    username = decode_access_token(credentials.credentials)
    if username is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    user = session.exec(select(User).where(User.username == username)).first()
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return user


def verify_webhook_secret(
    x_broker_webhook_secret: str | None = Header(default=None),
):
    """Shared-secret check for provider callbacks (constant-time compare)."""
    expected = settings.broker_webhook_secret
    if not expected:
        raise WebhookNotConfigured("Webhook secret is not configured")
    if not hmac.compare_digest(str(x_broker_webhook_secret or "").encode(), expected.encode()):
        raise WebhookAuthFailure("Invalid webhook secret")
