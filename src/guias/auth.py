from datetime import timedelta
from typing import Generator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .authentication import AuthService
from .config import settings
from .database import SessionLocal
from .mailer import build_email_sender
from .models.user import Role, User
from .tokens import TokenService, build_revocation_store

security = HTTPBearer()

token_service = TokenService(
    secret=settings.jwt_secret,
    issuer=settings.jwt_issuer,
    audience=settings.jwt_audience,
    lifetime_hours=settings.token_lifetime_hours,
    store=build_revocation_store(settings.revocation_backend, settings.redis_url),
    algorithm=settings.jwt_algorithm,
)

auth_service = AuthService(
    SessionLocal,
    token_service,
    build_email_sender(settings),
    code_ttl=timedelta(minutes=settings.reset_code_ttl_minutes),
)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    return credentials.credentials


def get_current_user(
    token: str = Depends(get_token),
    db: Session = Depends(get_db),
) -> User:
    if not token_service.validate_token(token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token"
        )
    claims = token_service.decode(token) or {}
    try:
        user_id = int(claims.get("id", ""))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token"
        )

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found"
        )
    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != Role.ADMIN.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return current_user


def verify_user(user_id: int, current_user: User = Depends(get_current_user)) -> None:
    """Allow access to a user's own resources, or to any admin."""
    if current_user.id != user_id and current_user.role != Role.ADMIN.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
