"""Narrow data-access helpers used by the authentication core."""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .database import PasswordReset, utcnow
from .models.user import ACTIVE, User


class UserRepository:
    """Credential store lookups and password updates."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_username(self, username: str) -> Optional[User]:
        return self.session.query(User).filter(User.username == username).first()

    def find_by_email(self, email: str, active_only: bool = True) -> Optional[User]:
        query = self.session.query(User).filter(User.email == email)
        if active_only:
            query = query.filter(User.status == ACTIVE)
        return query.first()

    def update_password_hash(self, user: User, password_hash: str) -> None:
        user.password_hash = password_hash
        self.touch(user)

    def touch(self, user: User) -> None:
        user.updated_at = utcnow()


class ResetCodeRepository:
    """Storage for one-time password reset codes."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def invalidate_prior_codes(self, email: str) -> int:
        rows = (
            self.session.query(PasswordReset)
            .filter(PasswordReset.email == email, PasswordReset.used.is_(False))
            .all()
        )
        for row in rows:
            row.used = True
        return len(rows)

    def insert_code(self, email: str, code: str, created_at: datetime, expires_at: datetime) -> PasswordReset:
        row = PasswordReset(
            email=email,
            code=code,
            created_at=created_at,
            expires_at=expires_at,
            used=False,
        )
        self.session.add(row)
        return row

    def find_active_code(
        self, email: str, code: str, now: datetime, for_update: bool = False
    ) -> Optional[PasswordReset]:
        query = (
            self.session.query(PasswordReset)
            .filter(
                PasswordReset.email == email,
                PasswordReset.code == code,
                PasswordReset.used.is_(False),
                PasswordReset.expires_at > now,
            )
            .order_by(PasswordReset.created_at.desc(), PasswordReset.id.desc())
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def consume(self, row: PasswordReset) -> bool:
        """Flag ``row`` as used. False when another transaction got there first."""
        updated = (
            self.session.query(PasswordReset)
            .filter(PasswordReset.id == row.id, PasswordReset.used.is_(False))
            .update({PasswordReset.used: True}, synchronize_session=False)
        )
        return updated == 1
