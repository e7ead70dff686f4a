"""Credential checks, token lifecycle and the password reset state machine."""

from __future__ import annotations

import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError

from .database import utcnow
from .errors import InfrastructureError
from .passwords import hash_password, pwd_context, verify_password
from .repositories import ResetCodeRepository, UserRepository
from .tokens import TokenService

logger = logging.getLogger(__name__)

LOGIN_COUNTER = Counter("login_attempts_total", "Login attempts by outcome", ["outcome"])
RESET_COUNTER = Counter(
    "password_reset_requests_total", "Password reset operations by step and outcome", ["step", "outcome"]
)

RESET_CODE_LENGTH = 6

RESET_EMAIL_SUBJECT = "Password reset code"
RESET_EMAIL_TEMPLATE = """\
<html>
  <body style="font-family: Arial, sans-serif; line-height: 1.6;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
      <h2>Password reset</h2>
      <p>We received a request to reset your password.</p>
      <p>Your verification code is:</p>
      <div style="font-size: 28px; font-weight: bold; text-align: center;
                  padding: 10px; background-color: #f5f5f5; border-radius: 5px;">{code}</div>
      <p>This code expires in {minutes} minutes.</p>
      <p>If you did not request a password reset you can ignore this message.</p>
      <p style="font-size: 12px; color: #777;">This is an automated message, please do not reply.</p>
    </div>
  </body>
</html>
"""


class ResetOutcome(enum.Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    INVALID_CODE = "invalid_code"
    DELIVERY_FAILED = "delivery_failed"

    def __bool__(self) -> bool:
        return self is ResetOutcome.OK


@dataclass
class AuthResult:
    ok: bool
    token: str = ""
    role: Optional[str] = None
    user_id: int = 0


def generate_reset_code(length: int = RESET_CODE_LENGTH) -> str:
    """Random numeric code; every digit is drawn independently."""
    return "".join(secrets.choice("0123456789") for _ in range(length))


class AuthService:
    """Authenticate users and drive the per-email reset code lifecycle.

    Every public method opens its own session from ``session_factory`` and
    closes it before returning. Database failures surface as
    :class:`InfrastructureError`; every other failure is reported through
    the return value.
    """

    def __init__(
        self,
        session_factory,
        tokens: TokenService,
        email_sender,
        code_ttl: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utcnow,
        code_generator: Callable[[], str] = generate_reset_code,
    ) -> None:
        self.session_factory = session_factory
        self.tokens = tokens
        self.email_sender = email_sender
        self.code_ttl = code_ttl
        self.clock = clock
        self.code_generator = code_generator

    def _fail(self, session, exc: Exception, action: str, subject: str) -> None:
        session.rollback()
        logger.exception("database error during %s for %s", action, subject, exc_info=exc)
        raise InfrastructureError("Database error") from exc

    # ------------------------------------------------------------------
    # Credentials and tokens
    # ------------------------------------------------------------------
    def authenticate(self, username: str, password: str) -> AuthResult:
        logger.info("authenticating user %s", username)
        session = self.session_factory()
        try:
            user = UserRepository(session).find_by_username(username)
        except SQLAlchemyError as exc:
            self._fail(session, exc, "authentication", username)
        finally:
            session.close()

        if user is None:
            pwd_context.dummy_verify()
            logger.warning("login failed for %s: unknown user", username)
            LOGIN_COUNTER.labels(outcome="failure").inc()
            return AuthResult(ok=False)
        if not verify_password(password, user.password_hash):
            logger.warning("login failed for %s: bad password", username)
            LOGIN_COUNTER.labels(outcome="failure").inc()
            return AuthResult(ok=False)
        if not user.is_active:
            logger.warning("login failed for %s: inactive user", username)
            LOGIN_COUNTER.labels(outcome="failure").inc()
            return AuthResult(ok=False)

        token = self.tokens.issue(user)
        LOGIN_COUNTER.labels(outcome="success").inc()
        logger.info("login succeeded for %s", username)
        return AuthResult(ok=True, token=token, role=user.role, user_id=user.id)

    def validate_token(self, token: str) -> bool:
        return self.tokens.validate_token(token)

    def revoke_token(self, token: str) -> bool:
        return self.tokens.revoke_token(token)

    def cleanup_revoked_tokens(self) -> int:
        return self.tokens.cleanup_revoked_tokens()

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------
    def request_password_reset(self, email: str) -> ResetOutcome:
        """Issue a fresh code for ``email`` and mail it.

        Prior unused codes are invalidated in the same transaction as the
        insert, and nothing is committed unless the email goes out.
        """
        session = self.session_factory()
        try:
            user = UserRepository(session).find_by_email(email)
            if user is None:
                logger.warning("password reset requested for unknown email %s", email)
                RESET_COUNTER.labels(step="request", outcome="not_found").inc()
                return ResetOutcome.NOT_FOUND

            codes = ResetCodeRepository(session)
            now = self.clock()
            code = self.code_generator()
            invalidated = codes.invalidate_prior_codes(email)
            codes.insert_code(email, code, created_at=now, expires_at=now + self.code_ttl)
            session.flush()

            body = RESET_EMAIL_TEMPLATE.format(
                code=code, minutes=int(self.code_ttl.total_seconds() // 60)
            )
            try:
                delivered = self.email_sender.send_email(email, RESET_EMAIL_SUBJECT, body)
            except Exception:
                logger.exception("email sender raised for %s", email)
                delivered = False
            if not delivered:
                session.rollback()
                logger.error("could not deliver reset code to %s, request aborted", email)
                RESET_COUNTER.labels(step="request", outcome="delivery_failed").inc()
                return ResetOutcome.DELIVERY_FAILED

            session.commit()
            logger.info("reset code sent to %s (%d prior codes invalidated)", email, invalidated)
            RESET_COUNTER.labels(step="request", outcome="ok").inc()
            return ResetOutcome.OK
        except SQLAlchemyError as exc:
            self._fail(session, exc, "password reset request", email)
        finally:
            session.close()

    def verify_reset_code(self, email: str, code: str) -> ResetOutcome:
        session = self.session_factory()
        try:
            row = ResetCodeRepository(session).find_active_code(email, code, self.clock())
        except SQLAlchemyError as exc:
            self._fail(session, exc, "reset code verification", email)
        finally:
            session.close()

        if row is None:
            logger.warning("invalid or expired reset code for %s", email)
            RESET_COUNTER.labels(step="verify", outcome="invalid_code").inc()
            return ResetOutcome.INVALID_CODE
        RESET_COUNTER.labels(step="verify", outcome="ok").inc()
        return ResetOutcome.OK

    def reset_password(self, email: str, code: str, new_password: str) -> ResetOutcome:
        """Consume ``code`` and set a new password in a single transaction."""
        if not self.verify_reset_code(email, code):
            return ResetOutcome.INVALID_CODE

        new_hash = hash_password(new_password)
        session = self.session_factory()
        try:
            users = UserRepository(session)
            codes = ResetCodeRepository(session)
            # Locked re-read; the code may have been consumed since the check above.
            row = codes.find_active_code(email, code, self.clock(), for_update=True)
            if row is None:
                RESET_COUNTER.labels(step="reset", outcome="invalid_code").inc()
                return ResetOutcome.INVALID_CODE
            user = users.find_by_email(email)
            if user is None:
                logger.warning("reset code matched but no active user for %s", email)
                RESET_COUNTER.labels(step="reset", outcome="not_found").inc()
                return ResetOutcome.NOT_FOUND

            if not codes.consume(row):
                session.rollback()
                logger.warning("reset code for %s was consumed concurrently", email)
                RESET_COUNTER.labels(step="reset", outcome="invalid_code").inc()
                return ResetOutcome.INVALID_CODE
            users.update_password_hash(user, new_hash)
            session.commit()
        except SQLAlchemyError as exc:
            self._fail(session, exc, "password reset", email)
        finally:
            session.close()

        logger.info("password reset for %s", email)
        RESET_COUNTER.labels(step="reset", outcome="ok").inc()
        return ResetOutcome.OK
