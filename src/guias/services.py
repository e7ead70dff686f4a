"""Service layer for users and guía documents."""

import logging
from typing import Dict, Iterable, Optional, Tuple

from prometheus_client import Counter
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, defer

from .config import settings
from .correlative import CorrelativeGenerator
from .database import Guia, SessionLocal, utcnow
from .errors import ConflictError, InfrastructureError, InvalidInputError, NotFoundError, ServiceError
from .models.user import ACTIVE, INACTIVE, Role, User
from .pagination import Paged, paginate
from .passwords import hash_password, validate_password

logger = logging.getLogger(__name__)

USER_COUNTER = Counter("users_created_total", "Total users created")
GUIA_COUNTER = Counter("guias_created_total", "Total guías uploaded")

MAX_GUIA_BYTES = 10 * 1024 * 1024
ALLOWED_GUIA_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
CORRELATIVE_ATTEMPTS = 5

correlatives = CorrelativeGenerator(settings.guia_prefix)


def _handle_service_error(session: Session, exc: Exception) -> None:
    """Rollback the transaction and re-raise as a service error kind."""
    session.rollback()
    if isinstance(exc, ServiceError):
        raise exc
    logger.exception("service layer error", exc_info=exc)
    if isinstance(exc, SQLAlchemyError):
        raise InfrastructureError("Database error") from exc
    raise exc


def normalize_role(role: str) -> str:
    value = (role or "").strip().upper()
    if value not in {r.value for r in Role}:
        allowed = " or ".join(r.value for r in Role)
        raise InvalidInputError(f"Invalid role. Allowed roles are {allowed}")
    return value


def check_registration(username: str, email: str, password: str, role: str) -> str:
    """Validate registration fields and return the normalized role."""
    normalized = normalize_role(role)
    if not (username or "").strip():
        raise InvalidInputError("Username is required")
    if not (email or "").strip():
        raise InvalidInputError("Email is required")
    if not password:
        raise InvalidInputError("Password is required")
    ok, message = validate_password(password)
    if not ok:
        raise InvalidInputError(message)
    return normalized


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------


def list_users(page: int = 1, page_size: int = 50, all_records: bool = False) -> Paged:
    """Retrieve users, newest first."""

    session: Session = SessionLocal()
    try:
        query = session.query(User).order_by(User.id.desc())
        return paginate(query, page, page_size, all_records)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_user(user_id: int) -> Optional[User]:
    session: Session = SessionLocal()
    try:
        return session.get(User, user_id)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_user_by_username(username: str) -> Optional[User]:
    session: Session = SessionLocal()
    try:
        return session.query(User).filter(User.username == username).first()
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_user_by_email(email: str) -> Optional[User]:
    session: Session = SessionLocal()
    try:
        return session.query(User).filter(User.email == email).first()
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def create_user(
    username: str,
    password: str,
    email: str,
    first_names: str = "",
    last_names: str = "",
    role: str = Role.USER.value,
) -> User:
    """Register a user after validating fields, uniqueness and password policy."""

    logger.info("create user username=%s email=%s role=%s", username, email, role)
    normalized_role = check_registration(username, email, password, role)
    session: Session = SessionLocal()
    try:
        if session.query(User).filter(User.username == username).first():
            raise ConflictError(f"Username {username} is already registered")
        if session.query(User).filter(User.email == email).first():
            raise ConflictError(f"Email {email} is already registered")

        user = User(
            username=username.strip(),
            password_hash=hash_password(password),
            email=email.strip(),
            first_names=first_names or "",
            last_names=last_names or "",
            role=normalized_role,
            status=ACTIVE,
            created_at=utcnow(),
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        USER_COUNTER.inc()
        logger.info("created user id=%s username=%s", user.id, user.username)
        return user
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError("Username or email is already registered") from exc
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def update_user(
    user_id: int,
    username: Optional[str] = None,
    email: Optional[str] = None,
    first_names: Optional[str] = None,
    last_names: Optional[str] = None,
    role: Optional[str] = None,
) -> User:
    """Update profile fields, re-checking uniqueness of changed keys."""

    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        if username is not None:
            username = username.strip()
            if not username:
                raise InvalidInputError("Username is required")
        if email is not None:
            email = email.strip()
            if not email:
                raise InvalidInputError("Email is required")

        if username is not None and username != user.username:
            if session.query(User).filter(User.username == username).first():
                raise ConflictError(f"Username {username} is already registered")
            user.username = username
        if email is not None and email != user.email:
            if session.query(User).filter(User.email == email).first():
                raise ConflictError(f"Email {email} is already registered")
            user.email = email
        if first_names is not None:
            user.first_names = first_names
        if last_names is not None:
            user.last_names = last_names
        if role is not None:
            user.role = normalize_role(role)

        user.updated_at = utcnow()
        session.commit()
        session.refresh(user)
        logger.info("updated user id=%s", user_id)
        return user
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def delete_user(user_id: int) -> None:
    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        if session.query(Guia.id).filter(Guia.user_id == user_id).first():
            raise ConflictError(f"User {user_id} still owns guías")
        session.delete(user)
        session.commit()
        logger.info("deleted user id=%s", user_id)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def change_password(user_id: int, new_password: str) -> None:
    ok, message = validate_password(new_password)
    if not ok:
        raise InvalidInputError(message)

    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        user.password_hash = hash_password(new_password)
        user.updated_at = utcnow()
        session.commit()
        logger.info("changed password for user id=%s", user_id)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def update_status(user_id: int, status: str) -> None:
    if status not in (ACTIVE, INACTIVE):
        raise InvalidInputError(f"Status must be '{INACTIVE}' (inactive) or '{ACTIVE}' (active)")

    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        user.status = status
        user.updated_at = utcnow()
        session.commit()
        logger.info("set status=%s for user id=%s", status, user_id)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


# ----------------------------------------------------------------------
# Guías
# ----------------------------------------------------------------------


def _usernames(session: Session, user_ids: Iterable[int]) -> Dict[int, str]:
    ids = set(user_ids)
    if not ids:
        return {}
    rows = (
        session.query(User.id, User.username)
        .filter(User.id.in_(ids), User.status == ACTIVE)
        .all()
    )
    return {row.id: row.username for row in rows}


def _guia_summary(guia: Guia, usernames: Dict[int, str]) -> Dict[str, object]:
    return {
        "id": guia.id,
        "name": guia.name,
        "uploaded_at": guia.uploaded_at,
        "user_id": guia.user_id,
        "username": usernames.get(guia.user_id),
    }


def _summarize(session: Session, page: Paged) -> Paged:
    usernames = _usernames(session, (g.user_id for g in page.data))
    page.data = [_guia_summary(g, usernames) for g in page.data]
    return page


def list_guias(page: int = 1, page_size: int = 20, all_records: bool = False) -> Paged:
    """Retrieve guías newest first with the owner's username attached."""

    session: Session = SessionLocal()
    try:
        query = session.query(Guia).options(defer(Guia.file_data)).order_by(Guia.id.desc())
        return _summarize(session, paginate(query, page, page_size, all_records))
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_guia(guia_id: int) -> Optional[Dict[str, object]]:
    session: Session = SessionLocal()
    try:
        guia = session.query(Guia).options(defer(Guia.file_data)).filter(Guia.id == guia_id).first()
        if guia is None:
            return None
        return _guia_summary(guia, _usernames(session, [guia.user_id]))
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_guia_file(guia_id: int) -> Tuple[str, bytes]:
    session: Session = SessionLocal()
    try:
        guia = session.get(Guia, guia_id)
        if guia is None:
            raise NotFoundError(f"Guía {guia_id} not found")
        return guia.name, guia.file_data or b""
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def list_guias_by_user(user_id: int, page: int = 1, page_size: int = 20, all_records: bool = False) -> Paged:
    """Retrieve a user's guías, most recent upload first."""

    logger.info("listing guías for user id=%s", user_id)
    session: Session = SessionLocal()
    try:
        if session.get(User, user_id) is None:
            logger.warning("guías requested for missing user id=%s", user_id)
            raise NotFoundError(f"User {user_id} not found")
        query = (
            session.query(Guia)
            .options(defer(Guia.file_data))
            .filter(Guia.user_id == user_id)
            .order_by(Guia.uploaded_at.desc(), Guia.id.desc())
        )
        result = _summarize(session, paginate(query, page, page_size, all_records))
        if not result.data:
            logger.info("user id=%s has no guías on page %s", user_id, page)
        return result
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def guia_exists(name: str) -> bool:
    session: Session = SessionLocal()
    try:
        return session.query(Guia.id).filter(Guia.name == name).first() is not None
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def next_correlative() -> str:
    session: Session = SessionLocal()
    try:
        return correlatives.next_value(session)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def check_upload(content_type: Optional[str], size: int) -> None:
    if size <= 0:
        raise InvalidInputError("No file was provided")
    if size > MAX_GUIA_BYTES:
        raise InvalidInputError("File must not be larger than 10MB")
    if (content_type or "").lower() not in ALLOWED_GUIA_TYPES:
        raise InvalidInputError("Only PDF and Word files are allowed")


def create_guia(
    user_id: int,
    file_data: bytes,
    content_type: Optional[str],
    name: Optional[str] = None,
) -> Dict[str, object]:
    """Store an uploaded guía.

    Without an explicit ``name`` a correlative is allocated; a collision on
    the unique name is retried with a fresh correlative.
    """

    check_upload(content_type, len(file_data))
    if name is not None and not name.strip():
        raise InvalidInputError("Name must not be empty")

    logger.info("create guía user=%s name=%s size=%d", user_id, name, len(file_data))
    session: Session = SessionLocal()
    try:
        owner = session.get(User, user_id)
        if owner is None:
            raise InvalidInputError(f"User {user_id} does not exist")

        attempts = 1 if name else CORRELATIVE_ATTEMPTS
        collided = None
        for attempt in range(1, attempts + 1):
            guia_name = name.strip() if name else correlatives.next_value(session, collided)
            if name and session.query(Guia.id).filter(Guia.name == guia_name).first():
                raise ConflictError(f"A guía named {guia_name} already exists")

            guia = Guia(name=guia_name, file_data=file_data, uploaded_at=utcnow(), user_id=user_id)
            session.add(guia)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning("guía name %s collided (attempt %d/%d)", guia_name, attempt, attempts)
                collided = guia_name
                continue

            session.refresh(guia)
            GUIA_COUNTER.inc()
            logger.info("created guía id=%s name=%s", guia.id, guia.name)
            return _guia_summary(guia, {owner.id: owner.username})

        raise ConflictError("Could not allocate a unique guía name")
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def delete_guia(guia_id: int) -> bool:
    session: Session = SessionLocal()
    try:
        guia = session.get(Guia, guia_id)
        if guia is None:
            return False
        session.delete(guia)
        session.commit()
        logger.info("deleted guía id=%s", guia_id)
        return True
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()
