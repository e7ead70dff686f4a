"""Password hashing and password policy checks."""

from typing import List, Optional, Tuple

from passlib.context import CryptContext

from .config import settings

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.bcrypt_rounds,
)

MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    # Malformed or empty stored hashes count as a mismatch.
    if not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False


def validate_password(password: str) -> Tuple[bool, Optional[str]]:
    """Check a password against the policy.

    Returns ``(is_valid, message)`` where ``message`` joins every violated
    rule, or is ``None`` when the password is acceptable.
    """
    problems: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not any(c.isupper() for c in password):
        problems.append("Password must contain an uppercase letter")
    if not any(c.islower() for c in password):
        problems.append("Password must contain a lowercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("Password must contain a digit")
    if all(c.isalnum() for c in password):
        problems.append("Password must contain a special character")

    if problems:
        return False, ". ".join(problems)
    return True, None
