"""Sequential guía names such as ``T002-00000100``.

The next value is derived from the most recently inserted guía name. The
read-then-insert sequence is not atomic; callers rely on the unique
constraint on ``guias.name`` and retry with a fresh value on collision.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from .database import Guia

logger = logging.getLogger(__name__)

FIRST_NUMBER = 100
NUMBER_WIDTH = 8


def next_number(last_name: Optional[str], prefix: str) -> int:
    """Number following the one embedded in ``last_name`` after ``prefix``."""
    if not last_name:
        logger.info("no previous guías, starting at %d", FIRST_NUMBER)
        return FIRST_NUMBER

    index = last_name.find(prefix)
    if index < 0:
        logger.warning("prefix %s not found in last guía name %s", prefix, last_name)
        return FIRST_NUMBER

    digits = last_name[index + len(prefix):].split(".", 1)[0]
    try:
        return int(digits) + 1
    except ValueError:
        logger.warning("could not parse number from %r", digits)
        return FIRST_NUMBER


def format_correlative(prefix: str, number: int) -> str:
    return f"{prefix}{number:0{NUMBER_WIDTH}d}"


class CorrelativeGenerator:
    """Compute the next guía name from the last stored one."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    def last_name(self, session: Session) -> Optional[str]:
        row = session.query(Guia.name).order_by(Guia.id.desc()).first()
        return row[0] if row else None

    def next_value(self, session: Session, collided: Optional[str] = None) -> str:
        """Next name after the last stored one, and past ``collided`` when given."""
        number = next_number(self.last_name(session), self.prefix)
        if collided:
            number = max(number, next_number(collided, self.prefix))
        return format_correlative(self.prefix, number)
