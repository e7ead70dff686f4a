import enum

from sqlalchemy import Column, DateTime, Integer, String

from ..database import SCHEMA, Base, utcnow


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    USER = "USER"


ACTIVE = "1"
INACTIVE = "0"


class User(Base):
    """SQLAlchemy model for application users."""

    __tablename__ = "users"
    __table_args__ = {"schema": SCHEMA}

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    email = Column(String(100), unique=True, index=True, nullable=False)
    first_names = Column(String(100), default="", nullable=False)
    last_names = Column(String(100), default="", nullable=False)
    role = Column(String(50), default=Role.USER.value, nullable=False)
    status = Column(String(1), default=ACTIVE, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE
