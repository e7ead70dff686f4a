"""Database setup and ORM models for guías, reset codes and reference views."""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_timeout": settings.db_pool_timeout, "pool_pre_ping": True}


engine = create_engine(settings.database_url, future=True, **_engine_options(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()

SCHEMA = settings.db_schema


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def qualified(name: str) -> str:
    """Prefix a ``table.column`` reference with the configured schema."""
    return f"{SCHEMA}.{name}" if SCHEMA else name


class Guia(Base):
    """An uploaded guía document owned by a user."""

    __tablename__ = "guias"
    __table_args__ = {"schema": SCHEMA}

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), unique=True, nullable=False)
    file_data = Column(LargeBinary, nullable=True)
    uploaded_at = Column(DateTime, default=utcnow, nullable=False)
    user_id = Column(Integer, ForeignKey(qualified("users.id")), index=True, nullable=False)


class PasswordReset(Base):
    """One-time password reset code sent by email."""

    __tablename__ = "password_resets"
    __table_args__ = {"schema": SCHEMA}

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(100), index=True, nullable=False)
    code = Column(String(6), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, default=False, nullable=False)


# Read-only reference views. The ORM needs a primary key, so the natural key
# of each view is declared as one.


def view_args() -> dict:
    return {"schema": SCHEMA, "info": {"view": True}}


class VistaCampo(Base):
    __tablename__ = "vista_campo"
    __table_args__ = view_args()

    campo = Column(String(6), primary_key=True)
    desc_campo = Column(String(70))


class VistaCuartel(Base):
    __tablename__ = "vista_cuartel"
    __table_args__ = view_args()

    campo = Column(String(6), primary_key=True)
    jiron = Column(String(8), primary_key=True)
    cuartel = Column(String(6), primary_key=True)


class VistaJiron(Base):
    __tablename__ = "vista_jiron"
    __table_args__ = view_args()

    campo = Column(String(6), primary_key=True)
    jiron = Column(String(8), primary_key=True)


class VistaEmpleado(Base):
    __tablename__ = "vista_empleado"
    __table_args__ = view_args()

    codigo = Column(Integer, primary_key=True)
    empleado = Column(String(40))
    dni = Column(String(20))
    cd_transp = Column(Integer)


class VistaEquipo(Base):
    __tablename__ = "vista_equipos"
    __table_args__ = view_args()

    cod_equipo = Column(Integer, primary_key=True)
    placa = Column(String(20))
    cod_transp = Column(Integer, index=True)
    tip_equipo = Column(String(30))


class VistaTransportista(Base):
    __tablename__ = "vista_transportista"
    __table_args__ = view_args()

    cod_transp = Column(Integer, primary_key=True)
    transportista = Column(String(40))
    ruc = Column(String(18))


def owned_tables(include_views: bool = False):
    """Tables managed by this application, optionally with the reference views."""
    return [t for t in Base.metadata.sorted_tables if include_views or not t.info.get("view")]


def init_db() -> None:
    """Create database tables if they do not exist."""
    from .models import user  # noqa: F401  registers the users table

    tables = owned_tables(include_views=settings.create_reference_tables)
    Base.metadata.create_all(bind=engine, tables=tables)
