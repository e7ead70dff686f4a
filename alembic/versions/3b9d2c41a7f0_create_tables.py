"""create tables

Revision ID: 3b9d2c41a7f0
Revises: 
Create Date: 2026-10-19 09:12:40.518304

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from guias.database import Base, owned_tables
from guias.models import user  # noqa: F401


# revision identifiers, used by Alembic.
revision: str = '3b9d2c41a7f0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema by creating the users, guias and password_resets tables.

    The vista_* reference views belong to the host database and are left alone.
    """
    bind = op.get_bind()
    Base.metadata.create_all(bind, tables=owned_tables())


def downgrade() -> None:
    """Downgrade schema by dropping the application tables."""
    bind = op.get_bind()
    Base.metadata.drop_all(bind, tables=owned_tables())
