"""create identities, profiles, user_roles and messages

Revision ID: 3b1c9e04a7d2
Revises: 
Create Date: 2026-10-18 09:12:40.118342

"""
from typing import Sequence, Union

from alembic import op
from classhub.database import Base


# revision identifiers, used by Alembic.
revision: str = '3b1c9e04a7d2'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create every table registered on the shared metadata."""
    bind = op.get_bind()
    Base.metadata.create_all(bind)


def downgrade() -> None:
    """Drop every table registered on the shared metadata."""
    bind = op.get_bind()
    Base.metadata.drop_all(bind)
