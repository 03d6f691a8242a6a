"""closure_access_baseline

Revision ID: 5b8e1c4d9a27
Revises: 
Create Date: 2026-10-18 09:45:12.408113

"""
from typing import Sequence, Union

from alembic import op

from customer_access.db_base import Base
import customer_access.models  # noqa: F401 - required to register all model metadata


# revision identifiers, used by Alembic.
revision: str = '5b8e1c4d9a27'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
