from __future__ import annotations

from alembic import op

from marketplace.core.database import Base
import marketplace.models  # noqa: F401

revision = "0001_settlement_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    Base.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
