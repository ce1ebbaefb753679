"""create_fhir_resources

Revision ID: 3f1c2a7d9b40
Revises:
Create Date: 2026-10-19 10:12:44.318205

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f1c2a7d9b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the per-user fhir_resources table."""
    op.create_table(
        "fhir_resources",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("resource_type", sa.String(50), nullable=False),
        sa.Column("fhir_id", sa.String(255), nullable=False),
        sa.Column("subject_reference", sa.String(300), nullable=True),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "resource_type", "fhir_id", name="uq_fhir_user_type_id"),
    )
    op.create_index("ix_fhir_resources_user_id", "fhir_resources", ["user_id"], unique=False)
    # Composite index for per-user typed queries
    op.create_index(
        "idx_fhir_user_type",
        "fhir_resources",
        ["user_id", "resource_type"],
        unique=False,
    )
    # GIN index for JSONB queries
    op.create_index(
        "idx_fhir_data_gin",
        "fhir_resources",
        ["data"],
        unique=False,
        postgresql_using="gin",
    )


def downgrade() -> None:
    """Drop fhir_resources table."""
    op.drop_index("idx_fhir_data_gin", table_name="fhir_resources")
    op.drop_index("idx_fhir_user_type", table_name="fhir_resources")
    op.drop_index("ix_fhir_resources_user_id", table_name="fhir_resources")
    op.drop_table("fhir_resources")
