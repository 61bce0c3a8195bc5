"""Initial schema: the tree store's leaf table.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── tree_nodes ────────────────────────────────────────────────────
    op.create_table(
        "tree_nodes",
        sa.Column("path", sa.String(512), primary_key=True),
        sa.Column("value", sa.Text, nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    # text_pattern_ops lets PostgreSQL serve ``path LIKE 'prefix/%'`` from
    # the index under any collation
    op.execute(
        "CREATE INDEX ix_tree_nodes_path_prefix "
        "ON tree_nodes (path text_pattern_ops)"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_tree_nodes_path_prefix")
    op.drop_table("tree_nodes")
