"""sessions and link sync

Revision ID: 7c3e52a91f04
Revises:
Create Date: 2026-10-19 10:42:17.318204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "7c3e52a91f04"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "atproto_sessions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_did", sa.String(512), nullable=False),
        sa.Column("handle", sa.String(512), nullable=True),
        sa.Column("access_token", sa.Text, nullable=False),
        sa.Column("refresh_token", sa.Text, nullable=True),
        sa.Column("dpop_keypair", sa.Text, nullable=False),
        sa.Column("pds_url", sa.String(512), nullable=False),
        sa.Column("auth_server_url", sa.String(512), nullable=False),
        sa.Column("scope", sa.String(512), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auth_server_nonce", sa.String(512), nullable=True),
        sa.Column("resource_server_nonce", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_atproto_sessions_user_did", "atproto_sessions", ["user_did"], unique=True
    )
    op.create_index(
        "idx_atproto_sessions_expires", "atproto_sessions", ["expires_at"]
    )

    # `links` is created by the ingestion pipeline.
    op.add_column("links", sa.Column("at_uri", sa.String(512), nullable=True))
    op.add_column(
        "links", sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True)
    )
    op.add_column("links", sa.Column("sync_status", sa.String(32), nullable=True))
    op.create_index("idx_links_sync_status", "links", ["sync_status", "score"])


def downgrade() -> None:
    op.drop_index("idx_links_sync_status", "links")
    op.drop_column("links", "sync_status")
    op.drop_column("links", "synced_at")
    op.drop_column("links", "at_uri")

    op.drop_table("atproto_sessions")
