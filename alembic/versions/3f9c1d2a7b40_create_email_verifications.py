"""create email_verifications

Revision ID: 3f9c1d2a7b40
Revises:
Create Date: 2025-11-03 09:12:44.180233

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9c1d2a7b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "email_verifications",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("email", sa.Text(), nullable=False),
        # stored as the enum name, matching models.VerificationPurpose
        sa.Column("purpose", sa.String(length=32), nullable=False),
        sa.Column("code", sa.String(length=12), nullable=False),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("blocked_until", sa.TIMESTAMP(), nullable=True),
        sa.Column("expires_at", sa.TIMESTAMP(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(), nullable=False, server_default=sa.func.now()),
        sa.Column("verified_at", sa.TIMESTAMP(), nullable=True),
    )

    # latest-record lookup: WHERE email, purpose ORDER BY created_at DESC
    op.create_index(
        "ix_email_verifications_email_purpose_created",
        "email_verifications",
        ["email", "purpose", "created_at"],
        unique=False,
    )
    # retention sweeps
    op.create_index("ix_email_verifications_expires_at", "email_verifications", ["expires_at"])
    op.create_index("ix_email_verifications_created_at", "email_verifications", ["created_at"])


def downgrade():
    op.drop_index("ix_email_verifications_created_at", table_name="email_verifications")
    op.drop_index("ix_email_verifications_expires_at", table_name="email_verifications")
    op.drop_index("ix_email_verifications_email_purpose_created", table_name="email_verifications")
    op.drop_table("email_verifications")
