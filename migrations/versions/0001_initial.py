"""users, db instances and access requests

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users_table",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="developer"),
        sa.Column(
            "team_lead_id",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_users_table_email", "users_table", ["email"], unique=True)
    op.create_index("ix_users_table_role", "users_table", ["role"])

    op.create_table(
        "db_instances",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("encoded_connection_target", sa.Text(), nullable=False),
        sa.Column("database_name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column(
            "created_by_id",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index("ix_db_instances_name", "db_instances", ["name"], unique=True)
    op.create_index("ix_db_instances_is_active", "db_instances", ["is_active"])

    op.create_table(
        "access_requests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "developer_id",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "team_lead_id",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "db_instance_id",
            sa.Integer(),
            sa.ForeignKey("db_instances.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("db_instance_name", sa.String(), nullable=False),
        sa.Column("collection_name", sa.String(), nullable=False),
        sa.Column("query_type", sa.String(), nullable=False),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("review_comment", sa.Text(), nullable=True),
        sa.Column(
            "reviewed_by_id",
            sa.Integer(),
            sa.ForeignKey("users_table.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("execution_result", sa.JSON(none_as_null=True), nullable=True),
        sa.Column("execution_error", sa.Text(), nullable=True),
        sa.Column("result_truncated", sa.Boolean(), nullable=False),
        sa.Column("auto_executed", sa.Boolean(), nullable=False),
        sa.Column(
            "resubmitted_from_id",
            sa.Integer(),
            sa.ForeignKey("access_requests.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("decided_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("executed_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index("ix_access_requests_developer_id", "access_requests", ["developer_id"])
    op.create_index("ix_access_requests_team_lead_id", "access_requests", ["team_lead_id"])
    op.create_index("ix_access_requests_db_instance_id", "access_requests", ["db_instance_id"])
    op.create_index("ix_access_requests_collection_name", "access_requests", ["collection_name"])
    op.create_index("ix_access_requests_status", "access_requests", ["status"])
    op.create_index("ix_access_requests_created_at", "access_requests", ["created_at"])


def downgrade():
    op.drop_table("access_requests")
    op.drop_table("db_instances")
    op.drop_table("users_table")
