"""initial schema: projects, roster entries, draw records

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("creator_uid", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("config", sa.JSON(), nullable=True),
        sa.Column("config_version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('active','stopped','finished')",
            name=op.f("ck_projects_status_enum"),
        ),
        sa.CheckConstraint(
            "type IN ('roulette','queue')", name=op.f("ck_projects_type_enum")
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_projects")),
    )
    op.create_index("ix_projects_status", "projects", ["status"])
    op.create_index(op.f("ix_projects_creator_uid"), "projects", ["creator_uid"])

    op.create_table(
        "roulette_participants",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("entry_id", sa.String(length=32), nullable=False),
        sa.Column("project_id", ID_TYPE, nullable=False),
        sa.Column("uid", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "is_winner", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        sa.Column("queue_order", sa.Integer(), nullable=True),
        sa.CheckConstraint(
            "value >= 0 AND value <= 100",
            name=op.f("ck_roulette_participants_value_range"),
        ),
        sa.ForeignKeyConstraint(
            ["project_id"],
            ["projects.id"],
            name=op.f("fk_roulette_participants_project_id_projects"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_roulette_participants")),
        sa.UniqueConstraint(
            "entry_id", name=op.f("uq_roulette_participants_entry_id")
        ),
        sa.UniqueConstraint(
            "project_id", "uid", name="uq_roulette_participant_per_user"
        ),
    )
    op.create_index(
        "ix_roulette_participants_project_joined",
        "roulette_participants",
        ["project_id", "joined_at"],
    )

    op.create_table(
        "draw_records",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("project_id", ID_TYPE, nullable=False),
        sa.Column("seed", sa.BigInteger(), nullable=False),
        sa.Column("participant_count", sa.Integer(), nullable=False),
        sa.Column("config_version", sa.Integer(), nullable=False),
        sa.Column("config_snapshot", sa.JSON(), nullable=False),
        sa.Column("steps", sa.JSON(), nullable=False),
        sa.Column("winners", sa.JSON(), nullable=False),
        sa.Column("drawn_by_uid", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["project_id"],
            ["projects.id"],
            name=op.f("fk_draw_records_project_id_projects"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_draw_records")),
        sa.UniqueConstraint("project_id", name="uq_draw_records_project"),
    )


def downgrade() -> None:
    op.drop_table("draw_records")
    op.drop_index(
        "ix_roulette_participants_project_joined", table_name="roulette_participants"
    )
    op.drop_table("roulette_participants")
    op.drop_index(op.f("ix_projects_creator_uid"), table_name="projects")
    op.drop_index("ix_projects_status", table_name="projects")
    op.drop_table("projects")
