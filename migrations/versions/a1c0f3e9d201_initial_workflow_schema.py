"""initial_workflow_schema

Creates the intervention workflow tables:
  - users, buildings, lots, property_managers    people and property scope
  - interventions                                lifecycle state machine rows
  - intervention_assignments                     manager / provider / tenant links
  - intervention_time_slots                      proposed visit windows
  - intervention_quotes                          competing provider quotes
  - activity_logs                                append-only workflow trail
  - notifications                                in-app notification inbox

Tables are created conditionally (IF NOT EXISTS semantics) so the revision
can run against a database that already received them via db.create_all().

Revision ID: a1c0f3e9d201
Revises:
Create Date: 2026-10-19 09:12:40.118302
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1c0f3e9d201'
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=True)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── People & property scope ───────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("team_id", sa.Integer(), nullable=True),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False,
                      comment="manager | provider | tenant"),
            sa.Column("push_token", sa.String(length=300), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_users_team_id", "users", ["team_id"])

    if "buildings" not in existing:
        op.create_table(
            "buildings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("team_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_buildings_team_id", "buildings", ["team_id"])

    if "lots" not in existing:
        op.create_table(
            "lots",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("building_id", sa.Integer(), nullable=True),
            sa.Column("reference", sa.String(length=100), nullable=False),
            sa.ForeignKeyConstraint(["building_id"], ["buildings.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_lots_building_id", "lots", ["building_id"])

    if "property_managers" not in existing:
        op.create_table(
            "property_managers",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("building_id", sa.Integer(), nullable=True),
            sa.Column("lot_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["building_id"], ["buildings.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["lot_id"], ["lots.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_property_manager_building", "property_managers", ["building_id"])
        op.create_index("idx_property_manager_lot", "property_managers", ["lot_id"])

    # ── Interventions ─────────────────────────────────────────────────────
    if "interventions" not in existing:
        op.create_table(
            "interventions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("team_id", sa.Integer(), nullable=False),
            sa.Column("lot_id", sa.Integer(), nullable=True),
            sa.Column("building_id", sa.Integer(), nullable=True),
            sa.Column("parent_intervention_id", sa.Integer(), nullable=True,
                      comment="Set only on children produced by a multi-provider split"),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False,
                      server_default="pending"),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("requires_participant_confirmation", sa.Boolean(), nullable=False,
                      server_default=sa.false()),
            sa.Column("assignment_mode", sa.String(length=20), nullable=False,
                      server_default="single", comment="single | group | separate"),
            sa.Column("selected_quote_id", sa.Integer(), nullable=True),
            sa.Column("manager_comment", sa.Text(), nullable=True),
            sa.Column("internal_comment", sa.Text(), nullable=True),
            sa.Column("cancellation_reason", sa.Text(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("provider_report", sa.Text(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("split_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["lot_id"], ["lots.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["building_id"], ["buildings.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["parent_intervention_id"], ["interventions.id"],
                                    ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_interventions_team_id", "interventions", ["team_id"])
        op.create_index("ix_interventions_parent_intervention_id", "interventions",
                        ["parent_intervention_id"])
        op.create_index("idx_intervention_team_status", "interventions", ["team_id", "status"])

    if "intervention_assignments" not in existing:
        op.create_table(
            "intervention_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("intervention_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=20), nullable=False),
            sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("requires_confirmation", sa.Boolean(), nullable=False,
                      server_default=sa.false()),
            sa.Column("confirmation_status", sa.String(length=20), nullable=False,
                      server_default="not_required"),
            sa.Column("provider_instructions", sa.Text(), nullable=True),
            sa.Column("assigned_by", sa.Integer(), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["intervention_id"], ["interventions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("intervention_id", "user_id", "role", name="uq_assignment_user_role"),
        )
        op.create_index("idx_assignment_intervention_role", "intervention_assignments",
                        ["intervention_id", "role"])

    if "intervention_time_slots" not in existing:
        op.create_table(
            "intervention_time_slots",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("intervention_id", sa.Integer(), nullable=False),
            sa.Column("provider_id", sa.Integer(), nullable=True),
            sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("proposed_by", sa.Integer(), nullable=True),
            sa.Column("is_selected", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.ForeignKeyConstraint(["intervention_id"], ["interventions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["provider_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_intervention_time_slots_intervention_id", "intervention_time_slots",
                        ["intervention_id"])

    # ── Quotes ────────────────────────────────────────────────────────────
    if "intervention_quotes" not in existing:
        op.create_table(
            "intervention_quotes",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("intervention_id", sa.Integer(), nullable=False),
            sa.Column("provider_id", sa.Integer(), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending",
                      comment="pending | sent | accepted | rejected | cancelled"),
            sa.Column("validated_by", sa.Integer(), nullable=True),
            sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("review_comments", sa.Text(), nullable=True),
            _created_at(),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["intervention_id"], ["interventions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["provider_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_quote_intervention_status", "intervention_quotes",
                        ["intervention_id", "status"])

    # ── Activity & notifications ──────────────────────────────────────────
    if "activity_logs" not in existing:
        op.create_table(
            "activity_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("team_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.Integer(), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_activity_entity", "activity_logs", ["entity_type", "entity_id"])
        op.create_index("idx_activity_team", "activity_logs", ["team_id"])
        op.create_index("idx_activity_ts", "activity_logs", ["timestamp"])

    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("team_id", sa.Integer(), nullable=True),
            sa.Column("type", sa.String(length=40), nullable=False, server_default="system"),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_team_id", "notifications", ["team_id"])
        op.create_index("idx_notification_user_read", "notifications", ["user_id", "is_read"])


def downgrade():
    for table in (
        "notifications",
        "activity_logs",
        "intervention_quotes",
        "intervention_time_slots",
        "intervention_assignments",
        "interventions",
        "property_managers",
        "lots",
        "buildings",
        "users",
    ):
        op.drop_table(table)
