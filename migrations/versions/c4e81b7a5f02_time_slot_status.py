"""time_slot_status

Replaces intervention_time_slots.is_selected with a status column
(pending | selected | cancelled) and records who cancelled a slot and when.
Existing selected slots are carried over as status='selected'.

Columns are only touched when missing, so the revision is a no-op on a
database whose tables came from db.create_all().

Revision ID: c4e81b7a5f02
Revises: a1c0f3e9d201
Create Date: 2026-10-19 15:40:02.774913
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'c4e81b7a5f02'
down_revision = 'a1c0f3e9d201'
branch_labels = None
depends_on = None


def _columns(table):
    return {c["name"] for c in sa_inspect(op.get_bind()).get_columns(table)}


def upgrade():
    columns = _columns("intervention_time_slots")
    if "status" in columns:
        return

    with op.batch_alter_table("intervention_time_slots", schema=None) as batch_op:
        batch_op.add_column(sa.Column("status", sa.String(length=20), nullable=False,
            server_default="pending", comment="pending | selected | cancelled"))
        batch_op.add_column(sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True))
        batch_op.add_column(sa.Column("cancelled_by", sa.Integer(), nullable=True))
        batch_op.add_column(sa.Column("created_at", sa.DateTime(timezone=True), nullable=True))

    if "is_selected" in columns:
        op.execute(
            "UPDATE intervention_time_slots SET status = 'selected' WHERE is_selected = true"
        )
        with op.batch_alter_table("intervention_time_slots", schema=None) as batch_op:
            batch_op.drop_column("is_selected")

    op.create_index("idx_time_slot_intervention_status", "intervention_time_slots",
                    ["intervention_id", "status"])


def downgrade():
    op.drop_index("idx_time_slot_intervention_status", table_name="intervention_time_slots")
    with op.batch_alter_table("intervention_time_slots", schema=None) as batch_op:
        batch_op.add_column(sa.Column("is_selected", sa.Boolean(), nullable=False,
            server_default=sa.false()))
    op.execute(
        "UPDATE intervention_time_slots SET is_selected = true WHERE status = 'selected'"
    )
    with op.batch_alter_table("intervention_time_slots", schema=None) as batch_op:
        batch_op.drop_column("created_at")
        batch_op.drop_column("cancelled_by")
        batch_op.drop_column("cancelled_at")
        batch_op.drop_column("status")
