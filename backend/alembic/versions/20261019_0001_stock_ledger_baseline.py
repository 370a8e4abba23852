"""stock ledger baseline: stock records, reservations, movement journal, idempotency

Revision ID: 20261019_0001
Revises: 
Create Date: 2026-10-19 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _has_table(inspector, "stock_records"):
        op.create_table(
            "stock_records",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("item_id", sa.String(length=64), nullable=False),
            sa.Column("location_id", sa.String(length=64), nullable=False),
            sa.Column("sku", sa.String(length=64), nullable=True),
            sa.Column("lot_number", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("serial_number", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("expiration_date", sa.Date(), nullable=True),
            sa.Column("quantity_on_hand", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("quantity_reserved", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("meta", sa.JSON(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("item_id", "location_id", "lot_number", "serial_number", name="uq_stock_record_key"),
        )
        op.create_index("ix_stock_records_item_id", "stock_records", ["item_id"])
        op.create_index("ix_stock_records_location_id", "stock_records", ["location_id"])
        op.create_index("ix_stock_records_sku", "stock_records", ["sku"])

    if not _has_table(inspector, "reservations"):
        op.create_table(
            "reservations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "stock_record_id",
                sa.Integer(),
                sa.ForeignKey("stock_records.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("location_id", sa.String(length=64), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("reserved_by", sa.String(length=64), nullable=False),
            sa.Column("reference_type", sa.String(length=16), nullable=True),
            sa.Column("reference_id", sa.String(length=64), nullable=True),
            sa.Column("reference_name", sa.String(length=128), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("status_reason", sa.String(length=256), nullable=True),
            sa.Column("released_at", sa.DateTime(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        for column in ("stock_record_id", "location_id", "reserved_by", "reference_id", "expires_at", "status"):
            op.create_index(f"ix_reservations_{column}", "reservations", [column])

    if not _has_table(inspector, "movements"):
        op.create_table(
            "movements",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("movement_type", sa.String(length=32), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="completed"),
            sa.Column("item_id", sa.String(length=64), nullable=False),
            sa.Column("location_id", sa.String(length=64), nullable=False),
            sa.Column("stock_record_id", sa.Integer(), nullable=True),
            sa.Column("reservation_id", sa.Integer(), nullable=True),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("source_location_id", sa.String(length=64), nullable=True),
            sa.Column("destination_location_id", sa.String(length=64), nullable=True),
            sa.Column("reference_type", sa.String(length=32), nullable=True),
            sa.Column("reference_id", sa.String(length=64), nullable=True),
            sa.Column("reason", sa.String(length=256), nullable=True),
            sa.Column("performed_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
        )
        for column in (
            "movement_type",
            "status",
            "item_id",
            "location_id",
            "stock_record_id",
            "reservation_id",
            "reference_id",
            "created_at",
        ):
            op.create_index(f"ix_movements_{column}", "movements", [column])

    if not _has_table(inspector, "idempotency_records"):
        op.create_table(
            "idempotency_records",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("operator", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("method", sa.String(length=16), nullable=False),
            sa.Column("path", sa.String(length=128), nullable=False),
            sa.Column("idempotency_key", sa.String(length=128), nullable=False),
            sa.Column("request_hash", sa.String(length=128), nullable=False),
            sa.Column("status_code", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("response_body", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("operator", "method", "path", "idempotency_key", name="uq_idempotency_scope"),
        )
        op.create_index("ix_idempotency_records_idempotency_key", "idempotency_records", ["idempotency_key"])


def downgrade() -> None:
    op.drop_table("idempotency_records")
    op.drop_table("movements")
    op.drop_table("reservations")
    op.drop_table("stock_records")
