"""Initial pharmacy POS schema: pharmacies, medications, prescriptions, orders

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "pharmacies",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "medications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("pharmacy_id", sa.Integer(), nullable=False),
        sa.Column("upc", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=True),
        sa.Column("lot", sa.String(64), nullable=True),
        sa.Column("expires_on", sa.Date(), nullable=True),
        sa.Column("units", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_movement_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["pharmacy_id"], ["pharmacies.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pharmacy_id", "upc", name="uq_medications_pharmacy_upc"),
        sa.CheckConstraint("units >= 0", name="ck_medications_units_non_negative"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("medications", schema=None) as batch_op:
        batch_op.create_index("ix_medications_pharmacy_id", ["pharmacy_id"], unique=False)
        batch_op.create_index("ix_medications_pharmacy_name", ["pharmacy_id", "name"], unique=False)

    op.create_table(
        "prescriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=True),
        sa.Column("pharmacy_id", sa.Integer(), nullable=True),
        sa.Column("dispensing_status", sa.String(16), nullable=False, server_default="not_dispensed"),
        sa.Column("dispensed_detail", sa.JSON(), nullable=True),
        sa.Column("dispensed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["pharmacy_id"], ["pharmacies.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("prescriptions", schema=None) as batch_op:
        batch_op.create_index("ix_prescriptions_patient_id", ["patient_id"], unique=False)
        batch_op.create_index("ix_prescriptions_pharmacy_id", ["pharmacy_id"], unique=False)
        batch_op.create_index("ix_prescriptions_dispensing_status", ["dispensing_status"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("pharmacy_id", sa.Integer(), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=True),
        sa.Column("buy_without_account", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("cashier_id", sa.Integer(), nullable=True),
        sa.Column("cash_session_id", sa.Integer(), nullable=True),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("requested_method", sa.String(16), nullable=False),
        sa.Column("confirmed_method", sa.String(64), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("card_reference", sa.String(128), nullable=True),
        sa.Column("gateway_preference_id", sa.String(128), nullable=True),
        sa.Column("gateway_payment_id", sa.String(64), nullable=True),
        sa.Column("prescription_id", sa.Integer(), nullable=True),
        sa.Column("prescription_update", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stock_deducted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["pharmacy_id"], ["pharmacies.id"]),
        sa.ForeignKeyConstraint(["prescription_id"], ["prescriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_pharmacy_id", ["pharmacy_id"], unique=False)
        batch_op.create_index("ix_orders_patient_id", ["patient_id"], unique=False)
        batch_op.create_index("ix_orders_cashier_id", ["cashier_id"], unique=False)
        batch_op.create_index("ix_orders_cash_session_id", ["cash_session_id"], unique=False)
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_orders_gateway_payment_id", ["gateway_payment_id"], unique=False)
        batch_op.create_index("ix_orders_prescription_id", ["prescription_id"], unique=False)
        batch_op.create_index("ix_orders_pharmacy_status_created", ["pharmacy_id", "status", "created_at"], unique=False)

    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", "line_number", name="uq_order_lines_order_line"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("order_lines", schema=None) as batch_op:
        batch_op.create_index("ix_order_lines_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_lines_sku", ["sku"], unique=False)

    op.create_table(
        "order_notes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("order_notes", schema=None) as batch_op:
        batch_op.create_index("ix_order_notes_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_notes_code", ["code"], unique=False)
        batch_op.create_index("ix_order_notes_order_created", ["order_id", "created_at"], unique=False)


def downgrade():
    op.drop_table("order_notes")
    op.drop_table("order_lines")
    op.drop_table("orders")
    op.drop_table("prescriptions")
    op.drop_table("medications")
    op.drop_table("pharmacies")
