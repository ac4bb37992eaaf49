"""create payment tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

transaction_status = sa.Enum("PENDING", "SUCCESS", "FAILED", name="transactionstatus")

def upgrade() -> None:
    op.create_table(
        "mpesa_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("checkout_request_id", sa.String(), nullable=True),
        sa.Column("merchant_request_id", sa.String(), nullable=True),
        sa.Column("phone_number", sa.String(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("service_type", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("status", transaction_status, nullable=False),
        sa.Column("result_code", sa.Integer(), nullable=True),
        sa.Column("result_desc", sa.String(), nullable=True),
        sa.Column("mpesa_receipt_number", sa.String(), nullable=True),
        sa.Column("transaction_date", sa.String(), nullable=True),
        sa.Column("extra", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_mpesa_transactions_id", "mpesa_transactions", ["id"])
    op.create_index("ix_mpesa_transactions_checkout_request_id", "mpesa_transactions", ["checkout_request_id"])
    op.create_index("ix_mpesa_transactions_merchant_request_id", "mpesa_transactions", ["merchant_request_id"])
    op.create_index("ix_mpesa_transactions_service_type", "mpesa_transactions", ["service_type"])
    op.create_index("ix_mpesa_transactions_user_id", "mpesa_transactions", ["user_id"])

    op.create_table(
        "mpesa_callback_results",
        sa.Column("checkout_request_id", sa.String(), nullable=False),
        sa.Column("merchant_request_id", sa.String(), nullable=True),
        sa.Column("result_code", sa.Integer(), nullable=True),
        sa.Column("result_desc", sa.String(), nullable=True),
        sa.Column("status", transaction_status, nullable=False),
        sa.Column("mpesa_receipt_number", sa.String(), nullable=True),
        sa.Column("transaction_date", sa.String(), nullable=True),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("phone_number", sa.String(), nullable=True),
        sa.Column("raw_payload", sa.Text(), nullable=False),
        sa.Column("received_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("checkout_request_id"),
    )
    op.create_index("ix_mpesa_callback_results_checkout_request_id", "mpesa_callback_results", ["checkout_request_id"])

    op.create_table(
        "service_pricing",
        sa.Column("service_type", sa.String(), nullable=False),
        sa.Column("continue_amount", sa.Float(), nullable=False),
        sa.Column("videos_amount", sa.Float(), nullable=False),
        sa.Column("post_service_amount", sa.Float(), nullable=False),
        sa.Column("job_application_amount", sa.Float(), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("service_type"),
    )
    op.create_index("ix_service_pricing_service_type", "service_pricing", ["service_type"])

    op.create_table(
        "whitelist_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("value", sa.String(), nullable=False),
        sa.Column("deleted", sa.Boolean(), nullable=False),
        sa.Column("added_at", sa.DateTime(), nullable=False),
        sa.Column("added_by", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

def downgrade() -> None:
    op.drop_table("whitelist_entries")
    op.drop_index("ix_service_pricing_service_type", table_name="service_pricing")
    op.drop_table("service_pricing")
    op.drop_index("ix_mpesa_callback_results_checkout_request_id", table_name="mpesa_callback_results")
    op.drop_table("mpesa_callback_results")
    for column in ("user_id", "service_type", "merchant_request_id", "checkout_request_id", "id"):
        op.drop_index(f"ix_mpesa_transactions_{column}", table_name="mpesa_transactions")
    op.drop_table("mpesa_transactions")
    transaction_status.drop(op.get_bind(), checkfirst=True)
