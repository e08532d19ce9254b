"""Create emission tables

Revision ID: 20251018_emission_schema
Revises:
Create Date: 2025-10-18 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20251018_emission_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "clients",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("identification_type", sa.String(8), nullable=False),
        sa.Column("identification_number", sa.String(32), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("person_type", sa.String(16), nullable=False, server_default="natural"),
        sa.Column("tax_regime", sa.String(64)),
        sa.Column("verification_digit", sa.String(2)),
        sa.Column("company", sa.Text()),
        sa.Column("trade_name", sa.Text()),
        sa.Column("address", sa.Text()),
        sa.Column("email", sa.Text()),
        sa.Column("phone", sa.String(32)),
        sa.Column("city_code", sa.String(8)),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("unit_measure", sa.String(8), nullable=False, server_default="UND"),
        sa.Column("kind", sa.String(16), nullable=False, server_default="producto"),
        sa.Column("applies_iva", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("unspsc_code", sa.String(16)),
    )

    op.create_table(
        "documents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("doc_type", sa.String(16), nullable=False),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date()),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("clients.id")),
        sa.Column("original_document_id", sa.Integer(), sa.ForeignKey("documents.id")),
        sa.Column("number", sa.String(64)),
        sa.Column("prefix", sa.String(16)),
        sa.Column("consecutive", sa.Integer()),
        sa.Column("operation_type", sa.String(32)),
        sa.Column("payment_form", sa.String(32)),
        sa.Column("payment_method", sa.String(32)),
        sa.Column("observations", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        sa.Column("external_id", sa.String(64)),
        sa.Column("external_bill_id", sa.Integer()),
        sa.Column("cufe", sa.Text()),
        sa.Column("qr", sa.Text()),
        sa.Column("public_url", sa.Text()),
        sa.Column("pdf_url", sa.Text()),
        sa.Column("xml_url", sa.Text()),
        sa.Column("attempt_counter", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_response", sa.JSON()),
        sa.Column("errors", sa.JSON()),
        sa.Column("submitted_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("last_attempt_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("correction_concept", sa.String(32)),
        sa.Column("billing_period_start", sa.Date()),
        sa.Column("billing_period_end", sa.Date()),
    )
    op.create_index("ix_documents_status", "documents", ["status"])
    op.create_index("ix_documents_external_id", "documents", ["external_id"])

    op.create_table(
        "document_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "document_id",
            sa.Integer(),
            sa.ForeignKey("documents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 4), nullable=False),
        sa.Column("unit_price", sa.Numeric(18, 2), nullable=False),
        sa.Column("discount_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("tax_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("code", sa.String(64)),
        sa.Column("name", sa.Text()),
    )
    op.create_index("ix_document_items_document_id", "document_items", ["document_id"])

    op.create_table(
        "numbering_ranges",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("doc_type", sa.String(16), nullable=False),
        sa.Column("prefix", sa.String(16), nullable=False),
        sa.Column("lower_bound", sa.Integer(), nullable=False),
        sa.Column("upper_bound", sa.Integer(), nullable=False),
        sa.Column("counter", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("external_id", sa.Integer()),
        sa.Column("resolution", sa.Text()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_numbering_ranges_doc_type_active", "numbering_ranges", ["doc_type", "active"]
    )

    op.create_table(
        "emission_credentials",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("base_url", sa.Text(), nullable=False),
        sa.Column("client_id", sa.Text(), nullable=False),
        sa.Column("client_secret", sa.Text(), nullable=False),
        sa.Column("username", sa.Text(), nullable=False),
        sa.Column("password", sa.Text(), nullable=False),
        sa.Column("environment", sa.String(16), nullable=False, server_default="sandbox"),
        sa.Column("access_token", sa.Text()),
        sa.Column("token_expires_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("refresh_token", sa.Text()),
    )


def downgrade() -> None:
    op.drop_table("emission_credentials")
    op.drop_index("ix_numbering_ranges_doc_type_active", table_name="numbering_ranges")
    op.drop_table("numbering_ranges")
    op.drop_index("ix_document_items_document_id", table_name="document_items")
    op.drop_table("document_items")
    op.drop_index("ix_documents_external_id", table_name="documents")
    op.drop_index("ix_documents_status", table_name="documents")
    op.drop_table("documents")
    op.drop_table("products")
    op.drop_table("clients")
