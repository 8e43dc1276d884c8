"""einvoice schema v1 - companies, contacts, invoices, sequence_counters

Revision ID: 20261018_einvoice_schema_v1
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "20261018_einvoice_schema_v1"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Schema v1 - invoicing tables"""

    op.create_table(
        "companies",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("party_json", sa.Text(), nullable=False),
        sa.Column("invoice_number_prefix", sa.String(length=32), nullable=False),
        sa.Column("cancellation_number_prefix", sa.String(length=32), nullable=False),
        sa.Column("logo_url", sa.Text(), nullable=True),
        sa.Column("payment_terms_days", sa.Integer(), server_default="30", nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("tenant_id", name="pk_companies"),
    )

    op.create_table(
        "contacts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("party_json", sa.Text(), nullable=False),
        sa.Column("invoice_number_prefix", sa.String(length=32), nullable=True),
        sa.Column("cancellation_number_prefix", sa.String(length=32), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_contacts"),
    )
    op.create_index("ix_contacts_tenant_id", "contacts", ["tenant_id"])

    # invoices: drafts, finalized invoices and cancellations
    op.create_table(
        "invoices",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("document_class", sa.String(length=16), nullable=False),
        sa.Column("invoice_number", sa.String(length=64), nullable=True),
        sa.Column("seller_ref_json", sa.Text(), nullable=False),
        sa.Column("buyer_ref_json", sa.Text(), nullable=True),
        sa.Column("seller_json", sa.Text(), nullable=True),
        sa.Column("buyer_json", sa.Text(), nullable=True),
        sa.Column("line_items_json", sa.Text(), nullable=False),
        sa.Column("invoice_date", sa.Date(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("service_date", sa.Date(), nullable=True),
        sa.Column("language", sa.String(length=8), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("intro_text", sa.Text(), nullable=True),
        sa.Column("outro_text", sa.Text(), nullable=True),
        sa.Column("buyer_reference", sa.String(length=255), nullable=True),
        sa.Column("recipient_email", sa.String(length=255), nullable=True),
        sa.Column("cancelled_invoice_id", sa.String(), nullable=True),
        sa.Column("subtotal", sa.String(length=32), nullable=True),
        sa.Column("vat_amount", sa.String(length=32), nullable=True),
        sa.Column("total_amount", sa.String(length=32), nullable=True),
        sa.Column("pdf_url", sa.Text(), nullable=True),
        sa.Column("xml_url", sa.Text(), nullable=True),
        sa.Column("finalization_lock", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("finalized_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_invoices"),
        sa.UniqueConstraint("cancelled_invoice_id", name="uq_invoices_cancelled_invoice_id"),
        sa.CheckConstraint(
            "status IN ('draft','created','sent','reminded','paid','cancelled')",
            name="ck_invoices__status_valid",
        ),
        sa.CheckConstraint(
            "document_class IN ('invoice','cancellation')",
            name="ck_invoices__document_class_valid",
        ),
    )
    op.create_index("ix_invoices_tenant_id", "invoices", ["tenant_id"])

    # one counter row per issuing identity and document class
    op.create_table(
        "sequence_counters",
        sa.Column("identity_key", sa.String(length=128), nullable=False),
        sa.Column("document_class", sa.String(length=16), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("prefix", sa.String(length=32), nullable=False),
        sa.Column("counter", sa.Integer(), server_default="0", nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("identity_key", "document_class", name="pk_sequence_counters"),
        sa.CheckConstraint("counter >= 0", name="ck_sequence_counters__counter_non_negative"),
    )


def downgrade() -> None:
    op.drop_table("sequence_counters")
    op.drop_index("ix_invoices_tenant_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_contacts_tenant_id", table_name="contacts")
    op.drop_table("contacts")
    op.drop_table("companies")
