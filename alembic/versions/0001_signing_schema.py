"""signing schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

SIGNING_STATUSES = ("draft", "sent", "opened", "signed", "expired", "cancelled")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("first_name", sa.String(), nullable=False),
        sa.Column("last_name", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("hashed_password", sa.String(), nullable=False),
        sa.Column("whatsapp_authorized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_phone", "users", ["phone"])

    op.create_table(
        "companies",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_companies_id", "companies", ["id"])

    op.create_table(
        "user_company_assignments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("company_id", sa.Uuid(), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="member"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("user_id", "company_id", name="uq_user_company"),
    )
    op.create_index("ix_user_company_assignments_id", "user_company_assignments", ["id"])
    op.create_index("ix_user_company_assignments_user_id", "user_company_assignments", ["user_id"])
    op.create_index("ix_user_company_assignments_company_id", "user_company_assignments", ["company_id"])

    op.create_table(
        "signing_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("company_id", sa.Uuid(), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_by", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("file_url", sa.Text(), nullable=False),
        sa.Column("file_type", sa.String(), nullable=True),
        sa.Column("fields", sa.JSON(), nullable=False),
        sa.Column("recipient_name", sa.String(), nullable=True),
        sa.Column("recipient_phone", sa.String(), nullable=False),
        sa.Column("recipient_email", sa.String(), nullable=True),
        sa.Column("access_token", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*SIGNING_STATUSES, name="signingstatus", native_enum=False, length=16),
            nullable=False,
            server_default="draft",
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("whatsapp_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_file_url", sa.Text(), nullable=True),
        sa.Column("signed_field_values", sa.JSON(), nullable=True),
        sa.Column("signer_ip", sa.String(), nullable=True),
        sa.Column("signer_user_agent", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_signing_requests_id", "signing_requests", ["id"])
    op.create_index("ix_signing_requests_company_id", "signing_requests", ["company_id"])
    op.create_index("ix_signing_requests_created_by", "signing_requests", ["created_by"])
    op.create_index("ix_signing_requests_access_token", "signing_requests", ["access_token"], unique=True)

    op.create_table(
        "signing_audit_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "signing_request_id",
            sa.Uuid(),
            sa.ForeignKey("signing_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_signing_audit_log_id", "signing_audit_log", ["id"])
    op.create_index("ix_signing_audit_log_signing_request_id", "signing_audit_log", ["signing_request_id"])

    op.create_table(
        "scanned_documents",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("company_id", sa.Uuid(), sa.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("uploaded_by", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("file_url", sa.Text(), nullable=False),
        sa.Column("file_type", sa.String(), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending_scan"),
        sa.Column("source", sa.String(), nullable=False, server_default="whatsapp"),
        sa.Column("whatsapp_chat_id", sa.String(), nullable=True),
        sa.Column("whatsapp_message_id", sa.String(), nullable=True),
        sa.Column("whatsapp_sender_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_scanned_documents_id", "scanned_documents", ["id"])
    op.create_index("ix_scanned_documents_company_id", "scanned_documents", ["company_id"])
    op.create_index(
        "ix_scanned_documents_whatsapp_message_id", "scanned_documents", ["whatsapp_message_id"], unique=True
    )

    op.create_table(
        "whatsapp_pending_selections",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("chat_id", sa.String(), nullable=False),
        sa.Column("phone_number", sa.String(), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("organizations", sa.JSON(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("file_storage_path", sa.Text(), nullable=False),
        sa.Column("media_type", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_whatsapp_pending_selections_id", "whatsapp_pending_selections", ["id"])
    op.create_index("ix_whatsapp_pending_selections_chat_id", "whatsapp_pending_selections", ["chat_id"])


def downgrade() -> None:
    op.drop_table("whatsapp_pending_selections")
    op.drop_table("scanned_documents")
    op.drop_table("signing_audit_log")
    op.drop_table("signing_requests")
    op.drop_table("user_company_assignments")
    op.drop_table("companies")
    op.drop_table("users")
