"""initial billing schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-02-12
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    # Identity: apps, their JWT signing secrets, users, teams, and billing entities.
    op.create_table(
        "apps",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        _created_at(),
    )
    op.create_table(
        "app_secrets",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("app_id", sa.String(), sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("kid", sa.String(), nullable=False, unique=True),
        sa.Column("secret_encrypted", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="ACTIVE"),
        _created_at(),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_app_secrets_app_id", "app_secrets", ["app_id"], unique=False)

    op.create_table(
        "teams",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("app_id", sa.String(), sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False, server_default="STANDARD"),
        sa.Column("billing_mode", sa.String(), nullable=False, server_default="SUBSCRIPTION"),
        sa.Column("owner_user_id", sa.String(), nullable=True),
        sa.Column("external_team_id", sa.String(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("app_id", "external_team_id", name="uq_teams_app_external"),
    )
    op.create_index("ix_teams_app_id", "teams", ["app_id"], unique=False)
    op.create_index("ix_teams_owner_user_id", "teams", ["owner_user_id"], unique=False)

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("app_id", sa.String(), sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("external_ref", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("app_id", "external_ref", name="uq_users_app_external_ref"),
    )
    op.create_index("ix_users_app_id", "users", ["app_id"], unique=False)

    op.create_table(
        "team_members",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("team_id", sa.String(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="MEMBER"),
        sa.Column("status", sa.String(), nullable=False, server_default="ACTIVE"),
        _created_at(),
        sa.UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
    )
    op.create_index("ix_team_members_team_id", "team_members", ["team_id"], unique=False)
    op.create_index("ix_team_members_user_id", "team_members", ["user_id"], unique=False)

    op.create_table(
        "billing_entities",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("type", sa.String(), nullable=False, server_default="TEAM"),
        sa.Column("team_id", sa.String(), sa.ForeignKey("teams.id"), nullable=False, unique=True),
        _created_at(),
    )

    # Catalog: bundles with per-app feature flags and meter policies.
    op.create_table(
        "bundles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("code", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="ACTIVE"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "bundle_apps",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("bundle_id", sa.String(), sa.ForeignKey("bundles.id"), nullable=False),
        sa.Column("app_id", sa.String(), sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("default_feature_flags", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.UniqueConstraint("bundle_id", "app_id", name="uq_bundle_apps_bundle_app"),
    )
    op.create_index("ix_bundle_apps_bundle_id", "bundle_apps", ["bundle_id"], unique=False)
    op.create_index("ix_bundle_apps_app_id", "bundle_apps", ["app_id"], unique=False)

    op.create_table(
        "bundle_meter_policies",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("bundle_id", sa.String(), sa.ForeignKey("bundles.id"), nullable=False),
        sa.Column("app_id", sa.String(), sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("meter_key", sa.String(), nullable=False),
        sa.Column("limit_type", sa.String(), nullable=False, server_default="NONE"),
        sa.Column("included_amount", sa.BigInteger(), nullable=True),
        sa.Column("enforcement", sa.String(), nullable=False, server_default="NONE"),
        sa.Column("overage_billing", sa.String(), nullable=False, server_default="NONE"),
        sa.Column("unit_price_minor", sa.Numeric(20, 6), nullable=True),
        sa.Column("overage_tiers", postgresql.JSONB(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.UniqueConstraint("bundle_id", "app_id", "meter_key", name="uq_bundle_meter_policies_key"),
    )
    op.create_index("ix_bundle_meter_policies_bundle_id", "bundle_meter_policies", ["bundle_id"], unique=False)
    op.create_index("ix_bundle_meter_policies_app_id", "bundle_meter_policies", ["app_id"], unique=False)

    # Contracts bind a billing entity to bundles with per-meter overrides.
    op.create_table(
        "contracts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("billing_entity_id", sa.String(), sa.ForeignKey("billing_entities.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="DRAFT"),
        sa.Column("currency", sa.String(), nullable=False, server_default="usd"),
        sa.Column("billing_period", sa.String(), nullable=False, server_default="MONTHLY"),
        sa.Column("terms_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("base_fee_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("requires_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_contracts_billing_entity_id", "contracts", ["billing_entity_id"], unique=False)
    op.create_index(
        "uq_contracts_active_billing_entity",
        "contracts",
        ["billing_entity_id"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )
    op.create_table(
        "contract_bundles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("contract_id", sa.String(), sa.ForeignKey("contracts.id"), nullable=False),
        sa.Column("bundle_id", sa.String(), sa.ForeignKey("bundles.id"), nullable=False),
        sa.UniqueConstraint("contract_id", "bundle_id", name="uq_contract_bundles_pair"),
    )
    op.create_index("ix_contract_bundles_contract_id", "contract_bundles", ["contract_id"], unique=False)
    op.create_index("ix_contract_bundles_bundle_id", "contract_bundles", ["bundle_id"], unique=False)
    op.create_table(
        "contract_overrides",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("contract_id", sa.String(), sa.ForeignKey("contracts.id"), nullable=False),
        sa.Column("app_id", sa.String(), sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("meter_key", sa.String(), nullable=False),
        sa.Column("limit_type", sa.String(), nullable=True),
        sa.Column("included_amount", sa.BigInteger(), nullable=True),
        sa.Column("enforcement", sa.String(), nullable=True),
        sa.Column("overage_billing", sa.String(), nullable=True),
        sa.Column("unit_price_minor", sa.Numeric(20, 6), nullable=True),
        sa.Column("overage_tiers", postgresql.JSONB(), nullable=True),
        sa.Column("feature_flags", postgresql.JSONB(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.UniqueConstraint("contract_id", "app_id", "meter_key", name="uq_contract_overrides_key"),
    )
    op.create_index("ix_contract_overrides_contract_id", "contract_overrides", ["contract_id"], unique=False)

    # Usage events are append-only and deduplicated per app by idempotency key.
    op.create_table(
        "usage_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("app_id", sa.String(), sa.ForeignKey("apps.id"), nullable=False),
        sa.Column("team_id", sa.String(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column("billing_entity_id", sa.String(), sa.ForeignKey("billing_entities.id"), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("meter_key", sa.String(), nullable=False),
        sa.Column("quantity", sa.BigInteger(), nullable=False),
        sa.Column("cost_minor", sa.BigInteger(), nullable=True),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.UniqueConstraint("app_id", "idempotency_key", name="uq_usage_events_idempotency"),
    )
    op.create_index("ix_usage_events_app_id", "usage_events", ["app_id"], unique=False)
    op.create_index("ix_usage_events_team_time", "usage_events", ["team_id", "occurred_at"], unique=False)
    op.create_index(
        "ix_usage_events_entity_time", "usage_events", ["billing_entity_id", "occurred_at"], unique=False
    )

    # Invoices, line items, and the period-close claims that arbitrate their creation.
    op.create_table(
        "invoices",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("billing_entity_id", sa.String(), sa.ForeignKey("billing_entities.id"), nullable=False),
        sa.Column("team_id", sa.String(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column("contract_id", sa.String(), sa.ForeignKey("contracts.id"), nullable=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="DRAFT"),
        sa.Column("currency", sa.String(), nullable=False, server_default="usd"),
        sa.Column("subtotal_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("requires_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("external_ref", sa.String(), nullable=True, unique=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_invoices_team_id", "invoices", ["team_id"], unique=False)
    op.create_index(
        "ix_invoices_entity_period", "invoices", ["billing_entity_id", "period_start", "period_end"], unique=False
    )
    op.create_index(
        "uq_invoices_contract_period_live",
        "invoices",
        ["contract_id", "period_start", "period_end"],
        unique=True,
        postgresql_where=sa.text("status <> 'VOID'"),
    )
    op.create_index(
        "uq_invoices_entity_period_uncontracted",
        "invoices",
        ["billing_entity_id", "period_start", "period_end"],
        unique=True,
        postgresql_where=sa.text("contract_id IS NULL AND status <> 'VOID'"),
    )
    op.create_table(
        "invoice_line_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("invoice_id", sa.String(), sa.ForeignKey("invoices.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("app_id", sa.String(), nullable=True),
        sa.Column("meter_key", sa.String(), nullable=True),
        sa.Column("charge_type", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("quantity", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("unit_price_minor", sa.String(), nullable=False, server_default="0"),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("flagged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("flag_reason", sa.String(), nullable=True),
        sa.Column("usage_summary", postgresql.JSONB(), nullable=False, server_default="{}"),
    )
    op.create_index("ix_invoice_line_items_invoice_id", "invoice_line_items", ["invoice_id"], unique=False)
    op.create_table(
        "ledger_accounts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("app_id", sa.String(), nullable=False),
        sa.Column("billing_entity_id", sa.String(), sa.ForeignKey("billing_entities.id"), nullable=False),
        sa.Column("account_type", sa.String(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("app_id", "billing_entity_id", "account_type", name="uq_ledger_accounts_owner_type"),
    )
    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("app_id", sa.String(), nullable=False),
        sa.Column("billing_entity_id", sa.String(), sa.ForeignKey("billing_entities.id"), nullable=False),
        sa.Column("ledger_account_id", sa.String(), sa.ForeignKey("ledger_accounts.id"), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("reference_type", sa.String(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False, server_default="{}"),
        _created_at(),
        sa.UniqueConstraint("idempotency_key", name="uq_ledger_entries_idempotency"),
    )
    op.create_index(
        "ix_ledger_entries_entity_time", "ledger_entries", ["billing_entity_id", "occurred_at"], unique=False
    )
    op.create_index(
        "ix_ledger_entries_account_time", "ledger_entries", ["ledger_account_id", "occurred_at"], unique=False
    )
    op.create_table(
        "period_close_claims",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("contract_id", sa.String(), sa.ForeignKey("contracts.id"), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="CLAIMED"),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invoice_id", sa.String(), nullable=True),
        sa.UniqueConstraint("contract_id", "period_start", "period_end", name="uq_period_close_claims_period"),
    )
    op.create_index("ix_period_close_claims_contract_id", "period_close_claims", ["contract_id"], unique=False)

    # Payment processor state: webhook dedup, subscriptions, and client token replay guard.
    op.create_table(
        "stripe_webhook_events",
        sa.Column("event_id", sa.String(), primary_key=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "team_subscriptions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("team_id", sa.String(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(), nullable=False, unique=True),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("plan_code", sa.String(), nullable=True),
        sa.Column("seats_quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_team_subscriptions_team_id", "team_subscriptions", ["team_id"], unique=False)
    op.create_table(
        "jti_usages",
        sa.Column("jti", sa.String(), primary_key=True),
        sa.Column("app_id", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_jti_usages_expires_at", "jti_usages", ["expires_at"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"], unique=False)


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("jti_usages")
    op.drop_table("team_subscriptions")
    op.drop_table("stripe_webhook_events")
    op.drop_table("period_close_claims")
    op.drop_table("ledger_entries")
    op.drop_table("ledger_accounts")
    op.drop_table("invoice_line_items")
    op.drop_table("invoices")
    op.drop_table("usage_events")
    op.drop_table("contract_overrides")
    op.drop_table("contract_bundles")
    op.drop_table("contracts")
    op.drop_table("bundle_meter_policies")
    op.drop_table("bundle_apps")
    op.drop_table("bundles")
    op.drop_table("billing_entities")
    op.drop_table("team_members")
    op.drop_table("users")
    op.drop_table("teams")
    op.drop_table("app_secrets")
    op.drop_table("apps")
