from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from meterbill.core.clock import utc_now


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class App(Base):
    __tablename__ = "apps"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class AppSecret(Base):
    __tablename__ = "app_secrets"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    app_id: Mapped[str] = mapped_column(String, ForeignKey("apps.id"), index=True)
    # Key id carried in the JWT header to select the verification secret.
    kid: Mapped[str] = mapped_column(String, unique=True)
    # Stored as iv:authTag:ciphertext hex, never in plaintext.
    secret_encrypted: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String, default="ACTIVE")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Team(Base):
    __tablename__ = "teams"
    __table_args__ = (
        UniqueConstraint("app_id", "external_team_id", name="uq_teams_app_external"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    app_id: Mapped[str] = mapped_column(String, ForeignKey("apps.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String, default="STANDARD")
    billing_mode: Mapped[str] = mapped_column(String, default="SUBSCRIPTION")
    owner_user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    external_team_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("app_id", "external_ref", name="uq_users_app_external_ref"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    app_id: Mapped[str] = mapped_column(String, ForeignKey("apps.id"), index=True)
    external_ref: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TeamMember(Base):
    __tablename__ = "team_members"
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String, ForeignKey("teams.id"), index=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    role: Mapped[str] = mapped_column(String, default="MEMBER")
    status: Mapped[str] = mapped_column(String, default="ACTIVE")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class BillingEntity(Base):
    __tablename__ = "billing_entities"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String, default="TEAM")
    team_id: Mapped[str] = mapped_column(String, ForeignKey("teams.id"), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Bundle(Base):
    __tablename__ = "bundles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="ACTIVE")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class BundleApp(Base):
    __tablename__ = "bundle_apps"
    __table_args__ = (
        UniqueConstraint("bundle_id", "app_id", name="uq_bundle_apps_bundle_app"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    bundle_id: Mapped[str] = mapped_column(String, ForeignKey("bundles.id"), index=True)
    app_id: Mapped[str] = mapped_column(String, ForeignKey("apps.id"), index=True)
    default_feature_flags: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)


class BundleMeterPolicy(Base):
    __tablename__ = "bundle_meter_policies"
    __table_args__ = (
        UniqueConstraint("bundle_id", "app_id", "meter_key", name="uq_bundle_meter_policies_key"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    bundle_id: Mapped[str] = mapped_column(String, ForeignKey("bundles.id"), index=True)
    app_id: Mapped[str] = mapped_column(String, ForeignKey("apps.id"), index=True)
    meter_key: Mapped[str] = mapped_column(String)
    limit_type: Mapped[str] = mapped_column(String, default="NONE")
    included_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    enforcement: Mapped[str] = mapped_column(String, default="NONE")
    overage_billing: Mapped[str] = mapped_column(String, default="NONE")
    # Fractional minor units are allowed (e.g. 0.002 cents per token).
    unit_price_minor: Mapped[Decimal | None] = mapped_column(Numeric(20, 6), nullable=True)
    # Ascending [{"up_to": int | null, "unit_price_minor": "decimal"}] over the excess quantity.
    overage_tiers: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class Contract(Base):
    __tablename__ = "contracts"
    __table_args__ = (
        # One ACTIVE contract per billing entity.
        Index(
            "uq_contracts_active_billing_entity",
            "billing_entity_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    billing_entity_id: Mapped[str] = mapped_column(String, ForeignKey("billing_entities.id"), index=True)
    status: Mapped[str] = mapped_column(String, default="DRAFT")
    currency: Mapped[str] = mapped_column(String, default="usd")
    billing_period: Mapped[str] = mapped_column(String, default="MONTHLY")
    terms_days: Mapped[int] = mapped_column(Integer, default=30)
    base_fee_minor: Mapped[int] = mapped_column(BigInteger, default=0)
    # Contracts priced outside the engine always land as DRAFT for manual review.
    requires_review: Mapped[bool] = mapped_column(Boolean, default=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ContractBundle(Base):
    __tablename__ = "contract_bundles"
    __table_args__ = (
        UniqueConstraint("contract_id", "bundle_id", name="uq_contract_bundles_pair"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    contract_id: Mapped[str] = mapped_column(String, ForeignKey("contracts.id"), index=True)
    bundle_id: Mapped[str] = mapped_column(String, ForeignKey("bundles.id"), index=True)


class ContractOverride(Base):
    __tablename__ = "contract_overrides"
    __table_args__ = (
        UniqueConstraint("contract_id", "app_id", "meter_key", name="uq_contract_overrides_key"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    contract_id: Mapped[str] = mapped_column(String, ForeignKey("contracts.id"), index=True)
    app_id: Mapped[str] = mapped_column(String, ForeignKey("apps.id"))
    meter_key: Mapped[str] = mapped_column(String)
    # Null fields inherit from the merged bundle policy.
    limit_type: Mapped[str | None] = mapped_column(String, nullable=True)
    included_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    enforcement: Mapped[str | None] = mapped_column(String, nullable=True)
    overage_billing: Mapped[str | None] = mapped_column(String, nullable=True)
    unit_price_minor: Mapped[Decimal | None] = mapped_column(Numeric(20, 6), nullable=True)
    overage_tiers: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    feature_flags: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class UsageEvent(Base):
    __tablename__ = "usage_events"
    __table_args__ = (
        UniqueConstraint("app_id", "idempotency_key", name="uq_usage_events_idempotency"),
        Index("ix_usage_events_team_time", "team_id", "occurred_at"),
        Index("ix_usage_events_entity_time", "billing_entity_id", "occurred_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    app_id: Mapped[str] = mapped_column(String, ForeignKey("apps.id"), index=True)
    team_id: Mapped[str] = mapped_column(String, ForeignKey("teams.id"))
    billing_entity_id: Mapped[str] = mapped_column(String, ForeignKey("billing_entities.id"))
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    meter_key: Mapped[str] = mapped_column(String)
    quantity: Mapped[int] = mapped_column(BigInteger)
    cost_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType)
    source: Mapped[str] = mapped_column(String)
    idempotency_key: Mapped[str] = mapped_column(String)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        # At most one non-VOID invoice per contract and billing period.
        Index(
            "uq_invoices_contract_period_live",
            "contract_id",
            "period_start",
            "period_end",
            unique=True,
            postgresql_where=text("status <> 'VOID'"),
            sqlite_where=text("status <> 'VOID'"),
        ),
        # Ad hoc invoices may have no contract, which the index above never matches.
        Index(
            "uq_invoices_entity_period_uncontracted",
            "billing_entity_id",
            "period_start",
            "period_end",
            unique=True,
            postgresql_where=text("contract_id IS NULL AND status <> 'VOID'"),
            sqlite_where=text("contract_id IS NULL AND status <> 'VOID'"),
        ),
        Index("ix_invoices_entity_period", "billing_entity_id", "period_start", "period_end"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    billing_entity_id: Mapped[str] = mapped_column(String, ForeignKey("billing_entities.id"))
    team_id: Mapped[str] = mapped_column(String, ForeignKey("teams.id"), index=True)
    contract_id: Mapped[str | None] = mapped_column(String, ForeignKey("contracts.id"), nullable=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String, default="DRAFT")
    currency: Mapped[str] = mapped_column(String, default="usd")
    subtotal_minor: Mapped[int] = mapped_column(BigInteger, default=0)
    total_minor: Mapped[int] = mapped_column(BigInteger, default=0)
    requires_review: Mapped[bool] = mapped_column(Boolean, default=False)
    # Payment-processor invoice id once the invoice is mirrored externally.
    external_ref: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class InvoiceLineItem(Base):
    __tablename__ = "invoice_line_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    invoice_id: Mapped[str] = mapped_column(String, ForeignKey("invoices.id"), index=True)
    position: Mapped[int] = mapped_column(Integer)
    app_id: Mapped[str | None] = mapped_column(String, nullable=True)
    meter_key: Mapped[str | None] = mapped_column(String, nullable=True)
    charge_type: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(String)
    quantity: Mapped[int] = mapped_column(BigInteger, default=0)
    # Decimal string keeps fractional minor-unit prices exact.
    unit_price_minor: Mapped[str] = mapped_column(String, default="0")
    amount_minor: Mapped[int] = mapped_column(BigInteger, default=0)
    flagged: Mapped[bool] = mapped_column(Boolean, default=False)
    flag_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    usage_summary: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)


class LedgerAccount(Base):
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        UniqueConstraint("app_id", "billing_entity_id", "account_type", name="uq_ledger_accounts_owner_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # Not a foreign key: entries without an owning app are booked under "system".
    app_id: Mapped[str] = mapped_column(String)
    billing_entity_id: Mapped[str] = mapped_column(String, ForeignKey("billing_entities.id"))
    account_type: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_ledger_entries_idempotency"),
        Index("ix_ledger_entries_entity_time", "billing_entity_id", "occurred_at"),
        Index("ix_ledger_entries_account_time", "ledger_account_id", "occurred_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    app_id: Mapped[str] = mapped_column(String)
    billing_entity_id: Mapped[str] = mapped_column(String, ForeignKey("billing_entities.id"))
    ledger_account_id: Mapped[str] = mapped_column(String, ForeignKey("ledger_accounts.id"))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    entry_type: Mapped[str] = mapped_column(String)
    # Signed; positive amounts are charges against the account owner.
    amount_minor: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String, default="usd")
    reference_type: Mapped[str] = mapped_column(String)
    reference_id: Mapped[str | None] = mapped_column(String, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class PeriodCloseClaim(Base):
    __tablename__ = "period_close_claims"
    __table_args__ = (
        UniqueConstraint("contract_id", "period_start", "period_end", name="uq_period_close_claims_period"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    contract_id: Mapped[str] = mapped_column(String, ForeignKey("contracts.id"), index=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String, default="CLAIMED")
    # Run id of the worker currently holding the claim.
    owner: Mapped[str] = mapped_column(String)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invoice_id: Mapped[str | None] = mapped_column(String, nullable=True)


class StripeWebhookEvent(Base):
    __tablename__ = "stripe_webhook_events"

    # Insert conflicts on event_id are the dedup signal.
    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TeamSubscription(Base):
    __tablename__ = "team_subscriptions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String, ForeignKey("teams.id"), index=True)
    stripe_subscription_id: Mapped[str] = mapped_column(String, unique=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String)
    plan_code: Mapped[str | None] = mapped_column(String, nullable=True)
    seats_quantity: Mapped[int] = mapped_column(Integer, default=1)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class JtiUsage(Base):
    __tablename__ = "jti_usages"

    jti: Mapped[str] = mapped_column(String, primary_key=True)
    app_id: Mapped[str] = mapped_column(String)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    action: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String, index=True)
    actor: Mapped[str] = mapped_column(String)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
