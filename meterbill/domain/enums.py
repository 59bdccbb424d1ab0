from __future__ import annotations

from enum import Enum


class TeamKind(str, Enum):
    PERSONAL = "PERSONAL"
    STANDARD = "STANDARD"
    ENTERPRISE = "ENTERPRISE"


class BillingMode(str, Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    ENTERPRISE_CONTRACT = "ENTERPRISE_CONTRACT"


class MemberRole(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class MemberStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REMOVED = "REMOVED"


class LimitType(str, Enum):
    NONE = "NONE"
    INCLUDED = "INCLUDED"
    UNLIMITED = "UNLIMITED"
    HARD_CAP = "HARD_CAP"


class Enforcement(str, Enum):
    NONE = "NONE"
    SOFT = "SOFT"
    HARD = "HARD"


class OverageBilling(str, Enum):
    NONE = "NONE"
    PER_UNIT = "PER_UNIT"
    TIERED = "TIERED"
    CUSTOM = "CUSTOM"


class ContractStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ENDED = "ENDED"


class BillingPeriod(str, Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    PAID = "PAID"
    VOID = "VOID"


class ChargeType(str, Enum):
    BASE_FEE = "BASE_FEE"
    OVERAGE = "OVERAGE"
    CUSTOM = "CUSTOM"


class LedgerAccountType(str, Enum):
    ACCOUNTS_RECEIVABLE = "ACCOUNTS_RECEIVABLE"


class LedgerEntryType(str, Enum):
    SUBSCRIPTION_CHARGE = "SUBSCRIPTION_CHARGE"
    USAGE_CHARGE = "USAGE_CHARGE"
    INVOICE_PAYMENT = "INVOICE_PAYMENT"
    ADJUSTMENT = "ADJUSTMENT"


class LedgerReferenceType(str, Enum):
    INVOICE = "INVOICE"
    MANUAL = "MANUAL"


class ClaimStatus(str, Enum):
    CLAIMED = "CLAIMED"
    RESOLVED = "RESOLVED"


class SecretStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    INCOMPLETE = "INCOMPLETE"
    UNPAID = "UNPAID"


# Ranks back the policy merge comparator; higher is stricter / richer.
ENFORCEMENT_RANK: dict[Enforcement, int] = {
    Enforcement.NONE: 0,
    Enforcement.SOFT: 1,
    Enforcement.HARD: 2,
}

OVERAGE_RANK: dict[OverageBilling, int] = {
    OverageBilling.NONE: 0,
    OverageBilling.PER_UNIT: 1,
    OverageBilling.TIERED: 2,
    OverageBilling.CUSTOM: 3,
}

BILLING_PERIOD_MONTHS: dict[BillingPeriod, int] = {
    BillingPeriod.MONTHLY: 1,
    BillingPeriod.QUARTERLY: 3,
}
