from __future__ import annotations

from typing import Any


class MeterbillError(Exception):
    """Base error for meterbill; carries an HTTP status and a stable error code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(MeterbillError):
    """Referenced entity does not exist."""

    status_code = 404
    code = "NOT_FOUND"


class AppNotFoundError(NotFoundError):
    code = "APP_NOT_FOUND"

    def __init__(self, app_id: str) -> None:
        super().__init__(f"App not found: {app_id}")


class TeamNotFoundError(NotFoundError):
    code = "TEAM_NOT_FOUND"

    def __init__(self, team_id: str) -> None:
        super().__init__(f"Team not found: {team_id}")


class UserNotFoundError(NotFoundError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_ref: str) -> None:
        super().__init__(f"User not found: {user_ref}")


class PersonalTeamNotFoundError(NotFoundError):
    code = "PERSONAL_TEAM_NOT_FOUND"

    def __init__(self, user_ref: str) -> None:
        super().__init__(f"Personal team not found for user: {user_ref}")


class BillingEntityNotFoundError(NotFoundError):
    code = "BILLING_ENTITY_NOT_FOUND"

    def __init__(self, team_id: str) -> None:
        super().__init__(f"Billing entity not found for team: {team_id}")


class TeamMemberNotFoundError(NotFoundError):
    code = "TEAM_MEMBER_NOT_FOUND"

    def __init__(self, team_id: str, user_id: str) -> None:
        super().__init__(f"Team member not found: team={team_id} user={user_id}")


class BundleNotFoundError(NotFoundError):
    code = "BUNDLE_NOT_FOUND"

    def __init__(self, bundle_id: str) -> None:
        super().__init__(f"Bundle not found: {bundle_id}")


class ContractNotFoundError(NotFoundError):
    code = "CONTRACT_NOT_FOUND"

    def __init__(self, contract_id: str) -> None:
        super().__init__(f"Contract not found: {contract_id}")


class InvoiceNotFoundError(NotFoundError):
    code = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str) -> None:
        super().__init__(f"Invoice not found: {invoice_id}")


class EventTypeNotFoundError(NotFoundError):
    code = "EVENT_TYPE_NOT_FOUND"

    def __init__(self, event_type: str) -> None:
        super().__init__(f"Event type not found: {event_type}")


class AppSecretNotFoundError(NotFoundError):
    code = "APP_SECRET_NOT_FOUND"

    def __init__(self, kid: str) -> None:
        super().__init__(f"App secret not found: {kid}")


class ConflictError(MeterbillError):
    """Request conflicts with existing state."""

    status_code = 409
    code = "CONFLICT"


class BundleCodeConflictError(ConflictError):
    code = "BUNDLE_CODE_CONFLICT"

    def __init__(self, bundle_code: str) -> None:
        super().__init__(f"Bundle code already exists: {bundle_code}")


class ActiveContractExistsError(ConflictError):
    code = "ACTIVE_CONTRACT_EXISTS"

    def __init__(self, billing_entity_id: str) -> None:
        super().__init__(f"Billing entity already has an active contract: {billing_entity_id}")


class TeamMemberExistsError(ConflictError):
    code = "TEAM_MEMBER_EXISTS"

    def __init__(self, team_id: str, user_id: str) -> None:
        super().__init__(f"User is already a member of team: team={team_id} user={user_id}")


class InvalidInvoiceStatusError(ConflictError):
    """Invoice lifecycle transition not allowed from the current status."""

    code = "INVALID_INVOICE_STATUS"

    def __init__(self, invoice_id: str, current_status: str, target_status: str) -> None:
        super().__init__(
            f"Cannot transition invoice {invoice_id} from {current_status} to {target_status}",
            details={"current_status": current_status, "target_status": target_status},
        )


class InvalidContractStatusError(ConflictError):
    code = "INVALID_CONTRACT_STATUS"

    def __init__(self, contract_id: str, current_status: str, target_status: str) -> None:
        super().__init__(
            f"Cannot transition contract {contract_id} from {current_status} to {target_status}",
            details={"current_status": current_status, "target_status": target_status},
        )


class RequestValidationFailedError(MeterbillError):
    """Input failed domain validation; details carry itemized issues."""

    status_code = 400
    code = "VALIDATION_ERROR"


class BatchTooLargeError(RequestValidationFailedError):
    code = "BATCH_TOO_LARGE"

    def __init__(self, size: int, max_size: int) -> None:
        super().__init__(
            f"Batch of {size} events exceeds the maximum of {max_size}",
            details={"size": size, "max_batch_size": max_size},
        )


class UsageEventRejectedError(RequestValidationFailedError):
    """One or more events in a batch failed schema validation."""

    code = "USAGE_EVENT_INVALID"

    def __init__(self, issues: list[dict[str, Any]]) -> None:
        super().__init__("Usage event validation failed", details={"issues": issues})


class PaymentSignatureError(MeterbillError):
    """Webhook signature verification failed (reason intentionally withheld)."""

    status_code = 400
    code = "INVALID_SIGNATURE"

    def __init__(self) -> None:
        super().__init__("Invalid webhook signature")


class SecretFormatError(MeterbillError):
    """Encrypted secret is malformed or failed authentication."""


class ConfigurationError(MeterbillError):
    """Missing or invalid service configuration."""


class CustomPricingError(MeterbillError):
    """External custom-pricing computation failed."""
