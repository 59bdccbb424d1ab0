from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.domain.models import AuditLog


logger = logging.getLogger(__name__)

# Any metadata key containing one of these fragments is masked before it is stored.
REDACTED_KEY_FRAGMENTS = ("api_key", "authorization", "token", "secret", "password", "signature")
REDACTED = "[REDACTED]"


def sanitize_metadata(value: Any) -> Any:
    """Return a masked copy of ``value``; dicts and lists are walked recursively."""
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    if not isinstance(value, dict):
        return value
    masked: dict[str, Any] = {}
    for key, item in value.items():
        name = str(key)
        if any(fragment in name.lower() for fragment in REDACTED_KEY_FRAGMENTS):
            masked[name] = REDACTED
        else:
            masked[name] = sanitize_metadata(item)
    return masked


def record_audit(
    session: AsyncSession,
    *,
    action: str,
    entity_type: str,
    entity_id: str,
    actor: str,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    """Stage an append-only audit row in the caller's transaction.

    The row commits (or rolls back) together with the change it describes.
    """
    entry = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        actor=actor,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
    )
    session.add(entry)
    logger.info(
        "audit_recorded action=%s entity=%s:%s actor=%s request_id=%s",
        action,
        entity_type,
        entity_id,
        actor,
        request_id,
    )
    return entry
