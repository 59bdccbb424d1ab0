from __future__ import annotations

from meterbill.services.audit import sanitize_metadata


def test_sanitize_metadata_redacts_nested_sensitive_keys() -> None:
    payload = {
        "team_id": "t1",
        "Authorization": "Bearer abc",
        "nested": {"webhook_signature": "v1=deadbeef", "total_minor": 100},
        "items": [{"client_secret": "s"}, {"amount": 3}],
    }

    sanitized = sanitize_metadata(payload)

    assert sanitized["team_id"] == "t1"
    assert sanitized["Authorization"] == "[REDACTED]"
    assert sanitized["nested"] == {"webhook_signature": "[REDACTED]", "total_minor": 100}
    assert sanitized["items"] == [{"client_secret": "[REDACTED]"}, {"amount": 3}]
    # Input is left untouched.
    assert payload["Authorization"] == "Bearer abc"
