from __future__ import annotations

# Re-export billing services for centralized imports.

from meterbill.services.billing.invoices import (
    InvoiceRecord,
    export_invoice,
    generate_invoice,
    get_invoice,
    issue_invoice,
    mark_invoice_paid,
    revert_invoice_to_draft,
    transition_invoice,
    void_invoice,
)
from meterbill.services.billing.line_items import DraftLine, InvoiceDraft, build_invoice_draft
from meterbill.services.billing.period_close import PeriodCloseRunResult, PeriodCloseService
from meterbill.services.billing.periods import BillingWindow, latest_closed_period

__all__ = [
    "InvoiceRecord",
    "export_invoice",
    "generate_invoice",
    "get_invoice",
    "issue_invoice",
    "mark_invoice_paid",
    "revert_invoice_to_draft",
    "transition_invoice",
    "void_invoice",
    "DraftLine",
    "InvoiceDraft",
    "build_invoice_draft",
    "PeriodCloseRunResult",
    "PeriodCloseService",
    "BillingWindow",
    "latest_closed_period",
]
