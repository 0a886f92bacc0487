"""Nudge - Payment reminder emails on a schedule.

Per-invoice email templates in three tones, three reminder schedules, a
daily batch that sends whichever reminder is due, and the manual send,
resend and send-next-reminder operations behind the JSON API.

The DocumentStore keeps clients, invoices, email flows and workspaces as
JSON documents in SQLite, with an audit trail and batch-run history.
"""

from .models import (
    Client,
    EmailFlow,
    Invoice,
    InvoiceStatus,
    ReminderKind,
    ReminderRecord,
    SkipReason,
    TemplateInstance,
    ToneVariant,
    Workspace,
)

from .store import DocumentStore

__all__ = [
    "Client",
    "DocumentStore",
    "EmailFlow",
    "Invoice",
    "InvoiceStatus",
    "ReminderKind",
    "ReminderRecord",
    "SkipReason",
    "TemplateInstance",
    "ToneVariant",
    "Workspace",
]
