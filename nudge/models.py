"""Data models for the Nudge reminder service.

All models are plain dataclasses with type hints.  Records are persisted
as JSON documents (see ``nudge.store``); every model knows how to turn
itself into a document and back, tolerating missing fields and the
camelCase keys written by older clients.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Self

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class InvoiceStatus(Enum):
    """Invoice lifecycle: draft -> sent -> (overdue) -> paid."""

    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"

    @classmethod
    def parse(cls, raw: Any) -> InvoiceStatus:
        """Parse a stored status, defaulting unknown values to DRAFT."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError:
            logger.warning("Unknown invoice status %r, treating as draft", raw)
            return cls.DRAFT


# Statuses the daily batch and send-next-reminder operate on.
REMINDABLE_STATUSES: frozenset[InvoiceStatus] = frozenset({
    InvoiceStatus.SENT,
    InvoiceStatus.OVERDUE,
})


class ReminderKind(Enum):
    """How a reminder record came to be in an invoice's ledger."""

    SCHEDULED = "scheduled"
    MANUAL_RESEND = "manual-resend"


class SkipReason(Enum):
    """Why the daily batch sent nothing for an invoice."""

    NO_TEMPLATES = "Invoice has no templates"
    NO_DUE_DATE = "Invoice has no due date"
    BAD_DUE_DATE = "Due date could not be parsed"
    STALE = "Due date is too far in the past"
    SENT_TODAY = "A reminder was already sent today"
    NOTHING_DUE = "No reminder slot is due today"


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string for storage, always UTC-qualified."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are taken as UTC.

    >>> parse_timestamp("2024-06-23T09:00:00Z").isoformat()
    '2024-06-23T09:00:00+00:00'
    >>> parse_timestamp("garbage") is None
    True
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        text = str(raw).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_due_date(raw: Any) -> Optional[date]:
    """Parse a ``YYYY-MM-DD`` due date (a longer ISO timestamp is truncated).

    >>> parse_due_date("2024-06-30")
    datetime.date(2024, 6, 30)
    >>> parse_due_date("2024-06-30T00:00:00.000Z")
    datetime.date(2024, 6, 30)
    >>> parse_due_date("next tuesday") is None
    True
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw).strip()[:10]
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """First present key wins; lets documents carry legacy camelCase names."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@dataclass
class ToneVariant:
    """One tone's subject/body for a template slot."""

    subject: str = ""
    body: str = ""
    is_customized: bool = False
    is_dirty: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "body": self.body,
            "is_customized": self.is_customized,
            "is_dirty": self.is_dirty,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        return cls(
            subject=str(_pick(data, "subject", default="")),
            body=str(_pick(data, "body", default="")),
            is_customized=bool(_pick(data, "is_customized", "isCustomized", default=False)),
            is_dirty=bool(_pick(data, "is_dirty", "isDirty", default=False)),
        )


@dataclass
class TemplateInstance:
    """An invoice's (or flow's) own copy of one schedule slot's email.

    The canonical ``subject``/``body`` mirror ``tone_variants[tone]``.
    ``offset`` is copied from the schedule registry when the instance is
    created and is informational only; the scheduler consults the
    registry.
    """

    id: str
    label: str = ""
    offset: Optional[int] = None
    tone: str = "friendly"
    subject: str = ""
    body: str = ""
    tone_variants: dict[str, ToneVariant] = field(default_factory=dict)

    @property
    def is_reminder(self) -> bool:
        return self.id.startswith("reminder")

    @property
    def has_canonical_content(self) -> bool:
        return bool(self.subject) and bool(self.body)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "offset": self.offset,
            "tone": self.tone,
            "subject": self.subject,
            "body": self.body,
            "tone_variants": {
                tone: variant.to_dict() for tone, variant in self.tone_variants.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        raw_variants = _pick(data, "tone_variants", "toneVariants", default={}) or {}
        variants: dict[str, ToneVariant] = {}
        if isinstance(raw_variants, Mapping):
            for tone, raw in raw_variants.items():
                if isinstance(raw, Mapping):
                    variants[str(tone)] = ToneVariant.from_dict(raw)

        raw_offset = data.get("offset")
        offset: Optional[int]
        try:
            offset = None if raw_offset is None else int(raw_offset)
        except (TypeError, ValueError):
            offset = None

        return cls(
            id=str(data["id"]),
            label=str(_pick(data, "label", default="")),
            offset=offset,
            tone=str(_pick(data, "tone", default="friendly")),
            subject=str(_pick(data, "subject", default="")),
            body=str(_pick(data, "body", default="")),
            tone_variants=variants,
        )


# ---------------------------------------------------------------------------
# Reminder ledger
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReminderRecord:
    """One entry in an invoice's append-only ``reminders_sent`` log."""

    kind: ReminderKind
    slot_id: str
    sent_at: Optional[datetime] = None

    @property
    def sent_on(self) -> Optional[date]:
        """UTC calendar date of the send, if known."""
        return self.sent_at.date() if self.sent_at else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "slot_id": self.slot_id,
            "sent_at": format_timestamp(self.sent_at),
        }

    @classmethod
    def from_raw(cls, raw: Any) -> Optional[ReminderRecord]:
        """Normalize any stored record shape.

        Accepted shapes:
          - ``{"kind", "slot_id", "sent_at"}`` (current)
          - ``{"id", "sentAt"}``
          - ``{"templateId", "sentAt", "type"}``
          - a bare slot id string

        Returns None for entries with no recognizable slot id.

        >>> ReminderRecord.from_raw("reminder1").slot_id
        'reminder1'
        >>> ReminderRecord.from_raw({"templateId": "reminder2", "type": "manual_resend"}).kind
        <ReminderKind.MANUAL_RESEND: 'manual-resend'>
        """
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            return cls(kind=ReminderKind.SCHEDULED, slot_id=raw) if raw else None
        if not isinstance(raw, Mapping):
            return None

        slot_id = _pick(raw, "slot_id", "templateId", "template_id", "id")
        if not slot_id:
            return None

        raw_kind = str(_pick(raw, "kind", "type", default="")).replace("_", "-").lower()
        kind = ReminderKind.MANUAL_RESEND if raw_kind == "manual-resend" else ReminderKind.SCHEDULED

        return cls(
            kind=kind,
            slot_id=str(slot_id),
            sent_at=parse_timestamp(_pick(raw, "sent_at", "sentAt")),
        )


def normalize_reminder_records(raw_records: Any) -> list[ReminderRecord]:
    """Normalize a stored ``reminders_sent`` list, dropping unreadable entries."""
    if not raw_records:
        return []
    records: list[ReminderRecord] = []
    for raw in raw_records:
        record = ReminderRecord.from_raw(raw)
        if record is None:
            logger.warning("Ignoring unreadable reminder record: %r", raw)
            continue
        records.append(record)
    return records


# ---------------------------------------------------------------------------
# Core records
# ---------------------------------------------------------------------------

@dataclass
class Client:
    """Someone who receives invoices."""

    id: str
    user_id: str
    name: str
    email: str
    first_name: str = ""
    company_name: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def greeting_name(self) -> str:
        """First name, or the first word of the full name.

        >>> Client(id="c", user_id="u", name="Ada Lovelace", email="a@x.io").greeting_name
        'Ada'
        """
        if self.first_name:
            return self.first_name
        parts = self.name.split()
        return parts[0] if parts else ""

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "first_name": self.first_name,
            "email": self.email,
            "company_name": self.company_name,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> Self:
        return cls(
            id=str(doc["id"]),
            user_id=str(_pick(doc, "user_id", "userId", default="")),
            name=str(_pick(doc, "name", default="")),
            email=str(_pick(doc, "email", default="")),
            first_name=str(_pick(doc, "first_name", "firstName", default="")),
            company_name=str(_pick(doc, "company_name", "companyName", default="")),
            created_at=parse_timestamp(_pick(doc, "created_at", "createdAt")),
            updated_at=parse_timestamp(_pick(doc, "updated_at", "updatedAt")),
        )


@dataclass
class Workspace:
    """Per-user business settings.  One per user."""

    user_id: str
    workspace_name: str = ""
    display_name: str = ""
    business_email: str = ""
    default_due_date_terms: str = "net-30"
    default_email_tone: str = "professional"
    auto_reminders_enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.user_id,
            "user_id": self.user_id,
            "workspace_name": self.workspace_name,
            "display_name": self.display_name,
            "business_email": self.business_email,
            "default_due_date_terms": self.default_due_date_terms,
            "default_email_tone": self.default_email_tone,
            "auto_reminders_enabled": self.auto_reminders_enabled,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> Self:
        return cls(
            user_id=str(_pick(doc, "user_id", "userId", "id", default="")),
            workspace_name=str(_pick(doc, "workspace_name", "workspaceName", "companyName", default="")),
            display_name=str(_pick(doc, "display_name", "displayName", default="")),
            business_email=str(_pick(doc, "business_email", "businessEmail", default="")),
            default_due_date_terms=str(
                _pick(doc, "default_due_date_terms", "defaultDueDateTerms", default="net-30")
            ),
            default_email_tone=str(
                _pick(doc, "default_email_tone", "defaultEmailTone", default="professional")
            ),
            auto_reminders_enabled=bool(
                _pick(doc, "auto_reminders_enabled", "autoRemindersEnabled", default=True)
            ),
            created_at=parse_timestamp(_pick(doc, "created_at", "createdAt")),
            updated_at=parse_timestamp(_pick(doc, "updated_at", "updatedAt")),
        )


@dataclass
class EmailFlow:
    """A saved, reusable set of templates for one schedule."""

    id: str
    user_id: str
    name: str
    schedule: str
    templates: list[TemplateInstance] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "schedule": self.schedule,
            "templates": [t.to_dict() for t in self.templates],
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> Self:
        return cls(
            id=str(doc["id"]),
            user_id=str(_pick(doc, "user_id", "userId", default="")),
            name=str(_pick(doc, "name", default="")),
            schedule=str(_pick(doc, "schedule", default="standard")),
            templates=templates_from_raw(_pick(doc, "templates", default=[])),
            created_at=parse_timestamp(_pick(doc, "created_at", "createdAt")),
            updated_at=parse_timestamp(_pick(doc, "updated_at", "updatedAt")),
        )


def templates_from_raw(raw_templates: Any) -> list[TemplateInstance]:
    """Convert stored template dicts, skipping entries without an id."""
    templates: list[TemplateInstance] = []
    for raw in raw_templates or []:
        if isinstance(raw, TemplateInstance):
            templates.append(raw)
        elif isinstance(raw, Mapping) and raw.get("id"):
            templates.append(TemplateInstance.from_dict(raw))
        else:
            logger.warning("Ignoring unreadable template entry: %r", raw)
    return templates


@dataclass
class Invoice:
    """A user's invoice plus its frozen email templates and send ledger."""

    id: str
    user_id: str
    client_id: str
    amount_cents: int = 0
    currency: str = "USD"
    due_date: str = ""                       # YYYY-MM-DD, UTC midnight
    payment_link: str = ""
    notes: str = ""
    cc_emails: list[str] = field(default_factory=list)
    status: InvoiceStatus = InvoiceStatus.DRAFT
    reminder_schedule: str = "standard"
    email_flow: str = ""                     # flow name, or "custom"
    templates: list[TemplateInstance] = field(default_factory=list)
    reminders_sent: list[ReminderRecord] = field(default_factory=list)

    # --- lifecycle stamps ---
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    # --- last email failure ---
    last_email_error_message: Optional[str] = None
    last_email_error_at: Optional[datetime] = None
    last_email_error_context: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def amount(self) -> float:
        return self.amount_cents / 100

    @property
    def due_date_value(self) -> Optional[date]:
        return parse_due_date(self.due_date)

    @property
    def is_locked(self) -> bool:
        """Financial fields are frozen once the invoice has left draft."""
        return self.status is not InvoiceStatus.DRAFT

    @property
    def sent_slot_ids(self) -> set[str]:
        """Slot ids with a scheduled ledger record.  Manual resends do not
        use up a slot."""
        return {r.slot_id for r in self.reminders_sent if r.kind is ReminderKind.SCHEDULED}

    def sent_on(self, day: date) -> bool:
        """True when any ledger record was sent on the given UTC date."""
        return any(r.sent_on == day for r in self.reminders_sent)

    def find_template(self, slot_id: str) -> Optional[TemplateInstance]:
        for template in self.templates:
            if template.id == slot_id:
                return template
        return None

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "client_id": self.client_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "due_date": self.due_date,
            "payment_link": self.payment_link,
            "notes": self.notes,
            "cc_emails": list(self.cc_emails),
            "status": self.status.value,
            "reminder_schedule": self.reminder_schedule,
            "email_flow": self.email_flow,
            "templates": [t.to_dict() for t in self.templates],
            "reminders_sent": [r.to_dict() for r in self.reminders_sent],
            "sent_at": format_timestamp(self.sent_at),
            "paid_at": format_timestamp(self.paid_at),
            "last_email_error_message": self.last_email_error_message,
            "last_email_error_at": format_timestamp(self.last_email_error_at),
            "last_email_error_context": self.last_email_error_context,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> Self:
        """Build an Invoice from a stored document.

        Templates are converted but not normalized here; callers that
        need canonical fields run ``normalize_templates`` afterwards.
        """
        amount_cents = _pick(doc, "amount_cents", "amountCents")
        if amount_cents is None and _pick(doc, "amount") is not None:
            amount_cents = round(float(doc["amount"]) * 100)

        cc_raw = _pick(doc, "cc_emails", "ccEmails", default=[])
        if isinstance(cc_raw, str):
            cc_raw = [e.strip() for e in cc_raw.split(",") if e.strip()]

        return cls(
            id=str(doc["id"]),
            user_id=str(_pick(doc, "user_id", "userId", default="")),
            client_id=str(_pick(doc, "client_id", "clientId", default="")),
            amount_cents=int(amount_cents or 0),
            currency=str(_pick(doc, "currency", default="USD")),
            due_date=str(_pick(doc, "due_date", "dueDate", default="")),
            payment_link=str(_pick(doc, "payment_link", "paymentLink", default="")),
            notes=str(_pick(doc, "notes", default="")),
            cc_emails=list(cc_raw or []),
            status=InvoiceStatus.parse(_pick(doc, "status", default="draft")),
            reminder_schedule=str(_pick(doc, "reminder_schedule", "reminderSchedule", default="standard")),
            email_flow=str(_pick(doc, "email_flow", "emailFlow", default="")),
            templates=templates_from_raw(_pick(doc, "templates", default=[])),
            reminders_sent=normalize_reminder_records(_pick(doc, "reminders_sent", "remindersSent")),
            sent_at=parse_timestamp(_pick(doc, "sent_at", "sentAt")),
            paid_at=parse_timestamp(_pick(doc, "paid_at", "paidAt")),
            last_email_error_message=_pick(doc, "last_email_error_message", "lastEmailErrorMessage"),
            last_email_error_at=parse_timestamp(_pick(doc, "last_email_error_at", "lastEmailErrorAt")),
            last_email_error_context=_pick(doc, "last_email_error_context", "lastEmailErrorContext"),
            created_at=parse_timestamp(_pick(doc, "created_at", "createdAt")),
            updated_at=parse_timestamp(_pick(doc, "updated_at", "updatedAt")),
        )
