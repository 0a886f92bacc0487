"""
Nudge -- Invoice Records

Create, read, update and delete invoices, plus the operations that
change an invoice's email templates:

    duplicate         fresh draft copy (ledger, stamps and errors cleared)
    mark_paid         status -> paid, paid_at stamped
    apply_flow        replace templates with a deep copy of a saved flow
    save_template     store a user edit for one tone of one slot
    revert_template   reset one tone of one slot to the catalog copy
    select_tone       switch a slot's selected tone
    backfill          give template-less invoices the default set

Once an invoice leaves draft, its amount, due date, client and payment
link can no longer change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from .catalog import ALL_TONES, is_known_tone
from .config import NudgeConfig
from .directory import ClientService, FlowService, WorkspaceService, require_valid_id
from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    Invoice,
    InvoiceStatus,
    TemplateInstance,
    format_timestamp,
    parse_due_date,
    templates_from_raw,
    utc_now,
)
from .schedules import REMINDER_SCHEDULES, is_known_schedule
from .store import DocumentStore
from .template_resolver import (
    copy_templates,
    initialize_templates_for_schedule,
    normalize_templates,
    revert_tone_variant_to_defaults,
    update_template_tone,
    update_tone_variant,
)

logger = logging.getLogger(__name__)

COLLECTION = "invoices"

# Fields frozen once an invoice is no longer a draft.
LOCKED_FIELDS: tuple[str, ...] = ("amount_cents", "due_date", "client_id", "payment_link")

VALID_STATUSES: tuple[str, ...] = tuple(s.value for s in InvoiceStatus)

_ERROR_FIELDS_CLEARED: dict[str, Any] = {
    "last_email_error_message": None,
    "last_email_error_at": None,
    "last_email_error_context": None,
}


def dollars_to_cents(amount: Any) -> int:
    """Convert a dollar amount to integer cents, rounding half up.

    >>> dollars_to_cents(1250)
    125000
    >>> dollars_to_cents("19.995")
    2000

    Raises:
        ValidationError: If the amount is not a number.
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValidationError("amount must be a number") from exc
    if not value.is_finite():
        raise ValidationError("amount must be a number")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def hydrate_invoice(doc: Mapping[str, Any], default_tone: str) -> Invoice:
    """Build an Invoice from a stored document with normalized templates."""
    invoice = Invoice.from_document(doc)
    invoice.templates = [
        t for t in normalize_templates(invoice.templates, default_tone)
        if isinstance(t, TemplateInstance)
    ]
    return invoice


def _require_known_tone(tone: Any) -> None:
    if not isinstance(tone, str) or not is_known_tone(tone):
        raise ValidationError(f"tone must be one of: {', '.join(ALL_TONES)}")


@dataclass
class BackfillResult:
    scanned: int = 0
    updated: int = 0
    updated_ids: list[str] = field(default_factory=list)


class InvoiceService:
    """Invoice record operations, scoped to one user per call."""

    def __init__(self, store: DocumentStore, config: NudgeConfig) -> None:
        self.store = store
        self.config = config
        self.clients = ClientService(store)
        self.workspaces = WorkspaceService(store)
        self.flows = FlowService(store)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def default_tone(self, user_id: str) -> str:
        workspace = self.workspaces.find(user_id)
        if workspace and workspace.default_email_tone:
            return workspace.default_email_tone
        return self.config.scheduler.default_tone

    def _load_doc(self, user_id: str, invoice_id: str) -> dict[str, Any]:
        require_valid_id(invoice_id, "invoice")
        doc = self.store.get(COLLECTION, invoice_id, user_id=user_id)
        if doc is None:
            raise NotFoundError("Invoice not found")
        return doc

    def _save_fields(self, user_id: str, invoice_id: str, fields: dict[str, Any]) -> Invoice:
        doc = self.store.update_fields(COLLECTION, invoice_id, fields, user_id=user_id, actor=user_id)
        if doc is None:
            raise NotFoundError("Invoice not found")
        return hydrate_invoice(doc, self.default_tone(user_id))

    def _find_template(self, invoice: Invoice, template_id: str) -> TemplateInstance:
        template = invoice.find_template(template_id)
        if template is None:
            raise NotFoundError("Template not found on this invoice")
        return template

    def _replace_template(self, user_id: str, invoice: Invoice, updated: TemplateInstance) -> Invoice:
        templates = [updated if t.id == updated.id else t for t in invoice.templates]
        return self._save_fields(user_id, invoice.id, {
            "templates": [t.to_dict() for t in templates],
            "email_flow": "custom",
        })

    @staticmethod
    def _validate_status(raw: Any) -> str:
        status = str(raw or "").strip().lower()
        if status not in VALID_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(VALID_STATUSES)}")
        return status

    @staticmethod
    def _validate_schedule(raw: Any) -> str:
        schedule = str(raw or "").strip()
        if not is_known_schedule(schedule):
            raise ValidationError(
                f"reminder_schedule must be one of: {', '.join(REMINDER_SCHEDULES)}"
            )
        return schedule

    @staticmethod
    def _validate_due_date(raw: Any) -> str:
        due = str(raw or "").strip()
        if parse_due_date(due) is None:
            raise ValidationError("due_date must be a valid YYYY-MM-DD date")
        return due[:10]

    @staticmethod
    def _validate_amount(raw: Any) -> int:
        cents = dollars_to_cents(raw)
        if cents <= 0:
            raise ValidationError("amount must be greater than zero")
        return cents

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, user_id: str, data: Mapping[str, Any]) -> Invoice:
        """Create an invoice.

        Args:
            user_id: Owner.
            data: ``client_id``, ``amount`` (dollars), ``currency``,
                ``due_date`` and ``status`` are required.  Optional:
                ``payment_link``, ``notes``, ``cc_emails``,
                ``reminder_schedule``, ``email_flow``, ``templates``.

        Returns:
            The stored Invoice.  Templates default to the schedule's set
            in the workspace's default tone.

        Raises:
            ValidationError: Missing or malformed fields.
            NotFoundError: The client does not exist for this user.
        """
        required = ("client_id", "amount", "currency", "due_date", "status")
        if any(data.get(k) in (None, "") for k in required):
            raise ValidationError("client_id, amount, currency, due_date, and status are required.")

        client = self.clients.get(user_id, str(data["client_id"]))
        schedule = self._validate_schedule(data.get("reminder_schedule") or self.config.scheduler.default_schedule)

        raw_templates = data.get("templates")
        if raw_templates:
            templates = templates_from_raw(raw_templates)
        else:
            templates = initialize_templates_for_schedule(schedule, self.default_tone(user_id))

        invoice_doc = {
            "user_id": user_id,
            "client_id": client.id,
            "amount_cents": self._validate_amount(data["amount"]),
            "currency": str(data["currency"]).strip() or "USD",
            "due_date": self._validate_due_date(data["due_date"]),
            "payment_link": str(data.get("payment_link") or "").strip(),
            "notes": str(data.get("notes") or "").strip(),
            "cc_emails": list(data.get("cc_emails") or []),
            "status": self._validate_status(data["status"]),
            "reminder_schedule": schedule,
            "email_flow": str(data.get("email_flow") or "custom"),
            "templates": [t.to_dict() for t in templates],
            "reminders_sent": [],
        }
        doc = self.store.insert(COLLECTION, invoice_doc, actor=user_id)
        logger.info("Created invoice %s for user %s (%s)", doc["id"], user_id, schedule)
        return hydrate_invoice(doc, self.default_tone(user_id))

    def get(self, user_id: str, invoice_id: str) -> Invoice:
        return hydrate_invoice(self._load_doc(user_id, invoice_id), self.default_tone(user_id))

    def list(self, user_id: str) -> list[Invoice]:
        """All of the user's invoices, newest first."""
        tone = self.default_tone(user_id)
        return [hydrate_invoice(d, tone) for d in self.store.find(COLLECTION, user_id=user_id)]

    def update(self, user_id: str, invoice_id: str, data: Mapping[str, Any]) -> Invoice:
        """Apply a partial update.

        Changing ``reminder_schedule`` without supplying ``templates``
        replaces the template list with the new schedule's defaults.

        Raises:
            ConflictError: A locked field changes on a non-draft invoice,
                or a non-draft invoice is moved back to draft.
        """
        current = hydrate_invoice(self._load_doc(user_id, invoice_id), self.default_tone(user_id))
        fields: dict[str, Any] = {}

        if "client_id" in data:
            fields["client_id"] = self.clients.get(user_id, str(data["client_id"])).id
        if "amount" in data:
            fields["amount_cents"] = self._validate_amount(data["amount"])
        if "due_date" in data:
            fields["due_date"] = self._validate_due_date(data["due_date"])
        if "payment_link" in data:
            fields["payment_link"] = str(data["payment_link"] or "").strip()
        if "currency" in data:
            fields["currency"] = str(data["currency"] or "USD").strip()
        if "notes" in data:
            fields["notes"] = str(data["notes"] or "").strip()
        if "cc_emails" in data:
            fields["cc_emails"] = list(data["cc_emails"] or [])
        if "status" in data:
            fields["status"] = self._validate_status(data["status"])
        if "email_flow" in data:
            fields["email_flow"] = str(data["email_flow"] or "custom")

        if current.is_locked and fields.get("status") == InvoiceStatus.DRAFT.value:
            raise ConflictError("An invoice cannot be moved back to draft after it has been sent")

        if current.is_locked:
            changed = [
                k for k in LOCKED_FIELDS
                if k in fields and fields[k] != getattr(current, k)
            ]
            if changed:
                raise ConflictError(
                    "Amount, due date, client and payment link cannot be changed "
                    "after an invoice has been sent"
                )

        if data.get("templates"):
            fields["templates"] = [t.to_dict() for t in templates_from_raw(data["templates"])]
            fields.setdefault("email_flow", "custom")
        if "reminder_schedule" in data:
            schedule = self._validate_schedule(data["reminder_schedule"])
            fields["reminder_schedule"] = schedule
            if schedule != current.reminder_schedule and not data.get("templates"):
                tone = current.templates[0].tone if current.templates else self.default_tone(user_id)
                fields["templates"] = [
                    t.to_dict() for t in initialize_templates_for_schedule(schedule, tone)
                ]
                fields.setdefault("email_flow", "custom")

        if not fields:
            return current
        return self._save_fields(user_id, invoice_id, fields)

    def delete(self, user_id: str, invoice_id: str) -> None:
        require_valid_id(invoice_id, "invoice")
        if not self.store.delete(COLLECTION, invoice_id, user_id=user_id, actor=user_id):
            raise NotFoundError("Invoice not found")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def duplicate(self, user_id: str, invoice_id: str) -> Invoice:
        """Copy an invoice as a new draft with an empty ledger."""
        source = hydrate_invoice(self._load_doc(user_id, invoice_id), self.default_tone(user_id))
        doc = source.to_document()
        for key in ("id", "created_at", "updated_at"):
            doc.pop(key, None)
        doc.update({
            "status": InvoiceStatus.DRAFT.value,
            "templates": [t.to_dict() for t in copy_templates(source.templates)],
            "reminders_sent": [],
            "sent_at": None,
            "paid_at": None,
            **_ERROR_FIELDS_CLEARED,
        })
        new_doc = self.store.insert(COLLECTION, doc, actor=user_id)
        logger.info("Duplicated invoice %s as %s", invoice_id, new_doc["id"])
        return hydrate_invoice(new_doc, self.default_tone(user_id))

    def mark_paid(self, user_id: str, invoice_id: str) -> Invoice:
        require_valid_id(invoice_id, "invoice")
        return self._save_fields(user_id, invoice_id, {
            "status": InvoiceStatus.PAID.value,
            "paid_at": format_timestamp(utc_now()),
        })

    def apply_flow(self, user_id: str, invoice_id: str, flow_id: str) -> Invoice:
        """Replace the invoice's templates with a snapshot of a saved flow."""
        self._load_doc(user_id, invoice_id)
        flow = self.flows.get(user_id, flow_id)
        return self._save_fields(user_id, invoice_id, {
            "templates": [t.to_dict() for t in copy_templates(flow.templates)],
            "reminder_schedule": flow.schedule,
            "email_flow": flow.name,
        })

    # ------------------------------------------------------------------
    # Template editing
    # ------------------------------------------------------------------

    def save_template(self, user_id: str, invoice_id: str, template_id: str,
                      tone: str, subject: str, body: str) -> Invoice:
        _require_known_tone(tone)
        if not (subject or "").strip() or not (body or "").strip():
            raise ValidationError("Subject and body are required.")
        invoice = self.get(user_id, invoice_id)
        template = self._find_template(invoice, template_id)
        return self._replace_template(user_id, invoice, update_tone_variant(template, tone, subject, body))

    def revert_template(self, user_id: str, invoice_id: str, template_id: str, tone: str) -> Invoice:
        _require_known_tone(tone)
        invoice = self.get(user_id, invoice_id)
        template = self._find_template(invoice, template_id)
        return self._replace_template(user_id, invoice, revert_tone_variant_to_defaults(template, tone))

    def select_tone(self, user_id: str, invoice_id: str, template_id: str, tone: str) -> Invoice:
        _require_known_tone(tone)
        invoice = self.get(user_id, invoice_id)
        template = self._find_template(invoice, template_id)
        return self._replace_template(user_id, invoice, update_template_tone(template, tone))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def backfill_templates(self, dry_run: bool = False) -> BackfillResult:
        """Give every invoice with no templates the default set.

        Uses the owner's workspace default tone (falling back to the
        configured default tone) and the invoice's own schedule.
        """
        result = BackfillResult()
        for doc in self.store.find(COLLECTION, newest_first=False):
            result.scanned += 1
            if doc.get("templates"):
                continue

            user_id = str(doc.get("user_id", ""))
            schedule = str(doc.get("reminder_schedule") or doc.get("reminderSchedule")
                           or self.config.scheduler.default_schedule)
            templates = initialize_templates_for_schedule(schedule, self.default_tone(user_id))

            result.updated += 1
            result.updated_ids.append(doc["id"])
            if dry_run:
                logger.info("[dry run] Would backfill templates on invoice %s", doc["id"])
                continue
            self.store.update_fields(COLLECTION, doc["id"], {
                "templates": [t.to_dict() for t in templates],
            }, actor="backfill")
            logger.info("Backfilled %d templates on invoice %s", len(templates), doc["id"])
        return result


def error_fields_cleared() -> dict[str, Any]:
    return dict(_ERROR_FIELDS_CLEARED)


def error_fields_for(message: str, context: str, occurred_at: Optional[Any] = None) -> dict[str, Any]:
    return {
        "last_email_error_message": message,
        "last_email_error_at": format_timestamp(occurred_at or utc_now()),
        "last_email_error_context": context,
    }
