"""
Nudge -- Manual Sends

The three user-triggered sends:

    send_initial          draft -> sent, emails the ``initial`` template
    send_next_reminder    emails the next unsent reminder slot
    resend                emails any slot again with a fixed subject

All three catch the provider's ``EmailSendError``, stamp the invoice's
``last_email_error_*`` fields and raise ``EmailDeliveryError`` saying
whether the invoice itself changed.  A failed send never adds a ledger
record and never moves the invoice's status.

``compose_email`` is shared with the daily batch in
``nudge.reminder_scheduler``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from .config import NudgeConfig
from .contact_resolver import resolve_recipient, resolve_sender
from .directory import ClientService, WorkspaceService
from .email_sender import EmailSender, OutgoingEmail
from .errors import ConflictError, EmailDeliveryError, EmailSendError, NotFoundError, ValidationError
from .invoices import COLLECTION, InvoiceService, error_fields_cleared, error_fields_for
from .models import (
    REMINDABLE_STATUSES,
    Client,
    Invoice,
    InvoiceStatus,
    ReminderKind,
    ReminderRecord,
    TemplateInstance,
    Workspace,
    format_timestamp,
    utc_now,
)
from .placeholders import PlaceholderContext
from .schedules import INITIAL_SLOT_ID, reminder_slots
from .store import DocumentStore
from .template_engine import TemplateEngine
from .template_resolver import get_tone_variant, initialize_templates_for_schedule

logger = logging.getLogger(__name__)

# Error contexts stamped into last_email_error_context.
CONTEXT_INITIAL = "initial-send"
CONTEXT_REMINDER = "send-reminder"
CONTEXT_RESEND = "resend"


def compose_email(
    engine: TemplateEngine,
    config: NudgeConfig,
    invoice: Invoice,
    template: TemplateInstance,
    client: Client,
    workspace: Optional[Workspace],
    identity_email: Optional[str] = None,
    subject_override: Optional[str] = None,
) -> OutgoingEmail:
    """Render one template for one invoice into a ready-to-send email."""
    sender = resolve_sender(workspace, config.sender, identity_email)
    recipient = resolve_recipient(client, invoice)

    context = PlaceholderContext(
        client_name=recipient.name,
        client_first_name=recipient.first_name,
        amount_cents=invoice.amount_cents,
        due_date=invoice.due_date,
        payment_link=invoice.payment_link,
        your_name=sender.your_name,
    )
    rendered = engine.render(template, context, subject_override=subject_override)

    return OutgoingEmail(
        from_header=sender.from_header,
        to=[recipient.email],
        cc=recipient.cc,
        subject=rendered.subject,
        html=rendered.html,
        text=rendered.text,
        reply_to=sender.reply_to,
    )


class SendingService:
    """User-triggered invoice and reminder emails."""

    def __init__(
        self,
        store: DocumentStore,
        config: NudgeConfig,
        email_sender: EmailSender,
        engine: Optional[TemplateEngine] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.email_sender = email_sender
        self.engine = engine or TemplateEngine(config=config)
        self.invoices = InvoiceService(store, config)
        self.clients = ClientService(store)
        self.workspaces = WorkspaceService(store)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _client_for(self, invoice: Invoice) -> Client:
        client = self.clients.find(invoice.user_id, invoice.client_id)
        if client is None:
            raise NotFoundError("Client not found")
        return client

    def _deliver(
        self,
        invoice: Invoice,
        template: TemplateInstance,
        context: str,
        now: datetime,
        identity_email: Optional[str],
        subject_override: Optional[str] = None,
        failure_fields: Optional[dict] = None,
    ) -> str:
        """Compose and send; on provider failure stamp the error and raise."""
        client = self._client_for(invoice)
        workspace = self.workspaces.find(invoice.user_id)
        email = compose_email(
            self.engine, self.config, invoice, template, client, workspace,
            identity_email=identity_email, subject_override=subject_override,
        )
        try:
            return self.email_sender.send(email)
        except EmailSendError as exc:
            logger.error("Email for invoice %s (%s) failed: %s", invoice.id, template.id, exc)
            fields = error_fields_for(exc.message, context, now)
            fields.update(failure_fields or {})
            self.store.update_fields(COLLECTION, invoice.id, fields, actor=invoice.user_id)
            raise EmailDeliveryError(exc.message, context=context,
                                     invoice_changed=False, occurred_at=now,
                                     invoice_id=invoice.id) from exc

    # ------------------------------------------------------------------
    # Initial send
    # ------------------------------------------------------------------

    def send_initial(
        self,
        user_id: str,
        invoice_id: str,
        identity_email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """Email the ``initial`` template and move the invoice to sent.

        Raises:
            ConflictError: The invoice is not a draft.
            ValidationError: Amount, due date or payment link is missing,
                or the invoice has no initial template.
            EmailDeliveryError: The provider failed; status is unchanged.
        """
        now = now or utc_now()
        invoice = self.invoices.get(user_id, invoice_id)

        if invoice.status is InvoiceStatus.SENT:
            raise ConflictError("Invoice has already been sent")
        if invoice.status is not InvoiceStatus.DRAFT:
            raise ConflictError(
                f"Only draft invoices can be sent (status is '{invoice.status.value}')"
            )
        if invoice.amount_cents <= 0 or not invoice.due_date or not invoice.payment_link:
            raise ValidationError("Amount, due date and payment link are required before sending")

        created_templates: dict = {}
        if not invoice.templates:
            invoice.templates = initialize_templates_for_schedule(
                invoice.reminder_schedule, self.invoices.default_tone(user_id),
            )
            created_templates = {"templates": [t.to_dict() for t in invoice.templates]}
            logger.info("Created default templates for invoice %s on first send", invoice.id)

        template = invoice.find_template(INITIAL_SLOT_ID)
        if template is None:
            raise ValidationError("Invoice template not found")

        self._deliver(invoice, template, CONTEXT_INITIAL, now, identity_email,
                      failure_fields=created_templates)

        fields = {
            "status": InvoiceStatus.SENT.value,
            "sent_at": format_timestamp(now),
            **error_fields_cleared(),
            **created_templates,
        }
        self.store.update_fields(COLLECTION, invoice.id, fields, user_id=user_id, actor=user_id)
        logger.info("Sent invoice %s", invoice.id)
        return self.invoices.get(user_id, invoice_id)

    # ------------------------------------------------------------------
    # Send next reminder
    # ------------------------------------------------------------------

    def send_next_reminder(
        self,
        user_id: str,
        invoice_id: str,
        identity_email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Invoice, str]:
        """Email the next reminder slot by position.

        The slot is ``reminder_slots(schedule)[len(reminders_sent)]``: every
        ledger record counts towards the position, whatever its kind.

        Returns:
            The updated invoice and the slot id that was sent.

        Raises:
            ConflictError: Wrong status, all reminders sent, or the slot is
                already recorded or in flight.
            ValidationError: The slot's template is missing on the invoice.
            EmailDeliveryError: The provider failed; nothing was recorded.
        """
        now = now or utc_now()
        invoice = self.invoices.get(user_id, invoice_id)

        if invoice.status not in REMINDABLE_STATUSES:
            raise ConflictError(
                "Reminders can only be sent for invoices with status 'sent' or 'overdue'"
            )

        slots = reminder_slots(invoice.reminder_schedule)
        next_index = len(invoice.reminders_sent)
        if next_index >= len(slots):
            raise ConflictError("All reminders for this invoice have already been sent")

        slot_id = slots[next_index].id
        template = invoice.find_template(slot_id)
        if template is None:
            raise ValidationError(f"Reminder template '{slot_id}' not found in invoice templates")

        if slot_id in invoice.sent_slot_ids:
            raise ConflictError(f"Reminder '{slot_id}' has already been sent")

        with self.store.claim_slot(invoice.id, slot_id, now) as claimed:
            if not claimed:
                raise ConflictError(f"Reminder '{slot_id}' is already being sent")
            if any(r.kind is ReminderKind.SCHEDULED and r.slot_id == slot_id
                   for r in self.store.load_ledger(invoice.id)):
                raise ConflictError(f"Reminder '{slot_id}' has already been sent")

            self._deliver(invoice, template, CONTEXT_REMINDER, now, identity_email)

            record = ReminderRecord(kind=ReminderKind.SCHEDULED, slot_id=slot_id, sent_at=now)
            if not self.store.append_reminder_if_absent(invoice.id, record,
                                                        extra_fields=error_fields_cleared(),
                                                        actor=user_id):
                logger.warning("Reminder %s on invoice %s was recorded by another run", slot_id, invoice.id)

        logger.info("Sent reminder %s for invoice %s", slot_id, invoice.id)
        return self.invoices.get(user_id, invoice_id), slot_id

    # ------------------------------------------------------------------
    # Resend
    # ------------------------------------------------------------------

    def resend(
        self,
        user_id: str,
        invoice_id: str,
        template_id: str,
        identity_email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """Email one slot's content again under the fixed resend subject.

        Appends a ``manual-resend`` ledger record on success.
        """
        if not template_id or not isinstance(template_id, str):
            raise ValidationError("template_id is required")

        now = now or utc_now()
        invoice = self.invoices.get(user_id, invoice_id)
        template = invoice.find_template(template_id)
        if template is None:
            raise NotFoundError("Template not found on this invoice")

        if not template.body:
            variant = get_tone_variant(template, template.tone)
            if not variant.body:
                variant = get_tone_variant(template, "friendly")
            template = TemplateInstance(
                id=template.id, label=template.label, offset=template.offset,
                tone=template.tone, subject=template.subject, body=variant.body,
                tone_variants=template.tone_variants,
            )

        self._deliver(invoice, template, CONTEXT_RESEND, now, identity_email,
                      subject_override=self.config.sender.resend_subject)

        record = ReminderRecord(kind=ReminderKind.MANUAL_RESEND, slot_id=template_id, sent_at=now)
        self.store.append_reminder_if_absent(invoice.id, record,
                                             extra_fields=error_fields_cleared(), actor=user_id)
        logger.info("Resent %s for invoice %s", template_id, invoice.id)
        return self.invoices.get(user_id, invoice_id)
