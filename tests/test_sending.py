"""Tests for nudge.sending -- initial send, send-next-reminder and resend.

Covers:
- compose_email: From / Reply-To / To / Cc, escaped values in the HTML part
- send_initial: status guards, required fields, lazy template creation
- send_next_reminder: positional slot choice, ledger guards, in-flight claims
- resend: fixed subject, manual-resend records always appended
- Provider failures: error fields stamped, status and ledger untouched
"""

from datetime import datetime, timezone

import pytest

from nudge.errors import ConflictError, EmailDeliveryError, NotFoundError, ValidationError
from nudge.models import InvoiceStatus, ReminderKind, ReminderRecord
from nudge.sending import CONTEXT_INITIAL, CONTEXT_REMINDER, SendingService, compose_email
from nudge.template_engine import TemplateEngine


USER_ID = "user-1"
NOW = datetime(2024, 6, 20, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(store, config, outbox, workspace):
    return SendingService(store, config, outbox)


@pytest.fixture
def failing_service(store, config, workspace, failing_sender):
    return SendingService(store, config, failing_sender)


def _ledger(store, invoice_id):
    return store.get("invoices", invoice_id)["reminders_sent"]


# ============================================================================
# Composition
# ============================================================================

class TestComposeEmail:
    def test_headers(self, service, seed_invoice, client, workspace, config):
        doc = seed_invoice(cc_emails=["ap@navy.mil"])
        invoice = service.invoices.get(USER_ID, doc["id"])
        email = compose_email(TemplateEngine(config=config), config, invoice,
                              invoice.find_template("reminder1"), client, workspace,
                              identity_email="ada@acme.io")

        assert email.from_header == f"Acme Studio <{config.sender.from_address}>"
        assert email.to == ["grace@navy.mil"]
        assert email.cc == ["ap@navy.mil"]
        assert email.reply_to == "ada@acme.io"
        assert email.subject == "Quick heads-up before your invoice is due"
        assert "$1,250.00" in email.html
        assert "June 30, 2024" in email.text
        assert "Ada" in email.text

    def test_values_escaped_in_html(self, service, seed_invoice, store, config, workspace):
        from nudge.directory import ClientService

        risky = ClientService(store).create(USER_ID, {
            "name": "Mallory", "email": "m@evil.io", "first_name": "<script>x</script>",
        })
        invoice = service.invoices.get(USER_ID, seed_invoice(client_id=risky.id)["id"])
        email = compose_email(TemplateEngine(config=config), config, invoice,
                              invoice.find_template("initial"), risky, workspace)

        assert "<script>" not in email.html
        assert "&lt;script&gt;x&lt;/script&gt;" in email.html
        assert email.reply_to == "billing@acme.io"


# ============================================================================
# Initial send
# ============================================================================

class TestSendInitial:
    def test_sends_and_marks_sent(self, service, seed_invoice, outbox):
        doc = seed_invoice(status="draft")
        invoice = service.send_initial(USER_ID, doc["id"], now=NOW)

        assert invoice.status is InvoiceStatus.SENT
        assert invoice.sent_at == NOW
        assert invoice.reminders_sent == []
        assert [e.subject for e in outbox.outbox] == ["Your invoice is ready!"]

    def test_already_sent(self, service, seed_invoice):
        doc = seed_invoice(status="sent")
        with pytest.raises(ConflictError, match="Invoice has already been sent"):
            service.send_initial(USER_ID, doc["id"])

    def test_paid_invoice(self, service, seed_invoice):
        doc = seed_invoice(status="paid")
        with pytest.raises(ConflictError, match=r"Only draft invoices can be sent \(status is 'paid'\)"):
            service.send_initial(USER_ID, doc["id"])

    def test_requires_payment_link(self, service, seed_invoice, outbox):
        doc = seed_invoice(status="draft", payment_link="")
        with pytest.raises(ValidationError):
            service.send_initial(USER_ID, doc["id"])
        assert outbox.outbox == []

    def test_creates_missing_templates(self, service, seed_invoice, store):
        doc = seed_invoice(status="draft", templates=[])
        service.send_initial(USER_ID, doc["id"], now=NOW)
        assert [t["id"] for t in store.get("invoices", doc["id"])["templates"]] == [
            "initial", "reminder1", "reminder2", "reminder3",
        ]

    def test_missing_initial_template(self, service, seed_invoice):
        doc = seed_invoice(status="draft", templates=[{"id": "reminder1", "subject": "S", "body": "B"}])
        with pytest.raises(ValidationError, match="Invoice template not found"):
            service.send_initial(USER_ID, doc["id"])

    def test_provider_failure_keeps_draft(self, failing_service, seed_invoice, store):
        doc = seed_invoice(status="draft", templates=[])
        with pytest.raises(EmailDeliveryError) as excinfo:
            failing_service.send_initial(USER_ID, doc["id"], now=NOW)

        assert excinfo.value.invoice_changed is False
        assert excinfo.value.invoice_id == doc["id"]
        stored = store.get("invoices", doc["id"])
        assert stored["status"] == "draft"
        assert stored["last_email_error_message"] == "Provider rejected the message"
        assert stored["last_email_error_context"] == CONTEXT_INITIAL
        assert len(stored["templates"]) == 4

    def test_success_clears_previous_error(self, service, seed_invoice, store):
        doc = seed_invoice(status="draft", last_email_error_message="old failure",
                           last_email_error_context=CONTEXT_INITIAL)
        service.send_initial(USER_ID, doc["id"], now=NOW)
        assert store.get("invoices", doc["id"])["last_email_error_message"] is None


# ============================================================================
# Send next reminder
# ============================================================================

class TestSendNextReminder:
    def test_sends_slots_in_order(self, service, seed_invoice, store):
        doc = seed_invoice()
        _, first = service.send_next_reminder(USER_ID, doc["id"], now=NOW)
        invoice, second = service.send_next_reminder(USER_ID, doc["id"], now=NOW)

        assert (first, second) == ("reminder1", "reminder2")
        assert [r.slot_id for r in invoice.reminders_sent] == ["reminder1", "reminder2"]
        assert {r.kind for r in invoice.reminders_sent} == {ReminderKind.SCHEDULED}

    def test_manual_resends_count_towards_position(self, service, seed_invoice):
        doc = seed_invoice(reminders_sent=[
            {"kind": "manual-resend", "slot_id": "reminder3", "sent_at": "2024-06-18T09:00:00+00:00"},
        ])
        _, slot_id = service.send_next_reminder(USER_ID, doc["id"], now=NOW)
        assert slot_id == "reminder2"

    def test_wrong_status(self, service, seed_invoice):
        doc = seed_invoice(status="draft")
        with pytest.raises(ConflictError, match="status 'sent' or 'overdue'"):
            service.send_next_reminder(USER_ID, doc["id"])

    def test_all_sent(self, service, seed_invoice):
        doc = seed_invoice(reminders_sent=["reminder1", "reminder2", "reminder3"])
        with pytest.raises(ConflictError, match="All reminders for this invoice have already been sent"):
            service.send_next_reminder(USER_ID, doc["id"])

    def test_slot_already_recorded(self, service, seed_invoice, outbox):
        doc = seed_invoice(reminders_sent=[{"id": "reminder2", "sentAt": "2024-06-27T08:00:00Z"}])
        with pytest.raises(ConflictError, match="Reminder 'reminder2' has already been sent"):
            service.send_next_reminder(USER_ID, doc["id"])
        assert outbox.outbox == []

    def test_missing_template(self, service, seed_invoice):
        doc = seed_invoice(templates=[{"id": "initial", "subject": "S", "body": "B"}])
        with pytest.raises(ValidationError, match="Reminder template 'reminder1' not found"):
            service.send_next_reminder(USER_ID, doc["id"])

    def test_slot_in_flight(self, service, seed_invoice, store, outbox):
        doc = seed_invoice()
        with store.claim_slot(doc["id"], "reminder1"):
            with pytest.raises(ConflictError, match="already being sent"):
                service.send_next_reminder(USER_ID, doc["id"])
        assert outbox.outbox == []

    def test_slot_recorded_after_invoice_loaded(self, service, seed_invoice, store, outbox, monkeypatch):
        doc = seed_invoice()
        loaded = service.invoices.get(USER_ID, doc["id"])
        store.append_reminder_if_absent(doc["id"], ReminderRecord(ReminderKind.SCHEDULED, "reminder1", NOW))
        monkeypatch.setattr(service.invoices, "get", lambda user_id, invoice_id: loaded)

        with pytest.raises(ConflictError, match="Reminder 'reminder1' has already been sent"):
            service.send_next_reminder(USER_ID, doc["id"], now=NOW)
        assert outbox.outbox == []

    def test_provider_failure_records_nothing(self, failing_service, seed_invoice, store):
        doc = seed_invoice()
        with pytest.raises(EmailDeliveryError):
            failing_service.send_next_reminder(USER_ID, doc["id"], now=NOW)

        stored = store.get("invoices", doc["id"])
        assert stored["reminders_sent"] == []
        assert stored["status"] == "sent"
        assert stored["last_email_error_context"] == CONTEXT_REMINDER

        # The claim is released, so a retry can go ahead.
        with store.claim_slot(doc["id"], "reminder1") as claimed:
            assert claimed


# ============================================================================
# Resend
# ============================================================================

class TestResend:
    def test_resend_uses_fixed_subject(self, service, seed_invoice, outbox, config):
        doc = seed_invoice()
        service.resend(USER_ID, doc["id"], "reminder2", now=NOW)
        assert outbox.outbox[0].subject == config.sender.resend_subject
        assert "due in a few days" in outbox.outbox[0].text

    def test_resend_always_appends(self, service, seed_invoice, store):
        doc = seed_invoice(reminders_sent=[{"kind": "scheduled", "slot_id": "reminder1", "sent_at": None}])
        service.resend(USER_ID, doc["id"], "reminder1", now=NOW)
        invoice = service.resend(USER_ID, doc["id"], "reminder1", now=NOW)

        kinds = [r.kind for r in invoice.reminders_sent]
        assert kinds == [ReminderKind.SCHEDULED, ReminderKind.MANUAL_RESEND, ReminderKind.MANUAL_RESEND]
        assert len(_ledger(store, doc["id"])) == 3

    def test_resend_initial_template(self, service, seed_invoice, outbox):
        doc = seed_invoice()
        invoice = service.resend(USER_ID, doc["id"], "initial", now=NOW)
        assert invoice.reminders_sent[0].slot_id == "initial"
        assert len(outbox.outbox) == 1

    def test_requires_template_id(self, service, seed_invoice):
        doc = seed_invoice()
        with pytest.raises(ValidationError, match="template_id is required"):
            service.resend(USER_ID, doc["id"], "")

    def test_unknown_template(self, service, seed_invoice):
        doc = seed_invoice()
        with pytest.raises(NotFoundError, match="Template not found on this invoice"):
            service.resend(USER_ID, doc["id"], "reminder7")

    def test_failure_adds_no_record(self, failing_service, seed_invoice, store):
        doc = seed_invoice()
        with pytest.raises(EmailDeliveryError) as excinfo:
            failing_service.resend(USER_ID, doc["id"], "reminder1", now=NOW)
        assert "the invoice was not changed" in excinfo.value.user_message
        assert _ledger(store, doc["id"]) == []
