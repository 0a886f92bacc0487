"""Tests for nudge.invoices and nudge.directory -- record operations.

Covers:
- InvoiceService.create: required fields, cents conversion, default templates
- Ownership and id validation on reads
- update: locked fields after send, schedule change resets templates
- duplicate / mark_paid / apply_flow
- Template edits: save, revert, tone selection
- backfill_templates (dry run and real)
- Client, workspace and flow validation
"""

import pytest

from nudge.catalog import get_template_defaults
from nudge.directory import ClientService, FlowService, WorkspaceService, require_valid_id
from nudge.errors import ConflictError, NotFoundError, ValidationError
from nudge.invoices import InvoiceService, dollars_to_cents
from nudge.models import InvoiceStatus, ReminderKind
from nudge.template_resolver import initialize_templates_for_schedule

USER_ID = "user-1"


@pytest.fixture
def service(store, config):
    return InvoiceService(store, config)


def _create_payload(client, **overrides):
    payload = {
        "client_id": client.id,
        "amount": 1250,
        "currency": "USD",
        "due_date": "2024-06-30",
        "status": "draft",
        "payment_link": "https://pay.example/inv/1",
    }
    payload.update(overrides)
    return payload


# ============================================================================
# Amounts & ids
# ============================================================================

class TestHelpers:
    @pytest.mark.parametrize("amount,expected", [
        (1250, 125000),
        ("19.995", 2000),
        (0.1, 10),
        ("99.99", 9999),
    ])
    def test_dollars_to_cents(self, amount, expected):
        assert dollars_to_cents(amount) == expected

    @pytest.mark.parametrize("amount", ["abc", "NaN", "Infinity"])
    def test_dollars_to_cents_rejects(self, amount):
        with pytest.raises(ValidationError):
            dollars_to_cents(amount)

    def test_require_valid_id(self):
        assert require_valid_id("a" * 32, "invoice") == "a" * 32
        with pytest.raises(ValidationError, match="Invalid invoice ID"):
            require_valid_id("../../etc", "invoice")


# ============================================================================
# Create / read
# ============================================================================

class TestCreate:
    def test_create_with_default_templates(self, service, client, workspace):
        invoice = service.create(USER_ID, _create_payload(client))

        assert invoice.amount_cents == 125000
        assert invoice.status is InvoiceStatus.DRAFT
        assert invoice.reminder_schedule == "standard"
        assert [t.id for t in invoice.templates] == ["initial", "reminder1", "reminder2", "reminder3"]
        assert {t.tone for t in invoice.templates} == {"friendly"}
        assert invoice.reminders_sent == []

    def test_create_uses_workspace_tone(self, service, client, store):
        WorkspaceService(store).upsert(USER_ID, {
            "workspace_name": "Acme", "display_name": "Ada", "default_email_tone": "firm",
        })
        invoice = service.create(USER_ID, _create_payload(client, reminder_schedule="light"))
        assert {t.tone for t in invoice.templates} == {"firm"}
        assert len(invoice.templates) == 3

    def test_missing_required_fields(self, service, client):
        with pytest.raises(ValidationError, match="client_id, amount, currency, due_date, and status are required."):
            service.create(USER_ID, _create_payload(client, currency=""))

    @pytest.mark.parametrize("overrides", [
        {"amount": -5},
        {"amount": "lots"},
        {"due_date": "30/06/2024"},
        {"status": "archived"},
        {"reminder_schedule": "aggressive"},
    ])
    def test_invalid_fields(self, service, client, overrides):
        with pytest.raises(ValidationError):
            service.create(USER_ID, _create_payload(client, **overrides))

    def test_unknown_client(self, service, client):
        with pytest.raises(NotFoundError, match="Client not found"):
            service.create(USER_ID, _create_payload(client, client_id="0" * 32))

    def test_other_users_invoice_is_not_found(self, service, client):
        invoice = service.create(USER_ID, _create_payload(client))
        with pytest.raises(NotFoundError, match="Invoice not found"):
            service.get("user-2", invoice.id)

    def test_invalid_id(self, service):
        with pytest.raises(ValidationError, match="Invalid invoice ID"):
            service.get(USER_ID, "not-an-id")

    def test_list_newest_first(self, service, client):
        first = service.create(USER_ID, _create_payload(client))
        second = service.create(USER_ID, _create_payload(client))
        assert [i.id for i in service.list(USER_ID)] == [second.id, first.id]

    def test_delete(self, service, client):
        invoice = service.create(USER_ID, _create_payload(client))
        service.delete(USER_ID, invoice.id)
        with pytest.raises(NotFoundError):
            service.delete(USER_ID, invoice.id)


# ============================================================================
# Update
# ============================================================================

class TestUpdate:
    def test_draft_fields_editable(self, service, client):
        invoice = service.create(USER_ID, _create_payload(client))
        updated = service.update(USER_ID, invoice.id, {"amount": 900, "notes": " net 30 "})
        assert updated.amount_cents == 90000
        assert updated.notes == "net 30"

    def test_locked_after_send(self, service, seed_invoice):
        doc = seed_invoice(status="sent")
        with pytest.raises(ConflictError):
            service.update(USER_ID, doc["id"], {"amount": 10})

    def test_unchanged_locked_value_allowed(self, service, seed_invoice):
        doc = seed_invoice(status="sent")
        updated = service.update(USER_ID, doc["id"], {"amount": 1250, "notes": "thanks"})
        assert updated.notes == "thanks"

    def test_status_only_update_on_sent_invoice(self, service, seed_invoice):
        doc = seed_invoice(status="sent")
        assert service.update(USER_ID, doc["id"], {"status": "overdue"}).status is InvoiceStatus.OVERDUE

    @pytest.mark.parametrize("status", ["sent", "overdue", "paid"])
    def test_cannot_move_back_to_draft(self, service, seed_invoice, store, status):
        doc = seed_invoice(status=status)
        with pytest.raises(ConflictError, match="cannot be moved back to draft"):
            service.update(USER_ID, doc["id"], {"status": "draft"})
        with pytest.raises(ConflictError):
            service.update(USER_ID, doc["id"], {"amount": 1})

        stored = store.get("invoices", doc["id"])
        assert stored["status"] == status
        assert stored["amount_cents"] == 125000

    def test_schedule_change_resets_templates(self, service, client):
        invoice = service.create(USER_ID, _create_payload(client))
        updated = service.update(USER_ID, invoice.id, {"reminder_schedule": "persistent"})
        assert updated.reminder_schedule == "persistent"
        assert [t.id for t in updated.templates][-1] == "reminder4"
        assert updated.email_flow == "custom"

    def test_empty_update_is_noop(self, service, client):
        invoice = service.create(USER_ID, _create_payload(client))
        assert service.update(USER_ID, invoice.id, {}).id == invoice.id


# ============================================================================
# Lifecycle
# ============================================================================

class TestLifecycle:
    def test_duplicate_is_fresh_draft(self, service, seed_invoice, store):
        doc = seed_invoice(
            status="paid",
            reminders_sent=[{"kind": "scheduled", "slot_id": "reminder1", "sent_at": "2024-06-23T09:00:00+00:00"}],
            last_email_error_message="boom",
        )
        copy = service.duplicate(USER_ID, doc["id"])

        assert copy.id != doc["id"]
        assert copy.status is InvoiceStatus.DRAFT
        assert copy.reminders_sent == []
        assert copy.last_email_error_message is None
        assert copy.amount_cents == 125000
        assert [t.id for t in copy.templates] == [t["id"] for t in doc["templates"]]
        assert len(store.get("invoices", doc["id"])["reminders_sent"]) == 1

    def test_mark_paid(self, service, seed_invoice):
        doc = seed_invoice(status="overdue")
        paid = service.mark_paid(USER_ID, doc["id"])
        assert paid.status is InvoiceStatus.PAID
        assert paid.paid_at is not None

    def test_apply_flow_copies_templates(self, service, seed_invoice, store):
        templates = initialize_templates_for_schedule("light", "firm")
        flow = FlowService(store).create(USER_ID, {
            "name": "Gentle", "schedule": "light", "templates": [t.to_dict() for t in templates],
        })
        doc = seed_invoice(status="draft")

        invoice = service.apply_flow(USER_ID, doc["id"], flow.id)
        assert invoice.email_flow == "Gentle"
        assert invoice.reminder_schedule == "light"
        assert [t.id for t in invoice.templates] == ["initial", "reminder1", "reminder2"]

        FlowService(store).delete(USER_ID, flow.id)
        assert len(service.get(USER_ID, doc["id"]).templates) == 3


# ============================================================================
# Template editing
# ============================================================================

class TestTemplateEdits:
    def test_save_template(self, service, seed_invoice):
        doc = seed_invoice()
        invoice = service.save_template(USER_ID, doc["id"], "reminder1", "firm", "Pay {{amount}}", "Now.")
        template = invoice.find_template("reminder1")
        assert template.tone == "firm"
        assert template.subject == "Pay {{amount}}"
        assert template.tone_variants["firm"].is_customized
        assert invoice.email_flow == "custom"

    def test_save_requires_subject_and_body(self, service, seed_invoice):
        doc = seed_invoice()
        with pytest.raises(ValidationError, match="Subject and body are required."):
            service.save_template(USER_ID, doc["id"], "reminder1", "firm", "", "Body")

    def test_unknown_template(self, service, seed_invoice):
        doc = seed_invoice()
        with pytest.raises(NotFoundError, match="Template not found on this invoice"):
            service.select_tone(USER_ID, doc["id"], "reminder9", "firm")

    def test_revert_template(self, service, seed_invoice):
        doc = seed_invoice()
        service.save_template(USER_ID, doc["id"], "reminder2", "friendly", "Custom", "Custom body")
        invoice = service.revert_template(USER_ID, doc["id"], "reminder2", "friendly")
        template = invoice.find_template("reminder2")
        assert template.subject == get_template_defaults("reminder2", "friendly").subject
        assert not template.tone_variants["friendly"].is_customized

    def test_select_tone(self, service, seed_invoice):
        doc = seed_invoice()
        invoice = service.select_tone(USER_ID, doc["id"], "initial", "professional")
        template = invoice.find_template("initial")
        assert template.tone == "professional"
        assert template.subject == get_template_defaults("initial", "professional").subject

    @pytest.mark.parametrize("edit", [
        lambda s, i: s.save_template(USER_ID, i, "reminder1", "sarcastic", "S", "B"),
        lambda s, i: s.revert_template(USER_ID, i, "reminder1", "sarcastic"),
        lambda s, i: s.select_tone(USER_ID, i, "reminder1", "sarcastic"),
    ])
    def test_unknown_tone_rejected(self, service, seed_invoice, store, edit):
        doc = seed_invoice()
        with pytest.raises(ValidationError, match="tone must be one of: friendly, professional, firm"):
            edit(service, doc["id"])

        [stored] = [t for t in store.get("invoices", doc["id"])["templates"] if t["id"] == "reminder1"]
        assert stored["tone"] == "friendly"
        assert "sarcastic" not in (stored.get("tone_variants") or {})


# ============================================================================
# Backfill
# ============================================================================

class TestBackfill:
    def test_dry_run_changes_nothing(self, service, seed_invoice, store):
        doc = seed_invoice(templates=[])
        result = service.backfill_templates(dry_run=True)
        assert result.updated_ids == [doc["id"]]
        assert store.get("invoices", doc["id"])["templates"] == []

    def test_backfill_uses_invoice_schedule(self, service, seed_invoice, store):
        seed_invoice()
        doc = seed_invoice(templates=[], reminder_schedule="persistent")
        result = service.backfill_templates()

        assert (result.scanned, result.updated) == (2, 1)
        ids = [t["id"] for t in store.get("invoices", doc["id"])["templates"]]
        assert ids == ["initial", "reminder1", "reminder2", "reminder3", "reminder4"]


# ============================================================================
# Directory
# ============================================================================

class TestDirectory:
    def test_client_requires_name_and_email(self, store):
        with pytest.raises(ValidationError, match="Name and email are required."):
            ClientService(store).create(USER_ID, {"name": "Ada"})

    def test_client_update_and_scope(self, store, client):
        service = ClientService(store)
        updated = service.update(USER_ID, client.id, {"name": "Grace B. Hopper", "email": "g@navy.mil"})
        assert updated.email == "g@navy.mil"
        with pytest.raises(NotFoundError):
            service.get("user-2", client.id)

    def test_workspace_defaults(self, store):
        workspace = WorkspaceService(store).get("nobody")
        assert workspace.default_email_tone == "professional"

    def test_workspace_validation(self, store):
        service = WorkspaceService(store)
        with pytest.raises(ValidationError, match="Workspace name and display name are required."):
            service.upsert(USER_ID, {"workspace_name": "Acme"})
        with pytest.raises(ValidationError):
            service.upsert(USER_ID, {"workspace_name": "Acme", "display_name": "Ada",
                                     "default_email_tone": "sarcastic"})

    def test_flow_validation(self, store):
        with pytest.raises(ValidationError, match="name, schedule, and templates are required."):
            FlowService(store).create(USER_ID, {"name": "X", "schedule": "light", "templates": []})

    def test_flow_delete_twice(self, store):
        service = FlowService(store)
        flow = service.create(USER_ID, {"name": "X", "schedule": "light",
                                        "templates": [{"id": "initial", "subject": "S", "body": "B"}]})
        service.delete(USER_ID, flow.id)
        with pytest.raises(NotFoundError, match="Flow not found or already deleted"):
            service.delete(USER_ID, flow.id)


def test_get_reads_legacy_resend_record(service, seed_invoice):
    doc = seed_invoice(reminders_sent=[{"templateId": "reminder1", "type": "manual-resend"}])
    assert service.get(USER_ID, doc["id"]).reminders_sent[0].kind is ReminderKind.MANUAL_RESEND
