"""Shared fixtures: a throwaway store, a recording sender and seed helpers."""

import pytest

from nudge.config import NudgeConfig
from nudge.directory import ClientService, WorkspaceService
from nudge.email_sender import LogOnlyEmailSender
from nudge.errors import EmailSendError
from nudge.store import DocumentStore
from nudge.template_resolver import initialize_templates_for_schedule

USER_ID = "user-1"


class FailingSender:
    """Email sender that always fails like a rejecting provider."""

    def __init__(self, message="Provider rejected the message"):
        self.message = message
        self.attempts = 0

    def send(self, email):
        self.attempts += 1
        raise EmailSendError(self.message)


@pytest.fixture
def config(tmp_path):
    cfg = NudgeConfig()
    cfg.database.path = str(tmp_path / "nudge.db")
    cfg.delivery.backend = "log"
    cfg.cron.secret = ""
    return cfg


@pytest.fixture
def store(config):
    return DocumentStore(config.database.resolved_path)


@pytest.fixture
def outbox():
    return LogOnlyEmailSender()


@pytest.fixture
def workspace(store):
    return WorkspaceService(store).upsert(USER_ID, {
        "workspace_name": "Acme Studio",
        "display_name": "Ada",
        "business_email": "billing@acme.io",
        "default_email_tone": "friendly",
    })


@pytest.fixture
def client(store):
    return ClientService(store).create(USER_ID, {"name": "Grace Hopper", "email": "grace@navy.mil"})


@pytest.fixture
def seed_invoice(store, client):
    """Factory inserting an invoice document straight into the store."""

    def _seed(**overrides):
        schedule = overrides.pop("reminder_schedule", "standard")
        doc = {
            "user_id": USER_ID,
            "client_id": client.id,
            "amount_cents": 125000,
            "currency": "USD",
            "due_date": "2024-06-30",
            "payment_link": "https://pay.example/inv/1",
            "status": "sent",
            "reminder_schedule": schedule,
            "templates": [t.to_dict() for t in initialize_templates_for_schedule(schedule, "friendly")],
            "reminders_sent": [],
        }
        doc.update(overrides)
        return store.insert("invoices", doc)

    return _seed


@pytest.fixture
def failing_sender():
    return FailingSender()
