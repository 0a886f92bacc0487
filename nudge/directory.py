"""Clients, workspaces and saved email flows.

Thin services over the document store.  Every read and write is scoped
to the calling user: another user's record is indistinguishable from a
missing one.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Optional

from .catalog import ALL_TONES
from .errors import NotFoundError, ValidationError
from .models import Client, EmailFlow, Workspace, templates_from_raw
from .schedules import REMINDER_SCHEDULES, is_known_schedule
from .store import DocumentStore

logger = logging.getLogger(__name__)

_DOC_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def require_valid_id(doc_id: str, kind: str) -> str:
    """Reject ids that cannot have come from the store.

    Raises:
        ValidationError: ``"Invalid <kind> ID"``.
    """
    if not isinstance(doc_id, str) or not _DOC_ID_RE.match(doc_id):
        raise ValidationError(f"Invalid {kind} ID")
    return doc_id


def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


# ===========================================================================
# Clients
# ===========================================================================

class ClientService:
    collection = "clients"

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    @staticmethod
    def _validated_fields(data: Mapping[str, Any]) -> dict[str, Any]:
        name = _text(data, "name")
        email = _text(data, "email")
        if not name or not email:
            raise ValidationError("Name and email are required.")
        return {
            "name": name,
            "email": email,
            "first_name": _text(data, "first_name"),
            "company_name": _text(data, "company_name"),
        }

    def create(self, user_id: str, data: Mapping[str, Any]) -> Client:
        doc = self.store.insert(self.collection, {"user_id": user_id, **self._validated_fields(data)},
                                actor=user_id)
        logger.info("Created client %s for user %s", doc["id"], user_id)
        return Client.from_document(doc)

    def get(self, user_id: str, client_id: str) -> Client:
        require_valid_id(client_id, "client")
        doc = self.store.get(self.collection, client_id, user_id=user_id)
        if doc is None:
            raise NotFoundError("Client not found")
        return Client.from_document(doc)

    def find(self, user_id: str, client_id: str) -> Optional[Client]:
        """Like ``get`` but returns None instead of raising."""
        doc = self.store.get(self.collection, client_id, user_id=user_id)
        return Client.from_document(doc) if doc else None

    def list(self, user_id: str) -> list[Client]:
        return [Client.from_document(d) for d in self.store.find(self.collection, user_id=user_id)]

    def update(self, user_id: str, client_id: str, data: Mapping[str, Any]) -> Client:
        require_valid_id(client_id, "client")
        doc = self.store.update_fields(self.collection, client_id, self._validated_fields(data),
                                       user_id=user_id, actor=user_id)
        if doc is None:
            raise NotFoundError("Client not found")
        return Client.from_document(doc)

    def delete(self, user_id: str, client_id: str) -> None:
        require_valid_id(client_id, "client")
        if not self.store.delete(self.collection, client_id, user_id=user_id, actor=user_id):
            raise NotFoundError("Client not found")


# ===========================================================================
# Workspace
# ===========================================================================

class WorkspaceService:
    collection = "workspaces"

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def find(self, user_id: str) -> Optional[Workspace]:
        doc = self.store.get(self.collection, user_id)
        return Workspace.from_document(doc) if doc else None

    def get(self, user_id: str) -> Workspace:
        """The user's workspace, or an unsaved default one."""
        return self.find(user_id) or Workspace(user_id=user_id)

    def upsert(self, user_id: str, data: Mapping[str, Any]) -> Workspace:
        """Create or update the user's workspace settings.

        Raises:
            ValidationError: If workspace name or display name is missing,
                or the default tone is not a known tone.
        """
        workspace_name = _text(data, "workspace_name")
        display_name = _text(data, "display_name")
        if not workspace_name or not display_name:
            raise ValidationError("Workspace name and display name are required.")

        tone = _text(data, "default_email_tone") or "professional"
        if tone not in ALL_TONES:
            raise ValidationError(f"default_email_tone must be one of: {', '.join(ALL_TONES)}")

        fields = {
            "user_id": user_id,
            "workspace_name": workspace_name,
            "display_name": display_name,
            "business_email": _text(data, "business_email"),
            "default_due_date_terms": _text(data, "default_due_date_terms") or "net-30",
            "default_email_tone": tone,
            "auto_reminders_enabled": bool(data.get("auto_reminders_enabled", True)),
        }
        doc = self.store.upsert(self.collection, user_id, fields, actor=user_id)
        return Workspace.from_document(doc)


# ===========================================================================
# Email flows
# ===========================================================================

class FlowService:
    collection = "email_flows"

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def create(self, user_id: str, data: Mapping[str, Any]) -> EmailFlow:
        name = _text(data, "name")
        schedule = _text(data, "schedule")
        raw_templates = data.get("templates")
        if not name or not schedule or not raw_templates:
            raise ValidationError("name, schedule, and templates are required.")
        if not is_known_schedule(schedule):
            raise ValidationError(
                f"schedule must be one of: {', '.join(REMINDER_SCHEDULES)}"
            )

        templates = templates_from_raw(raw_templates)
        doc = self.store.insert(self.collection, {
            "user_id": user_id,
            "name": name,
            "schedule": schedule,
            "templates": [t.to_dict() for t in templates],
        }, actor=user_id)
        return EmailFlow.from_document(doc)

    def get(self, user_id: str, flow_id: str) -> EmailFlow:
        require_valid_id(flow_id, "flow")
        doc = self.store.get(self.collection, flow_id, user_id=user_id)
        if doc is None:
            raise NotFoundError("Flow not found")
        return EmailFlow.from_document(doc)

    def list(self, user_id: str) -> list[EmailFlow]:
        return [EmailFlow.from_document(d) for d in self.store.find(self.collection, user_id=user_id)]

    def delete(self, user_id: str, flow_id: str) -> None:
        """Delete a flow.  Invoices that copied its templates keep their copies."""
        require_valid_id(flow_id, "flow")
        if not self.store.delete(self.collection, flow_id, user_id=user_id, actor=user_id):
            raise NotFoundError("Flow not found or already deleted")
