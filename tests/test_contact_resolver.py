"""Tests for nudge.contact_resolver -- sender and recipient identity.

Covers:
- From-name chain: workspace name -> display name -> fallback
- yourName chain: display name -> workspace name -> fallback
- Reply-To: identity email -> business email -> none
- Header-safe mailbox formatting
- Recipient resolution: validation, first-name fallback, cc filtering
"""

import pytest

from nudge.config import SenderSettings
from nudge.contact_resolver import (
    format_mailbox,
    is_valid_email,
    resolve_from_name,
    resolve_recipient,
    resolve_reply_to,
    resolve_sender,
    resolve_your_name,
)
from nudge.errors import ValidationError
from nudge.models import Client, Invoice, Workspace


# ============================================================================
# Test Data Helpers
# ============================================================================

def _make_workspace(**overrides):
    defaults = {
        "user_id": "user-1",
        "workspace_name": "Acme Studio",
        "display_name": "Ada",
        "business_email": "billing@acme.io",
    }
    defaults.update(overrides)
    return Workspace(**defaults)


def _make_client(**overrides):
    defaults = {
        "id": "client-1",
        "user_id": "user-1",
        "name": "Grace Hopper",
        "email": "grace@navy.mil",
    }
    defaults.update(overrides)
    return Client(**defaults)


# ============================================================================
# Name chains
# ============================================================================

class TestNameChains:
    @pytest.mark.parametrize("workspace_name,display_name,expected", [
        ("Acme Studio", "Ada", "Acme Studio"),
        ("", "Ada", "Ada"),
        ("  ", "", "Nudge"),
    ])
    def test_from_name(self, workspace_name, display_name, expected):
        workspace = _make_workspace(workspace_name=workspace_name, display_name=display_name)
        assert resolve_from_name(workspace) == expected

    @pytest.mark.parametrize("workspace_name,display_name,expected", [
        ("Acme Studio", "Ada", "Ada"),
        ("Acme Studio", "", "Acme Studio"),
        ("", "", "Nudge"),
    ])
    def test_your_name(self, workspace_name, display_name, expected):
        workspace = _make_workspace(workspace_name=workspace_name, display_name=display_name)
        assert resolve_your_name(workspace) == expected

    def test_no_workspace(self):
        assert resolve_from_name(None, "Fallback") == "Fallback"
        assert resolve_your_name(None, "Fallback") == "Fallback"


class TestReplyTo:
    def test_identity_email_wins(self):
        assert resolve_reply_to(_make_workspace(), "ada@acme.io") == "ada@acme.io"

    def test_business_email_fallback(self):
        assert resolve_reply_to(_make_workspace(), None) == "billing@acme.io"

    def test_invalid_identity_email_skipped(self):
        assert resolve_reply_to(_make_workspace(), "not-an-email") == "billing@acme.io"

    def test_none_available(self):
        assert resolve_reply_to(_make_workspace(business_email=""), None) is None
        assert resolve_reply_to(None) is None


class TestMailbox:
    def test_plain(self):
        assert format_mailbox("Acme Studio", "reminders@nudge.app") == "Acme Studio <reminders@nudge.app>"

    def test_unsafe_characters_removed(self):
        assert format_mailbox('Evil"<Corp>', "reminders@nudge.app") == "EvilCorp <reminders@nudge.app>"

    def test_empty_name(self):
        assert format_mailbox("", "reminders@nudge.app") == "reminders@nudge.app"

    def test_sender_identity(self):
        sender = resolve_sender(_make_workspace(), SenderSettings(from_address="r@nudge.app"), "ada@acme.io")
        assert sender.from_header == "Acme Studio <r@nudge.app>"
        assert sender.your_name == "Ada"
        assert sender.reply_to == "ada@acme.io"


# ============================================================================
# Recipients
# ============================================================================

class TestRecipient:
    def test_first_name_fallback(self):
        recipient = resolve_recipient(_make_client())
        assert recipient.email == "grace@navy.mil"
        assert recipient.first_name == "Grace"
        assert recipient.cc == []

    def test_invalid_email_rejected(self):
        with pytest.raises(ValidationError):
            resolve_recipient(_make_client(email="grace"))

    def test_cc_filtered(self):
        invoice = Invoice(id="inv-1", user_id="user-1", client_id="client-1",
                          cc_emails=["ap@navy.mil", "grace@navy.mil", "bogus", "ap@navy.mil"])
        assert resolve_recipient(_make_client(), invoice).cc == ["ap@navy.mil"]

    @pytest.mark.parametrize("address,expected", [
        ("a@b.co", True),
        (" a@b.co ", True),
        ("a@b", False),
        ("a b@c.io", False),
        ("", False),
    ])
    def test_is_valid_email(self, address, expected):
        assert is_valid_email(address) is expected
