"""Sender and recipient identity resolution for Nudge.

Every outgoing email needs four names/addresses worked out from the
workspace, the client and the request's identity:

    From name    workspace name -> display name -> configured fallback ("Nudge")
    {{yourName}} display name -> workspace name -> configured fallback
    Reply-To     identity provider's primary email -> workspace business email
    To           the client's email, greeted by first name

The two name chains run in opposite orders: the mailbox shows the
business, while the sign-off in the body is the person.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from email.utils import formataddr
from typing import Optional

from .config import SenderSettings
from .errors import ValidationError
from .models import Client, Invoice, Workspace

logger = logging.getLogger(__name__)

_HEADER_UNSAFE_RE = re.compile(r"[\x00-\x1f\x7f\"<>]")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def is_valid_email(address: str) -> bool:
    """Loose shape check; the provider does the real validation.

    >>> is_valid_email("ada@example.com")
    True
    >>> is_valid_email("not-an-address")
    False
    """
    return bool(_EMAIL_RE.match(_clean(address)))


# ---------------------------------------------------------------------------
# Name chains
# ---------------------------------------------------------------------------

def resolve_from_name(workspace: Optional[Workspace], fallback: str = "Nudge") -> str:
    """Display name for the From header.

    >>> resolve_from_name(Workspace(user_id="u", workspace_name="Acme", display_name="Ada"))
    'Acme'
    >>> resolve_from_name(None)
    'Nudge'
    """
    if workspace is not None:
        for candidate in (workspace.workspace_name, workspace.display_name):
            if _clean(candidate):
                return _clean(candidate)
    return fallback


def resolve_your_name(workspace: Optional[Workspace], fallback: str = "Nudge") -> str:
    """Value for the ``{{yourName}}`` placeholder.

    >>> resolve_your_name(Workspace(user_id="u", workspace_name="Acme", display_name="Ada"))
    'Ada'
    """
    if workspace is not None:
        for candidate in (workspace.display_name, workspace.workspace_name):
            if _clean(candidate):
                return _clean(candidate)
    return fallback


def resolve_reply_to(
    workspace: Optional[Workspace],
    identity_email: Optional[str] = None,
) -> Optional[str]:
    """Reply-To address, or None when nothing usable is known."""
    for candidate in (identity_email, workspace.business_email if workspace else None):
        if is_valid_email(candidate or ""):
            return _clean(candidate)
    return None


def format_mailbox(name: str, address: str) -> str:
    """``"Name <address>"`` with header-unsafe characters removed from the name.

    >>> format_mailbox("Acme\\r\\n Studio", "reminders@nudge.app")
    'Acme Studio <reminders@nudge.app>'
    """
    safe_name = _HEADER_UNSAFE_RE.sub("", name or "").strip()
    return formataddr((safe_name, address)) if safe_name else address


# ---------------------------------------------------------------------------
# Resolved identities
# ---------------------------------------------------------------------------

@dataclass
class SenderIdentity:
    from_name: str
    from_address: str
    your_name: str
    reply_to: Optional[str] = None

    @property
    def from_header(self) -> str:
        return format_mailbox(self.from_name, self.from_address)


@dataclass
class Recipient:
    email: str
    name: str
    first_name: str
    cc: list[str] = field(default_factory=list)


def resolve_sender(
    workspace: Optional[Workspace],
    settings: SenderSettings,
    identity_email: Optional[str] = None,
) -> SenderIdentity:
    """Work out the full sender identity for one email."""
    return SenderIdentity(
        from_name=resolve_from_name(workspace, settings.fallback_name),
        from_address=settings.from_address,
        your_name=resolve_your_name(workspace, settings.fallback_name),
        reply_to=resolve_reply_to(workspace, identity_email),
    )


def resolve_recipient(client: Client, invoice: Optional[Invoice] = None) -> Recipient:
    """Build the To/Cc set for a client.

    Raises:
        ValidationError: If the client has no usable email address.
    """
    if not is_valid_email(client.email):
        raise ValidationError(f"Client {client.id} has no valid email address")

    cc: list[str] = []
    if invoice is not None:
        for address in invoice.cc_emails:
            if is_valid_email(address) and address != client.email and address not in cc:
                cc.append(_clean(address))
            elif not is_valid_email(address):
                logger.warning("Dropping invalid cc address %r on invoice %s", address, invoice.id)

    return Recipient(
        email=_clean(client.email),
        name=_clean(client.name),
        first_name=client.greeting_name,
        cc=cc,
    )
