"""
Nudge -- Placeholder Substitution

Fills ``{{token}}`` placeholders in template subjects and bodies.

Two passes with different safety rules:
  - Subject pass: substituted values and the final header value lose all
    CR/LF and other control characters (no header injection).
  - Body pass: each substituted value is HTML-escaped.  The literal
    template text around the placeholders is trusted and left alone.

Unknown placeholders (and malformed ones such as ``{{ amount }}``) are left
verbatim.

Also home to the placeholder guard applied to rewritten copy: a rewrite
must keep exactly the same set of placeholders as the original.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Optional

from .models import parse_due_date

# Exact tokens, as written by the catalog and the editor.
_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

# Looser form used when comparing placeholder sets of rewritten copy.
_ANY_PLACEHOLDER_RE = re.compile(r"\{\{\s*\w+\s*\}\}")

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")

SUPPORTED_PLACEHOLDERS: tuple[str, ...] = (
    "clientName",
    "clientFirstName",
    "amount",
    "dueDate",
    "paymentLink",
    "yourName",
    "dayOfWeek",
)

MAX_SUBJECT_LENGTH = 200
MAX_BODY_LENGTH = 5000


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_amount(amount_cents: int) -> str:
    """Dollar amount from integer cents, grouped with 2 decimals.

    >>> format_amount(125000)
    '$1,250.00'
    >>> format_amount(5)
    '$0.05'
    """
    dollars = Decimal(int(amount_cents)) / Decimal(100)
    return f"${dollars:,.2f}"


def format_due_date(raw: str) -> str:
    """Render a due date as "Month D, YYYY"; unparseable input passes through.

    >>> format_due_date("2024-06-03")
    'June 3, 2024'
    >>> format_due_date("soon")
    'soon'
    """
    d = parse_due_date(raw)
    if d is None:
        return raw or ""
    return f"{d.strftime('%B')} {d.day}, {d.year}"


def day_of_week(raw: str) -> str:
    d = parse_due_date(raw)
    return d.strftime("%A") if d else ""


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass
class PlaceholderContext:
    """Raw values available to templates.  Formatting happens in ``values``."""

    client_name: str = ""
    client_first_name: str = ""
    amount_cents: int = 0
    due_date: str = ""
    payment_link: str = ""
    your_name: str = ""

    def values(self) -> dict[str, str]:
        return {
            "clientName": self.client_name or "",
            "clientFirstName": self.client_first_name or "",
            "amount": format_amount(self.amount_cents),
            "dueDate": format_due_date(self.due_date),
            "paymentLink": self.payment_link or "",
            "yourName": self.your_name or "",
            "dayOfWeek": day_of_week(self.due_date),
        }


def _substitute(text: str, values: dict[str, str], transform: Callable[[str], str]) -> str:
    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in values:
            return match.group(0)
        return transform(values[name])

    return _PLACEHOLDER_RE.sub(_replace, text or "")


def strip_control_chars(value: str) -> str:
    return _CONTROL_CHARS_RE.sub("", value or "")


def render_subject(template_subject: str, context: PlaceholderContext) -> str:
    """Subject pass: header-safe substitution."""
    rendered = _substitute(template_subject, context.values(), strip_control_chars)
    rendered = re.sub(r"[\r\n]+", " ", rendered)
    return strip_control_chars(rendered).strip()


def render_body(template_body: str, context: PlaceholderContext) -> str:
    """Body pass: every substituted value is HTML-escaped."""
    return _substitute(template_body, context.values(), lambda v: html.escape(v, quote=True))


# ---------------------------------------------------------------------------
# Rewrite guard
# ---------------------------------------------------------------------------

def extract_placeholders(text: Optional[str]) -> set[str]:
    """Unique placeholders in ``text``, whitespace inside braces removed.

    >>> sorted(extract_placeholders("Hi {{ clientName }}, {{amount}} due"))
    ['{{amount}}', '{{clientName}}']
    """
    if not text:
        return set()
    return {re.sub(r"\s+", "", m) for m in _ANY_PLACEHOLDER_RE.findall(text)}


@dataclass
class RewriteValidation:
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_rewritten_content(
    original_subject: str,
    original_body: str,
    rewritten_subject: str,
    rewritten_body: str,
) -> RewriteValidation:
    """Check rewritten copy against the original before it is accepted.

    The rewrite must have a non-empty subject of at most 200 characters, a
    non-empty body of at most 5000 characters, and exactly the original's
    set of placeholders (none dropped, none invented).
    """
    result = RewriteValidation()

    if not rewritten_subject or not rewritten_subject.strip():
        result.errors.append("Subject cannot be empty")
    elif len(rewritten_subject) > MAX_SUBJECT_LENGTH:
        result.errors.append(
            f"Subject exceeds maximum length of {MAX_SUBJECT_LENGTH} characters"
        )

    if not rewritten_body or not rewritten_body.strip():
        result.errors.append("Body cannot be empty")
    elif len(rewritten_body) > MAX_BODY_LENGTH:
        result.errors.append(
            f"Body exceeds maximum length of {MAX_BODY_LENGTH} characters"
        )

    original = extract_placeholders(original_subject) | extract_placeholders(original_body)
    rewritten = extract_placeholders(rewritten_subject) | extract_placeholders(rewritten_body)

    missing = sorted(original - rewritten)
    if missing:
        result.errors.append(
            f"Missing placeholders from original content: {', '.join(missing)}"
        )

    added = sorted(rewritten - original)
    if added:
        result.errors.append(
            f"New placeholders added that weren't in original: {', '.join(added)}"
        )

    return result
