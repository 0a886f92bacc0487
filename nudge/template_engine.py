"""
Nudge -- Template Engine

Turns a TemplateInstance plus invoice/client data into the final email.

Responsibilities:
  1. Substitute placeholders in subject (header-safe) and body (HTML-escaped)
  2. Convert the body's newlines to <br> tags
  3. Wrap the body in the Jinja2 HTML layout from nudge/templates/
  4. Generate a plain-text version from the rendered HTML

Usage:
    from nudge.template_engine import TemplateEngine
    from nudge.placeholders import PlaceholderContext

    engine = TemplateEngine()
    rendered = engine.render(template, PlaceholderContext(client_first_name="Ada"))
    print(rendered.subject)
    print(rendered.html[:200])
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader

from .config import NudgeConfig, get_config
from .models import TemplateInstance
from .placeholders import PlaceholderContext, render_body, render_subject


@dataclass
class RenderedEmail:
    subject: str
    html: str
    text: str


def body_to_html(body: str) -> str:
    """Newlines become ``<br>``; the body is otherwise used as is.

    >>> body_to_html("Hi\\nthere")
    'Hi<br>there'
    """
    return (body or "").replace("\r\n", "\n").replace("\n", "<br>")


def html_to_plaintext(html_content: str) -> str:
    """Convert the rendered HTML email to a plain-text alternative.

    Strips tags, decodes entities and keeps line structure from <br> and
    block elements.
    """
    text = html_content

    # Drop the document head entirely
    text = re.sub(r"<head>.*?</head>", "", text, flags=re.IGNORECASE | re.DOTALL)

    # Replace common block elements with newlines
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</div>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)

    # Extract link text + URL from anchor tags
    text = re.sub(
        r'<a[^>]+href=["\']([^"\']+)["\'][^>]*>(.*?)</a>',
        r"\2 (\1)",
        text,
        flags=re.IGNORECASE | re.DOTALL,
    )

    # Strip all remaining HTML tags
    text = re.sub(r"<[^>]+>", "", text)

    # Decode HTML entities
    text = html.unescape(text)

    lines = [line.strip() for line in text.split("\n")]
    text = "\n".join(lines)

    # Collapse multiple blank lines into at most 2
    text = re.sub(r"\n{3,}", "\n\n", text)

    return text.strip()


# ===========================================================================
# Main Template Engine Class
# ===========================================================================

class TemplateEngine:
    """Jinja2-based renderer for reminder emails.

    The per-invoice copy (subject/body with ``{{clientFirstName}}``-style
    placeholders) is user-editable text, not Jinja2.  Placeholders are
    filled by ``nudge.placeholders``; Jinja2 only renders the surrounding
    HTML layout.

    Attributes:
        env: The Jinja2 Environment configured with the template directory.
        template_dir: Path to the layout directory.
        layout_file: Filename of the layout template.
    """

    def __init__(
        self,
        template_dir: str | Path | None = None,
        config: NudgeConfig | None = None,
    ) -> None:
        cfg = config or get_config()
        self.template_dir = Path(template_dir) if template_dir else cfg.template_paths.resolved_dir
        self.layout_file = cfg.template_paths.layout_file

        # The body is pre-escaped HTML, so the layout must not escape it again.
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def render(
        self,
        template: TemplateInstance,
        context: PlaceholderContext,
        subject_override: Optional[str] = None,
    ) -> RenderedEmail:
        """Render one template instance for sending.

        Args:
            template: The slot to send.  Its canonical subject/body are used.
            context: Placeholder values for this invoice and client.
            subject_override: Fixed subject to use instead of the template's
                (the manual resend uses this).

        Returns:
            RenderedEmail with header-safe subject, HTML and plain text.
        """
        return self.render_content(
            subject_override if subject_override is not None else template.subject,
            template.body,
            context,
        )

    def render_content(self, subject: str, body: str, context: PlaceholderContext) -> RenderedEmail:
        rendered_subject = render_subject(subject, context)
        body_html = body_to_html(render_body(body, context))

        layout = self.env.get_template(self.layout_file)
        html_doc = layout.render(subject=html.escape(rendered_subject), body_html=body_html)

        return RenderedEmail(
            subject=rendered_subject,
            html=html_doc,
            text=html_to_plaintext(html_doc),
        )
