"""
Nudge -- Template Resolver

Pure functions over TemplateInstance values: build a schedule's default
set, customize or revert one tone variant, switch tone, and normalize
templates loaded from storage.

Every function returns new instances and never mutates its input.  After
any mutating operation a template's canonical ``subject``/``body``/``tone``
equal ``tone_variants[tone]``.

Usage:
    from nudge.template_resolver import initialize_templates_for_schedule
    templates = initialize_templates_for_schedule("standard", "friendly")
    [t.id for t in templates]   # ['initial', 'reminder1', 'reminder2', 'reminder3']
"""

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from typing import Any, Iterable, Mapping

from .catalog import ALL_TONES, FALLBACK_TONE, get_template_defaults, is_known_tone
from .models import TemplateInstance, ToneVariant
from .schedules import get_schedule

logger = logging.getLogger(__name__)


def _resolve_tone(tone: str) -> str:
    if is_known_tone(tone):
        return tone
    logger.warning("Unknown tone %r, using %s", tone, FALLBACK_TONE.value)
    return FALLBACK_TONE.value


def _default_variant(slot_id: str, tone: str) -> ToneVariant:
    entry = get_template_defaults(slot_id, tone)
    return ToneVariant(subject=entry.subject, body=entry.body)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def initialize_templates_for_schedule(schedule_key: str, tone: str) -> list[TemplateInstance]:
    """One template instance per registry slot, all tone variants pre-filled.

    Args:
        schedule_key: "light", "standard" or "persistent".  Unknown keys
                      log a warning and fall back to "standard".
        tone: The tone the canonical fields are set to.  Unknown tones
              fall back to the catalog's fallback tone.

    Returns:
        New TemplateInstance list in schedule order (initial first).
    """
    schedule = get_schedule(schedule_key)
    tone = _resolve_tone(tone)

    templates: list[TemplateInstance] = []
    for slot in schedule.slots:
        variants = {t: _default_variant(slot.id, t) for t in ALL_TONES}
        selected = variants[tone]
        templates.append(TemplateInstance(
            id=slot.id,
            label=slot.label,
            offset=slot.offset,
            tone=tone,
            subject=selected.subject,
            body=selected.body,
            tone_variants=variants,
        ))
    return templates


def copy_templates(templates: Iterable[TemplateInstance]) -> list[TemplateInstance]:
    """Deep copy a template list so the result shares no state with the input."""
    return [copy.deepcopy(t) for t in templates]


# ---------------------------------------------------------------------------
# Tone variants
# ---------------------------------------------------------------------------

def get_tone_variant(template: TemplateInstance, tone: str) -> ToneVariant:
    """The stored variant for ``tone``, or an empty variant.  Never raises."""
    variant = template.tone_variants.get(tone)
    if variant is None:
        return ToneVariant()
    return variant


def sync_canonical_fields(template: TemplateInstance, tone: str) -> TemplateInstance:
    """Return a copy whose canonical fields mirror ``tone_variants[tone]``."""
    variant = get_tone_variant(template, tone)
    return replace(
        template,
        tone=tone,
        subject=variant.subject,
        body=variant.body,
        tone_variants=copy.deepcopy(template.tone_variants),
    )


def update_tone_variant(
    template: TemplateInstance,
    tone: str,
    subject: str,
    body: str,
) -> TemplateInstance:
    """Save a user edit for one tone and make it the selected tone.

    Only ``tone_variants[tone]`` and the canonical fields change.
    """
    variants = copy.deepcopy(template.tone_variants)
    variants[tone] = ToneVariant(subject=subject, body=body, is_customized=True, is_dirty=False)
    return replace(template, tone=tone, subject=subject, body=body, tone_variants=variants)


def revert_tone_variant_to_defaults(template: TemplateInstance, tone: str) -> TemplateInstance:
    """Reset one tone variant to the catalog default.

    The canonical fields change only when ``tone`` is the template's
    selected tone.  Reverting twice gives the same result as once.
    """
    variants = copy.deepcopy(template.tone_variants)
    default = _default_variant(template.id, tone)
    variants[tone] = default

    if template.tone == tone:
        return replace(template, subject=default.subject, body=default.body, tone_variants=variants)
    return replace(template, tone_variants=variants)


def update_template_tone(template: TemplateInstance, new_tone: str) -> TemplateInstance:
    """Switch the selected tone, filling the variant from the catalog if absent."""
    if new_tone in template.tone_variants:
        return sync_canonical_fields(template, new_tone)

    variants = copy.deepcopy(template.tone_variants)
    variants[new_tone] = _default_variant(template.id, new_tone)
    return sync_canonical_fields(replace(template, tone_variants=variants), new_tone)


# ---------------------------------------------------------------------------
# Normalization of stored templates
# ---------------------------------------------------------------------------

def normalize_templates(raw_templates: Iterable[Any], default_tone: str) -> list[Any]:
    """Repair templates loaded from storage.

    - Templates with non-empty canonical subject and body are kept as is.
    - Templates with tone variants but empty canonical fields are synced
      from their own tone, or ``default_tone`` if that variant is missing.
    - Anything else passes through unchanged with a warning.

    Mappings with an ``id`` are converted to TemplateInstance first.
    """
    normalized: list[Any] = []
    for raw in raw_templates or []:
        if isinstance(raw, TemplateInstance):
            template = raw
        elif isinstance(raw, Mapping) and raw.get("id"):
            template = TemplateInstance.from_dict(raw)
        else:
            logger.warning("Passing through unrecognized template entry: %r", raw)
            normalized.append(raw)
            continue

        if template.has_canonical_content:
            normalized.append(template)
        elif template.tone_variants:
            tone = template.tone if template.tone in template.tone_variants else default_tone
            normalized.append(sync_canonical_fields(template, tone))
        else:
            logger.warning("Template %r has no content and no tone variants", template.id)
            normalized.append(template)
    return normalized
