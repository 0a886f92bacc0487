"""Tests for nudge.template_resolver -- building and editing template sets.

Covers:
- initialize_templates_for_schedule: slot set, prefilled variants, fallbacks
- update_tone_variant: only the edited variant and canonical fields change
- revert_tone_variant_to_defaults: canonical fields only for the selected tone, idempotent
- get_tone_variant / sync_canonical_fields / update_template_tone
- copy_templates: no shared state
- normalize_templates: keep, sync and pass-through cases
"""

import pytest

from nudge.catalog import ALL_TONES, get_template_defaults
from nudge.models import TemplateInstance, ToneVariant
from nudge.template_resolver import (
    copy_templates,
    get_tone_variant,
    initialize_templates_for_schedule,
    normalize_templates,
    revert_tone_variant_to_defaults,
    sync_canonical_fields,
    update_template_tone,
    update_tone_variant,
)


def _canonical_matches_variant(template):
    variant = template.tone_variants[template.tone]
    return template.subject == variant.subject and template.body == variant.body


# ============================================================================
# Initialization
# ============================================================================

class TestInitialize:
    def test_one_template_per_slot(self):
        templates = initialize_templates_for_schedule("persistent", "firm")
        assert [t.id for t in templates] == ["initial", "reminder1", "reminder2", "reminder3", "reminder4"]
        assert [t.offset for t in templates] == [None, -7, -3, 0, 7]

    def test_all_tones_prefilled(self):
        for template in initialize_templates_for_schedule("standard", "friendly"):
            assert set(template.tone_variants) == set(ALL_TONES)
            for tone in ALL_TONES:
                expected = get_template_defaults(template.id, tone)
                assert template.tone_variants[tone].subject == expected.subject
                assert template.tone_variants[tone].is_customized is False

    def test_canonical_fields_follow_tone(self):
        for template in initialize_templates_for_schedule("light", "friendly"):
            assert template.tone == "friendly"
            assert _canonical_matches_variant(template)

    def test_unknown_schedule_uses_standard(self):
        assert len(initialize_templates_for_schedule("nope", "friendly")) == 4

    def test_unknown_tone_uses_fallback(self):
        templates = initialize_templates_for_schedule("standard", "sarcastic")
        assert {t.tone for t in templates} == {"professional"}


# ============================================================================
# Editing
# ============================================================================

class TestUpdateToneVariant:
    def test_only_target_variant_changes(self):
        original = initialize_templates_for_schedule("standard", "friendly")[1]
        updated = update_tone_variant(original, "firm", "Pay now", "Body {{amount}}")

        assert updated.tone == "firm"
        assert updated.subject == "Pay now"
        assert updated.tone_variants["firm"] == ToneVariant("Pay now", "Body {{amount}}", True, False)
        assert updated.tone_variants["friendly"] == original.tone_variants["friendly"]
        assert updated.tone_variants["professional"] == original.tone_variants["professional"]
        assert _canonical_matches_variant(updated)

    def test_input_not_mutated(self):
        original = initialize_templates_for_schedule("standard", "friendly")[0]
        before = original.tone_variants["friendly"].subject
        update_tone_variant(original, "friendly", "Changed", "Changed body")
        assert original.subject == before
        assert original.tone_variants["friendly"].subject == before


class TestRevert:
    def test_revert_selected_tone_restores_canonical(self):
        original = initialize_templates_for_schedule("standard", "friendly")[2]
        edited = update_tone_variant(original, "friendly", "Custom", "Custom body")
        reverted = revert_tone_variant_to_defaults(edited, "friendly")

        default = get_template_defaults("reminder2", "friendly")
        assert reverted.subject == default.subject
        assert reverted.tone_variants["friendly"].is_customized is False
        assert _canonical_matches_variant(reverted)

    def test_revert_other_tone_leaves_canonical(self):
        original = initialize_templates_for_schedule("standard", "friendly")[2]
        edited = update_tone_variant(original, "firm", "Firm custom", "Firm body")
        edited = update_template_tone(edited, "friendly")
        reverted = revert_tone_variant_to_defaults(edited, "firm")

        assert reverted.tone == "friendly"
        assert reverted.subject == edited.subject
        assert reverted.tone_variants["firm"].subject == get_template_defaults("reminder2", "firm").subject

    def test_revert_is_idempotent(self):
        template = update_tone_variant(
            initialize_templates_for_schedule("light", "professional")[1], "professional", "X", "Y",
        )
        once = revert_tone_variant_to_defaults(template, "professional")
        twice = revert_tone_variant_to_defaults(once, "professional")
        assert once == twice


class TestToneHelpers:
    def test_get_tone_variant_missing_is_empty(self):
        assert get_tone_variant(TemplateInstance(id="initial"), "firm") == ToneVariant()

    def test_sync_canonical_fields(self):
        template = initialize_templates_for_schedule("standard", "friendly")[0]
        synced = sync_canonical_fields(template, "professional")
        assert synced.tone == "professional"
        assert _canonical_matches_variant(synced)

    def test_update_template_tone_fills_missing_variant(self):
        template = TemplateInstance(
            id="reminder1", tone="friendly", subject="S", body="B",
            tone_variants={"friendly": ToneVariant("S", "B")},
        )
        switched = update_template_tone(template, "firm")
        assert switched.tone == "firm"
        assert switched.subject == get_template_defaults("reminder1", "firm").subject
        assert "friendly" in switched.tone_variants


class TestCopyTemplates:
    def test_deep_copy(self):
        originals = initialize_templates_for_schedule("standard", "friendly")
        copies = copy_templates(originals)
        copies[0].tone_variants["friendly"].subject = "changed"
        assert originals[0].tone_variants["friendly"].subject != "changed"


# ============================================================================
# Normalization
# ============================================================================

class TestNormalize:
    def test_complete_template_kept(self):
        template = initialize_templates_for_schedule("standard", "firm")[0]
        assert normalize_templates([template], "friendly") == [template]

    def test_empty_canonical_synced_from_own_tone(self):
        raw = initialize_templates_for_schedule("standard", "firm")[0].to_dict()
        raw["subject"] = ""
        raw["body"] = ""
        [normalized] = normalize_templates([raw], "friendly")
        assert normalized.tone == "firm"
        assert normalized.subject == get_template_defaults("initial", "firm").subject

    def test_empty_canonical_uses_default_tone_when_own_missing(self):
        raw = {
            "id": "initial",
            "tone": "cheerful",
            "tone_variants": {"professional": {"subject": "P", "body": "PB"}},
        }
        [normalized] = normalize_templates([raw], "professional")
        assert normalized.tone == "professional"
        assert normalized.subject == "P"

    @pytest.mark.parametrize("raw", ["junk", {"subject": "no id"}, 7])
    def test_unrecognized_passes_through(self, raw):
        assert normalize_templates([raw], "friendly") == [raw]
