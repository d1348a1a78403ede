"""Unit tests for the model metadata rule engine."""

from src.core.model_metadata import (
    MetadataRule,
    apply_metadata_rules,
    get_matched_properties,
    test_rule_match as rule_matches,
)
from src.formats.unified.types import ModelCapabilities, ModelDescriptor


class TestRuleMatching:
    """Tests for single-rule matching."""

    def test_exact_model_match(self):
        rule = MetadataRule(id="r", match_type="model", match_value="gpt-4o")
        assert rule_matches(rule, "gpt-4o")
        assert not rule_matches(rule, "gpt-4o-mini")

    def test_model_regex_is_case_insensitive(self):
        rule = MetadataRule(id="r", match_type="model", match_value=r"^GPT-4", use_regex=True)
        assert rule_matches(rule, "gpt-4o-mini")

    def test_prefix_matches_vendor_qualified_ids(self):
        """modelPrefix is a substring match so ``vendor/model`` ids still match."""
        rule = MetadataRule(id="r", match_type="modelPrefix", match_value="Claude-")
        assert rule_matches(rule, "anthropic/claude-3-opus")

    def test_provider_match(self):
        rule = MetadataRule(id="r", match_type="provider", match_value="Anthropic")
        assert rule_matches(rule, "anything", "anthropic")
        assert not rule_matches(rule, "anything")

    def test_invalid_regex_does_not_match(self):
        rule = MetadataRule(id="r", match_type="model", match_value="([", use_regex=True)
        assert not rule_matches(rule, "gpt-4o")

    def test_unknown_match_type(self):
        rule = MetadataRule(id="r", match_type="modelGroup", match_value="gpt")
        assert not rule_matches(rule, "gpt-4o")


class TestPropertyResolution:
    """Tests for combining properties across rules."""

    def test_higher_priority_wins_per_key(self):
        """Each property comes from the highest-priority matching rule that sets it."""
        rules = [
            MetadataRule(id="low", match_type="modelPrefix", match_value="gpt",
                         properties={"group": "Low", "description": "from low"}, priority=1),
            MetadataRule(id="high", match_type="modelPrefix", match_value="gpt-4",
                         properties={"group": "High"}, priority=10),
        ]
        props = get_matched_properties("gpt-4o", rules=rules)
        assert props["group"] == "High"
        assert props["description"] == "from low"

    def test_capabilities_merge_per_flag(self):
        rules = [
            MetadataRule(id="a", match_type="modelPrefix", match_value="x",
                         properties={"capabilities": {"vision": False}}, priority=10),
            MetadataRule(id="b", match_type="modelPrefix", match_value="x",
                         properties={"capabilities": {"vision": True, "tool_use": True}}, priority=1),
        ]
        props = get_matched_properties("x-model", rules=rules)
        assert props["capabilities"] == {"vision": False, "tool_use": True}

    def test_exclusive_rule_hides_lower_priority_matches(self):
        """After an exclusive match, lower-priority rules add nothing, not even missing keys."""
        rules = [
            MetadataRule(id="pinned", match_type="model", match_value="gpt-4o",
                         properties={"group": "Pinned"}, priority=30, exclusive=True),
            MetadataRule(id="higher", match_type="modelPrefix", match_value="gpt",
                         properties={"description": "kept"}, priority=40),
            MetadataRule(id="lower", match_type="modelPrefix", match_value="gpt",
                         properties={"group": "Low", "capabilities": {"vision": True}}, priority=1),
        ]
        props = get_matched_properties("gpt-4o", rules=rules)
        assert props == {"group": "Pinned", "description": "kept"}

    def test_exclusive_rule_that_does_not_match_has_no_effect(self):
        rules = [
            MetadataRule(id="pinned", match_type="model", match_value="other",
                         properties={"group": "Pinned"}, priority=30, exclusive=True),
            MetadataRule(id="lower", match_type="modelPrefix", match_value="gpt",
                         properties={"group": "Low"}, priority=1),
        ]
        assert get_matched_properties("gpt-4o", rules=rules) == {"group": "Low"}

    def test_disabled_rules_skipped(self):
        rules = [MetadataRule(id="off", match_type="modelPrefix", match_value="gpt",
                              properties={"group": "Off"}, enabled=False)]
        assert get_matched_properties("gpt-4o", rules=rules) == {}

    def test_from_dict_accepts_camel_case(self):
        rule = MetadataRule.from_dict({
            "id": "r",
            "matchType": "modelPrefix",
            "matchValue": "qwen",
            "useRegex": False,
            "priority": "7",
            "exclusive": True,
            "properties": {"group": "Qwen"},
        })
        assert rule.match_type == "modelPrefix"
        assert rule.priority == 7
        assert rule.enabled is True
        assert rule.exclusive is True


class TestApplyMetadataRules:
    """Tests for enriching model descriptors."""

    def test_default_rules_assign_group_and_capabilities(self):
        model = ModelDescriptor(id="claude-3-5-sonnet", name="Claude 3.5 Sonnet", provider="anthropic")
        enriched = apply_metadata_rules(model)
        assert enriched.group == "Claude"
        assert enriched.capabilities.vision is True
        assert enriched.capabilities.tool_use is True
        assert model.group is None

    def test_rule_capabilities_override_listing(self):
        """Rule flags override what the listing reported; other flags are kept."""
        model = ModelDescriptor(
            id="house-vl", name="house-vl", provider="custom",
            capabilities=ModelCapabilities(vision=False, embedding=False),
        )
        enriched = apply_metadata_rules(model)
        assert enriched.capabilities.vision is True
        assert enriched.capabilities.embedding is False

    def test_no_match_returns_same_descriptor(self):
        model = ModelDescriptor(id="zzz", name="zzz", provider="custom")
        assert apply_metadata_rules(model, rules=[]) is model
