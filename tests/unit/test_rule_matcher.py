"""
Unit tests for rule_matcher.py - locating the rule set that owns a rule.
"""

import pytest


RULE_SETS = [
    {"name": "default", "rules": [
        {"domain_suffix": ["example.com", "example.org"], "action": "route", "outbound": "manual"},
    ]},
    {"name": "streaming", "rules": [
        {"action": "reject", "domain": ["blocked.com"]},
        {"domain": ["foo.com", "bar.com"], "action": "route", "outbound": "hk-01"},
        {"ip_is_private": True, "outbound": "direct"},
    ]},
]


def _item(payload, proxy=""):
    from rule_builder import RuleItem

    return RuleItem(type=payload.split("=", 1)[0], payload=payload, proxy=proxy)


class TestBuildQuery:
    def test_plain_query(self):
        from rule_matcher import build_query

        query, error = build_query(_item("domain=a.com,b.com", "[hk-01]"))
        assert error == ""
        assert query.key == "domain"
        assert query.values == {"a.com", "b.com"}
        assert query.proxy == "hk-01"
        assert query.truncated is False

    def test_truncated_query(self):
        from rule_matcher import build_query

        query, _ = build_query(_item("domain=foo.com,bar…"))
        assert query.truncated is True
        assert query.truncated_tokens == {"foo.com", "bar"}

    def test_unparseable_payload(self):
        from rule_matcher import build_query

        query, error = build_query(_item("garbage"))
        assert query is None
        assert error == "Failed to parse current rule content."

    def test_boolean_values_lowercased(self):
        from rule_matcher import build_query

        query, _ = build_query(_item("ip_is_private=TRUE"))
        assert query.values == {"true"}


class TestMatchRuleSet:
    def test_exact_match_with_outbound(self):
        from rule_matcher import find_rule_set_for_item

        assert find_rule_set_for_item(_item("domain=bar.com,foo.com", "hk-01"), RULE_SETS) == "streaming"

    def test_value_order_irrelevant(self):
        from rule_matcher import find_rule_set_for_item

        item = _item("domain_suffix=example.org,example.com", "manual")
        assert find_rule_set_for_item(item, RULE_SETS) == "default"

    def test_second_pass_ignores_outbound(self):
        from rule_matcher import find_rule_set_for_item

        item = _item("domain=foo.com,bar.com", "Proxy(some display label)")
        assert find_rule_set_for_item(item, RULE_SETS) == "streaming"

    def test_non_route_action_skipped(self):
        from rule_matcher import find_rule_set_for_item

        assert find_rule_set_for_item(_item("domain=blocked.com"), RULE_SETS) == ""

    def test_missing_action_treated_as_route(self):
        from rule_matcher import find_rule_set_for_item

        assert find_rule_set_for_item(_item("ip_is_private=true", "direct"), RULE_SETS) == "streaming"

    def test_subset_without_truncation_does_not_match(self):
        from rule_matcher import find_rule_set_for_item

        assert find_rule_set_for_item(_item("domain=foo.com", "hk-01"), RULE_SETS) == ""

    @pytest.mark.parametrize("payload,expected", [
        ("domain=foo.com...", "streaming"),
        ("domain=foo.com,bar.com…", "streaming"),
        ("domain=foo...", ""),
        ("domain=baz.com...", ""),
    ])
    def test_truncated_subset_match(self, payload, expected):
        from rule_matcher import find_rule_set_for_item

        assert find_rule_set_for_item(_item(payload, "hk-01"), RULE_SETS) == expected

    def test_first_pass_preferred_over_second(self):
        from rule_matcher import find_rule_set_for_item

        sets = [
            {"name": "a", "rules": [{"domain": "x.com", "outbound": "direct"}]},
            {"name": "b", "rules": [{"domain": "x.com", "outbound": "proxy"}]},
        ]
        assert find_rule_set_for_item(_item("domain=x.com", "proxy"), sets) == "b"
        assert find_rule_set_for_item(_item("domain=x.com", "other"), sets) == "a"

    def test_unparseable_item_returns_empty(self):
        from rule_matcher import find_rule_set_for_item

        assert find_rule_set_for_item(_item("no-equals-sign"), RULE_SETS) == ""


class TestRuleMatcher:
    def test_reads_store(self, rules_store, sample_rule_sets):
        from rule_matcher import RuleMatcher

        matcher = RuleMatcher(rules_store)
        assert matcher.find_rule_set(_item("port=443", "direct")) == "streaming"
        assert matcher.find_rule_set(_item("port=8443", "direct")) == ""
