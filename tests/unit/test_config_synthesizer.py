"""
Unit tests for config_synthesizer.py - sing-box config generation.
"""

import json

import pytest


def _node(tag, server="1.2.3.4", port=443, node_type="vmess"):
    return {"type": node_type, "tag": tag, "server": server, "server_port": port, "uuid": "u"}


def _outbound(config, tag):
    for ob in config["outbounds"]:
        if ob.get("tag") == tag:
            return ob
    return None


class TestSynthesizeConfig:
    """Full config synthesis from decoded nodes."""

    def test_skeleton_with_vmess_node(self, sample_vmess_uri, proxy_settings):
        from config_synthesizer import synthesize_config
        from proxy_uri_parser import decode_uri

        config, error = synthesize_config([decode_uri(sample_vmess_uri)], proxy_settings)

        assert error == ""
        node = _outbound(config, "n1")
        assert node["type"] == "vmess"
        assert node["server"] == "1.2.3.4"
        assert node["server_port"] == 443
        assert _outbound(config, "auto")["outbounds"] == ["n1"]
        assert _outbound(config, "manual")["outbounds"] == ["auto", "n1"]
        assert config["route"]["final"] == "manual"

        mixed = config["inbounds"][0]
        assert mixed["type"] == "mixed"
        assert mixed["listen_port"] == 7890
        assert config["experimental"]["clash_api"]["external_controller"] == "127.0.0.1:9090"

    def test_skeleton_has_clash_mode_anchors(self, proxy_settings):
        from config_synthesizer import synthesize_config

        config, _ = synthesize_config([], proxy_settings)

        modes = [r.get("clash_mode") for r in config["route"]["rules"] if "clash_mode" in r]
        assert set(modes) == {"direct", "global"}
        # empty node list keeps urltest group valid
        assert _outbound(config, "auto")["outbounds"] == ["direct"]

    def test_custom_ports(self, proxy_settings):
        from config_synthesizer import synthesize_config

        proxy_settings.mixed_port = 10808
        proxy_settings.api_port = 19090
        config, _ = synthesize_config([_node("a")], proxy_settings)

        assert config["inbounds"][0]["listen_port"] == 10808
        assert config["experimental"]["clash_api"]["external_controller"] == "127.0.0.1:19090"

    def test_base_config_not_mutated(self, proxy_settings):
        from config_synthesizer import synthesize_config

        base = {"outbounds": [{"type": "direct", "tag": "direct"}], "route": {"rules": []}}
        snapshot = json.loads(json.dumps(base))

        config, _ = synthesize_config([_node("a")], proxy_settings, base)

        assert base == snapshot
        assert _outbound(config, "a") is not None

    @pytest.mark.parametrize("base", [[], "config", 42])
    def test_invalid_base_config(self, proxy_settings, base):
        from config_synthesizer import synthesize_config

        assert synthesize_config([], proxy_settings, base) == (None, "Base config must be a JSON object.")

    def test_app_groups(self, proxy_settings):
        from config_synthesizer import APP_GROUP_TAGS, synthesize_config

        proxy_settings.enable_app_groups = True
        config, _ = synthesize_config([_node("a")], proxy_settings)

        for tag in APP_GROUP_TAGS:
            assert _outbound(config, tag)["outbounds"] == ["manual", "auto", "a"]

    def test_block_ads(self, proxy_settings):
        from config_synthesizer import RS_GEOSITE_ADS, synthesize_config

        proxy_settings.block_ads = True
        config, _ = synthesize_config([], proxy_settings)

        tags = [rs["tag"] for rs in config["route"]["rule_set"]]
        assert RS_GEOSITE_ADS in tags
        assert {"rule_set": RS_GEOSITE_ADS, "action": "reject"} in config["route"]["rules"]

    def test_tun_inbound(self, proxy_settings):
        from config_synthesizer import synthesize_config

        proxy_settings.tun_enabled = True
        config, _ = synthesize_config([], proxy_settings)

        tun = config["inbounds"][1]
        assert tun["type"] == "tun"
        assert tun["address"] == ["172.19.0.1/30"]

    def test_skeleton_keeps_multi_tag_rule(self, proxy_settings):
        from config_synthesizer import RS_GEOIP_CN, RS_GEOSITE_CN, synthesize_config

        config, error = synthesize_config([_node("a")], proxy_settings)

        assert error == ""
        assert {"rule_set": [RS_GEOSITE_CN, RS_GEOIP_CN], "outbound": "direct"} in config["route"]["rules"]

    def test_list_rule_set_with_app_groups_disabled(self, proxy_settings):
        from config_synthesizer import RS_GEOSITE_TELEGRAM, synthesize_config

        base = {
            "outbounds": [{"type": "direct", "tag": "direct"}],
            "route": {
                "rule_set": [{"tag": [RS_GEOSITE_TELEGRAM], "type": "local"}, {"tag": "custom", "type": "local"}],
                "rules": [
                    {"rule_set": ["a", "b"], "outbound": "direct"},
                    {"rule_set": [RS_GEOSITE_TELEGRAM, "c"], "outbound": "direct"},
                ],
            },
        }

        config, error = synthesize_config([_node("n")], proxy_settings, base)

        assert error == ""
        assert {"rule_set": ["a", "b"], "outbound": "direct"} in config["route"]["rules"]
        assert all(RS_GEOSITE_TELEGRAM not in (r.get("rule_set") or []) for r in config["route"]["rules"])
        assert [rs["tag"] for rs in config["route"]["rule_set"]] == ["custom"]


class TestInjectNodes:
    def test_same_tag_last_write_wins(self, proxy_settings):
        from config_synthesizer import build_base_config, inject_nodes

        config = build_base_config(proxy_settings)
        injected = inject_nodes(config, [_node("a", "1.1.1.1"), _node("b"), _node("a", "2.2.2.2")], proxy_settings)

        assert injected == ["a", "b"]
        matches = [ob for ob in config["outbounds"] if ob.get("tag") == "a"]
        assert len(matches) == 1
        assert matches[0]["server"] == "2.2.2.2"

    def test_reserved_tags_skipped(self, proxy_settings):
        from config_synthesizer import build_base_config, inject_nodes

        config = build_base_config(proxy_settings)
        injected = inject_nodes(config, [_node("direct"), _node("auto"), _node("ok")], proxy_settings)

        assert injected == ["ok"]
        assert _outbound(config, "direct") == {"type": "direct", "tag": "direct"}

    def test_invalid_nodes_skipped(self, proxy_settings):
        from config_synthesizer import inject_nodes

        config = {}
        injected = inject_nodes(config, ["junk", {"type": "vmess"}, {"tag": "no-type"}], proxy_settings)

        assert injected == []
        assert [ob["tag"] for ob in config["outbounds"]] == ["auto", "manual"]

    def test_domain_server_gets_resolver(self, proxy_settings):
        from config_synthesizer import DNS_RESOLVER, inject_nodes

        config = {}
        inject_nodes(config, [_node("d", server="node.example.com")], proxy_settings)

        assert _outbound(config, "d")["domain_resolver"] == {"server": DNS_RESOLVER, "strategy": "prefer_ipv4"}

    def test_placeholder_server_excluded_from_groups(self, proxy_settings):
        from config_synthesizer import inject_nodes

        config = {}
        injected = inject_nodes(config, [_node("info", server="0.0.0.0"), _node("real")], proxy_settings)

        assert injected == ["real"]
        assert _outbound(config, "info") is not None

    def test_replace_existing(self, proxy_settings):
        from config_synthesizer import inject_nodes

        config = {"outbounds": [_node("old"), {"type": "direct", "tag": "direct"}]}
        inject_nodes(config, [_node("new")], proxy_settings, replace_existing=True)

        tags = [ob["tag"] for ob in config["outbounds"]]
        assert "old" not in tags
        assert "new" in tags
        assert "direct" in tags


class TestPassthroughConfig:
    def test_only_ports_overridden(self, proxy_settings):
        from config_synthesizer import passthrough_config

        raw = json.dumps({
            "inbounds": [{"type": "mixed", "listen_port": 1080}, {"type": "tun", "tag": "tun-in"}],
            "experimental": {"clash_api": {"external_controller": "0.0.0.0:1234", "secret": "s"}},
            "route": {"final": "custom"},
        })
        config, error = passthrough_config(raw, proxy_settings)

        assert error == ""
        assert config["inbounds"][0]["listen_port"] == 7890
        assert config["inbounds"][1] == {"type": "tun", "tag": "tun-in"}
        assert config["experimental"]["clash_api"] == {"external_controller": "127.0.0.1:9090", "secret": "s"}
        assert config["route"] == {"final": "custom"}

    def test_missing_port_fields_not_added(self, proxy_settings):
        from config_synthesizer import passthrough_config

        config, _ = passthrough_config({"inbounds": [{"type": "mixed"}]}, proxy_settings)
        assert config == {"inbounds": [{"type": "mixed"}]}

    def test_invalid_json(self, proxy_settings):
        from config_synthesizer import passthrough_config

        config, error = passthrough_config("{broken", proxy_settings)
        assert config is None
        assert error.startswith("Original config is not valid JSON")

    def test_non_object(self, proxy_settings):
        from config_synthesizer import passthrough_config

        assert passthrough_config("[1]", proxy_settings) == (None, "Original config must be a JSON object.")


class TestSharedRules:
    def test_inserted_after_anchors(self, sample_route_rules):
        from config_synthesizer import apply_shared_rules

        config = {"route": {"rules": sample_route_rules}}
        shared = [
            {"domain": "x.com", "action": "route", "outbound": "direct", "shared": True},
            {"domain": "y.com", "action": "route", "outbound": "manual"},
        ]
        inserted = apply_shared_rules(config, shared)

        rules = config["route"]["rules"]
        assert inserted == 2
        assert rules[3] == {"domain": "x.com", "action": "route", "outbound": "direct"}
        assert rules[4] == {"domain": "y.com", "action": "route", "outbound": "manual"}
        assert len(rules) == 7

    def test_existing_copy_moved_not_duplicated(self, sample_route_rules):
        from config_synthesizer import apply_shared_rules

        config = {"route": {"rules": sample_route_rules}}
        rule = {"rule_set": ["geosite-cn"], "action": "route", "outbound": "direct"}

        apply_shared_rules(config, [rule])

        rules = config["route"]["rules"]
        assert len(rules) == 5
        assert rules[3] == rule

    def test_disabled_removes_copies(self, sample_route_rules):
        from config_synthesizer import apply_shared_rules

        config = {"route": {"rules": sample_route_rules}}
        rule = {"domain_suffix": ["example.com", "example.org"], "action": "route", "outbound": "manual"}

        assert apply_shared_rules(config, [rule], enabled=False) == 0
        assert rule not in config["route"]["rules"]
        assert len(config["route"]["rules"]) == 4

    def test_stale_rules_removed(self, sample_route_rules):
        from config_synthesizer import apply_shared_rules

        config = {"route": {"rules": sample_route_rules}}
        stale = {"domain_suffix": ["example.com", "example.org"], "action": "route", "outbound": "manual"}
        fresh = {"domain": "new.com", "action": "route", "outbound": "direct"}

        apply_shared_rules(config, [fresh], stale_rules=[stale, fresh])

        rules = config["route"]["rules"]
        assert stale not in rules
        assert rules[3] == fresh
        assert len(rules) == 5

    def test_no_route_section(self):
        from config_synthesizer import apply_shared_rules

        assert apply_shared_rules({}, [{"domain": "a.com", "outbound": "direct"}]) == 0


class TestClashMode:
    def test_update_mode(self):
        from config_synthesizer import read_clash_default_mode, update_clash_default_mode

        config = {}
        assert update_clash_default_mode(config, " GLOBAL ") == (True, "")
        assert config["experimental"]["clash_api"]["default_mode"] == "global"
        assert config["experimental"]["cache_file"]["enabled"] is True
        assert read_clash_default_mode(config) == "global"

    def test_invalid_mode(self):
        from config_synthesizer import update_clash_default_mode

        assert update_clash_default_mode({}, "direct") == (False, "Invalid proxy mode: direct")

    def test_read_defaults_to_rule(self):
        from config_synthesizer import read_clash_default_mode

        assert read_clash_default_mode(None) == "rule"
        assert read_clash_default_mode({"experimental": {"clash_api": {"default_mode": "weird"}}}) == "rule"
