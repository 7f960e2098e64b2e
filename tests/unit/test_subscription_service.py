"""
Unit tests for subscription_service.py - subscription lifecycle.
"""

import json
from pathlib import Path

import pytest


def _load(path):
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _event_names(events):
    return [name for name, _ in events]


class TestHelpers:
    @pytest.mark.parametrize("header,expected", [
        ("upload=1; download=2; total=10; expire=1700000000",
         {"upload": 1, "download": 2, "total": 10, "expire": 1700000000}),
        ("Upload=1.5;download=abc;total=-3", {"upload": 1}),
        ("garbage; other=1", {}),
        ("", {}),
        (None, {}),
    ])
    def test_parse_userinfo_header(self, header, expected):
        from subscription_service import parse_userinfo_header

        assert parse_userinfo_header(header) == expected

    def test_normalize_rule_sets(self):
        from subscription_service import normalize_rule_sets

        assert normalize_rule_sets([" a ", "a", "", "b"]) == ["a", "b"]
        assert normalize_rule_sets([]) == ["default"]
        assert normalize_rule_sets(None) == ["default"]

    def test_is_json_object(self):
        from subscription_service import is_json_object

        assert is_json_object('{"a": 1}')
        assert not is_json_object("[1]")
        assert not is_json_object("vmess://x")

    @pytest.mark.parametrize("kwargs,now,expected", [
        ({"auto_update_minutes": 60, "last_update": 0}, 60 * 60 * 1000, True),
        ({"auto_update_minutes": 60, "last_update": 1}, 60 * 60 * 1000, False),
        ({"auto_update_minutes": 0}, 10 ** 13, False),
        ({"auto_update_minutes": 5, "is_manual": True}, 10 ** 13, False),
        ({"auto_update_minutes": 5, "enabled": False}, 10 ** 13, False),
    ])
    def test_is_due(self, kwargs, now, expected):
        from subscription_service import SubscriptionInfo

        assert SubscriptionInfo(id="s", name="n", **kwargs).is_due(now) is expected

    def test_info_row_round_trip(self):
        from subscription_service import SubscriptionInfo

        info = SubscriptionInfo(id="s", name="n", rule_sets=["a"], upload=5)
        row = info.to_row()

        assert "id" not in row
        assert SubscriptionInfo.from_row({"id": "s", "created_at": "x", **row}) == info


class TestFetcher:
    """SubscriptionFetcher over requests.get."""

    class _Response:
        def __init__(self, status_code=200, content=b"", headers=None):
            self.status_code = status_code
            self.content = content
            self.headers = headers or {}

    def test_success(self, monkeypatch):
        import subscription_service

        captured = {}

        def fake_get(url, headers=None, timeout=None, proxies=None):
            captured.update(url=url, headers=headers, timeout=timeout)
            return self._Response(200, "节点".encode("utf-8"), {"subscription-userinfo": "upload=1"})

        monkeypatch.setattr(subscription_service.requests, "get", fake_get)
        result = subscription_service.SubscriptionFetcher(timeout=5, user_agent="ua")("https://x.example.com")

        assert result.content == "节点"
        assert result.userinfo == "upload=1"
        assert captured == {"url": "https://x.example.com", "headers": {"User-Agent": "ua"}, "timeout": 5}

    def test_http_error(self, monkeypatch):
        import subscription_service

        monkeypatch.setattr(subscription_service.requests, "get", lambda *a, **kw: self._Response(503))

        with pytest.raises(subscription_service.SubscriptionFetchError) as exc_info:
            subscription_service.SubscriptionFetcher()("https://x.example.com")
        assert exc_info.value.status_code == 503
        assert str(exc_info.value) == "Failed to fetch subscription: HTTP 503"

    def test_timeout(self, monkeypatch):
        import requests

        import subscription_service

        def fake_get(*args, **kwargs):
            raise requests.exceptions.Timeout("slow")

        monkeypatch.setattr(subscription_service.requests, "get", fake_get)

        with pytest.raises(subscription_service.SubscriptionFetchError, match="Request timeout"):
            subscription_service.SubscriptionFetcher()("https://x.example.com")

    def test_connection_error(self, monkeypatch):
        import requests

        import subscription_service

        def fake_get(*args, **kwargs):
            raise requests.exceptions.ConnectionError("refused")

        monkeypatch.setattr(subscription_service.requests, "get", fake_get)

        with pytest.raises(subscription_service.SubscriptionFetchError, match="Failed to fetch subscription"):
            subscription_service.SubscriptionFetcher()("https://x.example.com")


class TestAddSubscription:
    def test_add_url_subscription(self, subscription_service, subscription_url, fake_fetcher,
                                  config_repo, config_dir, events, sample_vmess_uri):
        from subscription_service import FetchResult

        fake_fetcher.responses[subscription_url] = FetchResult(
            content=sample_vmess_uri, userinfo="upload=1; download=2; total=10; expire=1700000000"
        )

        info, error = subscription_service.add_url_subscription(subscription_url, auto_update_minutes=30)

        assert error == ""
        assert info.name == "sub.example.com"
        assert info.node_count == 1
        assert (info.upload, info.download, info.total, info.expire) == (1, 2, 10, 1700000000)
        assert info.is_active is True
        assert Path(info.config_path).parent == config_dir / "subscriptions"
        assert Path(info.config_path).name.startswith("sub-example-com-")
        assert Path(info.backup_path).exists()

        config = _load(info.config_path)
        assert any(ob.get("tag") == "n1" for ob in config["outbounds"])
        assert config_repo.get_active_config_path() == Path(info.config_path)

        stored = subscription_service.get_subscription(info.id)
        assert stored.auto_update_minutes == 30
        assert stored.is_active is True
        assert _event_names(events) == ["subscription_added", "active_changed"]

    def test_apply_runtime_requested(self, subscription_service, subscription_url, events):
        info, _ = subscription_service.add_url_subscription(subscription_url, name="Mine", apply_runtime=True)

        assert info.name == "Mine"
        assert events[-1] == ("apply_requested", {"config_path": info.config_path, "restart": True})

    def test_shared_rules_injected(self, subscription_service, subscription_url, sample_rule_sets):
        info, _ = subscription_service.add_url_subscription(subscription_url)

        rules = _load(info.config_path)["route"]["rules"]
        expected = {"domain_suffix": ["example.com", "example.org"], "action": "route", "outbound": "manual"}
        # after sniff, hijack-dns and both clash_mode anchors
        assert rules[4] == expected

    def test_empty_url(self, subscription_service, events):
        assert subscription_service.add_url_subscription("  ") == (None, "Please enter a subscription URL")
        assert events == [("error", {"message": "Please enter a subscription URL"})]

    def test_fetch_failure(self, subscription_service, user_db):
        info, error = subscription_service.add_url_subscription("https://missing.example.com/sub")

        assert info is None
        assert error == "Failed to fetch subscription: HTTP 404"
        assert user_db.get_subscriptions() == []

    def test_unparseable_content(self, subscription_service, subscription_url, fake_fetcher, config_dir):
        fake_fetcher.responses[subscription_url] = "this is not a subscription"

        info, error = subscription_service.add_url_subscription(subscription_url)

        assert info is None
        assert error == "Failed to extract nodes from subscription content; check format"
        assert not (config_dir / "subscriptions").exists()

    def test_json_without_nodes_falls_back_to_original(self, subscription_service, subscription_url, fake_fetcher):
        raw = {
            "inbounds": [{"type": "mixed", "listen_port": 1080}],
            "outbounds": [{"type": "direct", "tag": "direct"}],
        }
        fake_fetcher.responses[subscription_url] = json.dumps(raw)

        info, error = subscription_service.add_url_subscription(subscription_url)

        assert error == ""
        assert info.use_original_config is True
        assert info.node_count == 0
        assert _load(info.config_path) == {
            "inbounds": [{"type": "mixed", "listen_port": 7890}],
            "outbounds": [{"type": "direct", "tag": "direct"}],
        }

    def test_original_mode_requires_json(self, subscription_service, subscription_url):
        info, error = subscription_service.add_url_subscription(subscription_url, use_original_config=True)

        assert info is None
        assert error == "Original subscription only supports sing-box JSON config"

    def test_add_manual_subscription(self, subscription_service, sample_vless_uri, fake_fetcher):
        info, error = subscription_service.add_manual_subscription(sample_vless_uri, rule_sets=["media", "media"])

        assert error == ""
        assert info.name == "Manual subscription"
        assert info.is_manual is True
        assert info.url == ""
        assert info.node_count == 1
        assert info.rule_sets == ["media"]
        assert fake_fetcher.calls == []

    def test_manual_errors(self, subscription_service, sample_vless_uri):
        assert subscription_service.add_manual_subscription("") == (None, "Please enter subscription content")
        assert subscription_service.add_manual_subscription(sample_vless_uri, use_original_config=True) == \
            (None, "Original subscription only supports sing-box JSON config")

    def test_latest_addition_becomes_active(self, subscription_service, subscription_url, sample_vless_uri):
        first, _ = subscription_service.add_url_subscription(subscription_url)
        second, _ = subscription_service.add_manual_subscription(sample_vless_uri)

        assert subscription_service.get_active_subscription().id == second.id
        assert [s.id for s in subscription_service.list_subscriptions()] == [first.id, second.id]


class TestRefresh:
    def test_refresh_url_subscription(self, subscription_service, subscription_url, fake_fetcher,
                                      sample_vmess_uri, sample_vless_uri, events):
        info, _ = subscription_service.add_url_subscription(subscription_url)
        fake_fetcher.responses[subscription_url] = sample_vmess_uri + "\n" + sample_vless_uri
        events.clear()

        refreshed, error = subscription_service.refresh_subscription(info.id)

        assert error == ""
        assert refreshed.node_count == 2
        assert subscription_service.get_subscription(info.id).node_count == 2
        tags = {ob.get("tag") for ob in _load(info.config_path)["outbounds"]}
        assert {"n1", "vless-node"} <= tags
        assert events == [("subscription_updated", {"id": info.id})]

    def test_refresh_failure_keeps_config(self, subscription_service, subscription_url, fake_fetcher):
        info, _ = subscription_service.add_url_subscription(subscription_url)
        before = _load(info.config_path)
        fake_fetcher.responses.clear()

        refreshed, error = subscription_service.refresh_subscription(info.id)

        assert refreshed is None
        assert error == "Failed to fetch subscription: HTTP 404"
        assert _load(info.config_path) == before

    def test_refresh_manual(self, subscription_service, sample_vless_uri, fake_fetcher):
        info, _ = subscription_service.add_manual_subscription(sample_vless_uri)

        refreshed, error = subscription_service.refresh_subscription(info.id)

        assert error == ""
        assert refreshed.node_count == 1
        assert fake_fetcher.calls == []

    def test_refresh_errors(self, subscription_service, user_db):
        assert subscription_service.refresh_subscription("missing") == (None, "Subscription not found")

        user_db.add_subscription("m", "Manual", is_manual=True)
        assert subscription_service.refresh_subscription("m") == (None, "Manual subscription content is empty")

        user_db.add_subscription("u", "Url")
        assert subscription_service.refresh_subscription("u") == (None, "Subscription URL is empty")

    def test_refresh_all_skips_disabled(self, subscription_service, subscription_url, sample_vless_uri):
        first, _ = subscription_service.add_url_subscription(subscription_url)
        second, _ = subscription_service.add_manual_subscription(sample_vless_uri)
        subscription_service.update_subscription_meta(second.id, enabled=False)

        assert subscription_service.refresh_all() == {first.id: ""}

    def test_refresh_due(self, subscription_service, subscription_url, sample_vless_uri):
        info, _ = subscription_service.add_url_subscription(subscription_url, auto_update_minutes=60)
        subscription_service.add_manual_subscription(sample_vless_uri)
        stored = subscription_service.get_subscription(info.id)

        assert subscription_service.refresh_due(stored.last_update + 59 * 60 * 1000) == []
        assert subscription_service.refresh_due(stored.last_update + 60 * 60 * 1000) == [info.id]


class TestMetaAndActive:
    def test_update_meta(self, subscription_service, subscription_url):
        info, _ = subscription_service.add_url_subscription(subscription_url)

        updated, error = subscription_service.update_subscription_meta(
            info.id, name="  Renamed ", auto_update_minutes=120, bogus="x"
        )

        assert error == ""
        assert updated.name == "Renamed"
        stored = subscription_service.get_subscription(info.id)
        assert stored.name == "Renamed"
        assert stored.auto_update_minutes == 120

    def test_update_meta_errors(self, subscription_service, subscription_url):
        info, _ = subscription_service.add_url_subscription(subscription_url)

        assert subscription_service.update_subscription_meta("missing", name="x") == (None, "Subscription not found")
        assert subscription_service.update_subscription_meta(info.id, name="  ") == \
            (None, "Subscription name cannot be empty")

    def test_switching_rule_sets_replaces_injected_rules(self, subscription_service, subscription_url,
                                                         sample_rule_sets):
        info, _ = subscription_service.add_url_subscription(subscription_url)
        default_rule = {"domain_suffix": ["example.com", "example.org"], "action": "route", "outbound": "manual"}

        subscription_service.update_subscription_meta(info.id, rule_sets=["streaming"])

        rules = _load(info.config_path)["route"]["rules"]
        assert default_rule not in rules
        assert {"port": 443, "action": "route", "outbound": "direct"} in rules

    def test_disabling_shared_rules(self, subscription_service, subscription_url, sample_rule_sets):
        info, _ = subscription_service.add_url_subscription(subscription_url)

        subscription_service.update_subscription_meta(info.id, enable_shared_rules=False)

        rules = _load(info.config_path)["route"]["rules"]
        assert all("domain_suffix" not in r for r in rules)

    def test_set_active(self, subscription_service, subscription_url, sample_vless_uri, config_repo, events):
        first, _ = subscription_service.add_url_subscription(subscription_url)
        subscription_service.add_manual_subscription(sample_vless_uri)
        events.clear()

        assert subscription_service.set_active_subscription(first.id, apply_runtime=True) == (True, "")

        assert config_repo.get_active_config_path() == Path(first.config_path)
        assert _event_names(events) == ["active_changed", "apply_requested"]

    def test_set_active_unknown(self, subscription_service):
        assert subscription_service.set_active_subscription("missing") == (False, "Subscription not found")

    def test_clear_active(self, subscription_service, subscription_url, config_repo):
        subscription_service.add_url_subscription(subscription_url)

        subscription_service.clear_active_subscription()

        assert subscription_service.get_active_subscription() is None
        assert subscription_service.get_active_config_path() == ""
        assert config_repo.get_active_config_path() is None


class TestRemoveRollback:
    def test_remove(self, subscription_service, subscription_url, events):
        info, _ = subscription_service.add_url_subscription(subscription_url)
        events.clear()

        assert subscription_service.remove_subscription(info.id) == (True, "")

        assert subscription_service.get_subscription(info.id) is None
        assert not Path(info.config_path).exists()
        assert not Path(info.backup_path).exists()
        assert _event_names(events) == ["subscription_removed", "active_changed"]

    def test_remove_unknown(self, subscription_service):
        assert subscription_service.remove_subscription("missing") == (False, "Subscription not found")

    def test_rollback(self, subscription_service, subscription_url):
        info, _ = subscription_service.add_url_subscription(subscription_url)
        saved = _load(info.config_path)
        Path(info.config_path).write_text("{}", encoding="utf-8")

        assert subscription_service.rollback_subscription(info.id) == (True, "")
        assert _load(info.config_path) == saved

    def test_rollback_without_backup(self, subscription_service, subscription_url):
        info, _ = subscription_service.add_url_subscription(subscription_url)
        Path(info.backup_path).unlink()

        ok, error = subscription_service.rollback_subscription(info.id)

        assert ok is False
        assert error == f"Rollback failed: Backup not found: {info.backup_path}"


class TestCurrentConfig:
    def test_get_and_save(self, subscription_service, subscription_url, events):
        info, _ = subscription_service.add_url_subscription(subscription_url)
        current = json.loads(subscription_service.get_current_config())
        current["log"]["level"] = "debug"
        events.clear()

        assert subscription_service.save_current_config(json.dumps(current), apply_runtime=True) == (True, "")

        assert _load(info.config_path)["log"]["level"] == "debug"
        assert _event_names(events) == ["apply_requested"]

    def test_save_dict(self, subscription_service, subscription_url):
        info, _ = subscription_service.add_url_subscription(subscription_url)

        assert subscription_service.save_current_config({"log": {}}) == (True, "")
        assert _load(info.config_path) == {"log": {}}

    def test_save_invalid(self, subscription_service, subscription_url):
        subscription_service.add_url_subscription(subscription_url)

        ok, error = subscription_service.save_current_config("{nope")
        assert ok is False
        assert error.startswith("Config is not valid JSON")
        assert subscription_service.save_current_config("[1]") == (False, "Config must be a JSON object.")

    def test_no_active_config(self, subscription_service):
        assert subscription_service.get_current_config() == ""
        assert subscription_service.save_current_config("{}") == (False, "Active config not found.")


class TestNotify:
    def test_callback_errors_are_swallowed(self, user_db, config_repo, rules_store, fake_fetcher, subscription_url):
        from subscription_service import SubscriptionService

        def broken(event, payload):
            raise RuntimeError("boom")

        service = SubscriptionService(user_db, config_repo, rules_store, fetcher=fake_fetcher, notify=broken)
        info, error = service.add_url_subscription(subscription_url)

        assert error == ""
        assert info is not None
