#!/usr/bin/env python3
"""订阅生命周期管理

- 新增 URL 订阅 / 手动订阅，生成独立的 sing-box 配置文件
- 刷新单个 / 全部启用 / 到期的订阅
- 编辑元数据、切换 / 清除当前订阅、删除（同时删除配置和 .bak）、回滚
- 订阅刷新后把所选规则集同步进配置

结果通过 notify(event, payload) 通知调用方：
subscription_added / subscription_removed / subscription_updated /
active_changed / apply_requested / error
"""

import json
import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

import requests

from config_repository import ConfigRepository
from config_synthesizer import apply_shared_rules, passthrough_config, synthesize_config
from db_helper import ProxySettings, UserDatabase
from rule_builder import DEFAULT_RULE_SET
from shared_rules_store import SharedRulesStore
from subscription_parser import extract_nodes_with_fallback

logger = logging.getLogger(__name__)

SUBSCRIPTION_USER_AGENT = os.environ.get("SUBSCRIPTION_USER_AGENT", "sing-box")
SUBSCRIPTION_TIMEOUT = int(os.environ.get("SUBSCRIPTION_TIMEOUT", "30"))

USERINFO_HEADER = "subscription-userinfo"
USERINFO_KEYS = ("upload", "download", "total", "expire")

EVENT_ADDED = "subscription_added"
EVENT_REMOVED = "subscription_removed"
EVENT_UPDATED = "subscription_updated"
EVENT_ACTIVE_CHANGED = "active_changed"
EVENT_APPLY_REQUESTED = "apply_requested"
EVENT_ERROR = "error"

Notifier = Callable[[str, Dict[str, Any]], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SubscriptionInfo:
    """订阅记录（对应 subscriptions 表的一行）"""
    id: str
    name: str
    url: str = ""
    is_manual: bool = False
    manual_content: str = ""
    use_original_config: bool = False
    config_path: str = ""
    backup_path: str = ""
    auto_update_minutes: int = 0
    enable_shared_rules: bool = True
    rule_sets: List[str] = field(default_factory=lambda: [DEFAULT_RULE_SET])
    node_count: int = 0
    upload: Optional[int] = None
    download: Optional[int] = None
    total: Optional[int] = None
    expire: Optional[int] = None
    last_update: int = 0
    enabled: bool = True
    is_active: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SubscriptionInfo":
        names = {f.name for f in fields(cls)}
        info = cls(**{k: v for k, v in row.items() if k in names})
        info.rule_sets = normalize_rule_sets(info.rule_sets)
        info.auto_update_minutes = int(info.auto_update_minutes or 0)
        info.node_count = int(info.node_count or 0)
        info.last_update = int(info.last_update or 0)
        return info

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row.pop("id")
        return row

    def clear_usage(self) -> None:
        self.upload = self.download = self.total = self.expire = None

    def is_due(self, now_ms: int) -> bool:
        """URL 订阅按 auto_update_minutes 定时刷新，0 表示不自动刷新"""
        if not self.enabled or self.is_manual or self.auto_update_minutes <= 0:
            return False
        return now_ms - self.last_update >= self.auto_update_minutes * 60 * 1000


def normalize_rule_sets(rule_sets: Optional[List[str]]) -> List[str]:
    names = []
    for name in rule_sets or []:
        name = str(name).strip()
        if name and name not in names:
            names.append(name)
    return names or [DEFAULT_RULE_SET]


def parse_userinfo_header(header: Optional[str]) -> Dict[str, int]:
    """解析 subscription-userinfo 头：upload=1; download=2; total=3; expire=4"""
    info: Dict[str, int] = {}
    if not header:
        return info
    for segment in header.strip().split(";"):
        key, sep, value = segment.partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        if key not in USERINFO_KEYS:
            continue
        try:
            number = int(float(value.strip()))
        except ValueError:
            continue
        if number >= 0:
            info[key] = number
    return info


def is_json_object(text: str) -> bool:
    try:
        return isinstance(json.loads(text), dict)
    except (TypeError, ValueError):
        return False


# ============ 订阅下载 ============


class SubscriptionFetchError(Exception):
    """订阅下载失败"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class FetchResult:
    content: str
    userinfo: str = ""


class SubscriptionFetcher:
    """用 requests 下载订阅内容"""

    def __init__(self, timeout: int = SUBSCRIPTION_TIMEOUT, user_agent: str = SUBSCRIPTION_USER_AGENT,
                 proxies: Optional[Dict[str, str]] = None):
        self.timeout = timeout
        self.user_agent = user_agent
        self.proxies = proxies

    def __call__(self, url: str) -> FetchResult:
        logger.debug(f"[sub] GET {url}")
        try:
            response = requests.get(
                url,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
                proxies=self.proxies,
            )
        except requests.exceptions.Timeout as e:
            logger.debug(f"[sub] Timeout details: {e}")
            raise SubscriptionFetchError(f"Request timeout: {url}")
        except requests.RequestException as e:
            raise SubscriptionFetchError(f"Failed to fetch subscription: {e}")

        if response.status_code >= 400:
            raise SubscriptionFetchError(
                f"Failed to fetch subscription: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        content = response.content.decode("utf-8", errors="replace")
        return FetchResult(content=content, userinfo=response.headers.get(USERINFO_HEADER, ""))


# ============ 服务 ============


class SubscriptionService:
    """订阅管理服务

    Args:
        db: 用户数据库（订阅表 + 设置）
        config_repo: 配置仓库；当前订阅的配置路径会注册为其生效路径
        rules_store: 共享规则集存储
        fetcher: url -> FetchResult，默认 SubscriptionFetcher
        notify: 事件回调 notify(event, payload)
        settings_provider: 返回 ProxySettings，默认读数据库
    """

    def __init__(
        self,
        db: UserDatabase,
        config_repo: ConfigRepository,
        rules_store: SharedRulesStore,
        fetcher: Optional[Callable[[str], FetchResult]] = None,
        notify: Optional[Notifier] = None,
        settings_provider: Optional[Callable[[], ProxySettings]] = None,
    ):
        self.db = db
        self.config_repo = config_repo
        self.rules_store = rules_store
        self.fetcher = fetcher or SubscriptionFetcher()
        self.notify = notify
        self.settings_provider = settings_provider or db.get_proxy_settings
        self.config_repo.set_active_path_resolver(self.get_active_config_path)

    # ============ 通知 ============

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        if self.notify is None:
            return
        try:
            self.notify(event, payload)
        except Exception as e:  # pylint: disable=broad-except
            logger.warning(f"[sub] 通知回调失败 ({event}): {e}")

    def _fail(self, message: str) -> str:
        logger.warning(f"[sub] {message}")
        self._emit(EVENT_ERROR, {"message": message})
        return message

    # ============ 查询 ============

    def list_subscriptions(self) -> List[SubscriptionInfo]:
        return [SubscriptionInfo.from_row(row) for row in self.db.get_subscriptions()]

    def get_subscription(self, sub_id: str) -> Optional[SubscriptionInfo]:
        row = self.db.get_subscription(sub_id)
        return SubscriptionInfo.from_row(row) if row else None

    def get_active_subscription(self) -> Optional[SubscriptionInfo]:
        row = self.db.get_active_subscription()
        return SubscriptionInfo.from_row(row) if row else None

    def get_active_config_path(self) -> str:
        active = self.get_active_subscription()
        return active.config_path if active else ""

    # ============ 生成配置 ============

    def _write_config(self, info: SubscriptionInfo, content: str) -> str:
        """按订阅内容生成并保存配置，成功返回空字符串

        原始配置模式只接受 JSON 对象；节点模式下提取不到节点但内容是
        JSON 对象时，退回原始配置模式。
        """
        settings = self.settings_provider()
        config_path = Path(info.config_path)

        if not info.use_original_config:
            result = extract_nodes_with_fallback(content)
            if result.nodes:
                config, error = synthesize_config(result.nodes, settings)
                if config is None:
                    return error
                ok, error = self.config_repo.save_config(config_path, config)
                if not ok:
                    return "Failed to save subscription config"
                info.node_count = len(result.nodes)
                logger.info(f"[sub] {info.name}: {len(result.nodes)} 个节点，跳过 {result.skipped} 条")
                return ""
            if not is_json_object(content):
                return "Failed to extract nodes from subscription content; check format"
            logger.info(f"[sub] {info.name}: 未提取到节点，按原始配置保存")
            info.use_original_config = True

        if not is_json_object(content):
            return "Original subscription only supports sing-box JSON config"
        config, error = passthrough_config(content, settings)
        if config is None:
            return error
        ok, _ = self.config_repo.save_config(config_path, config)
        if not ok:
            return "Failed to save subscription config"
        info.node_count = 0
        return ""

    def sync_shared_rules(self, info: SubscriptionInfo) -> bool:
        """把订阅所选规则集注入其配置"""
        if not info.config_path:
            return False
        config = self.config_repo.load_config(info.config_path)
        if config is None:
            return False

        merged: List[Dict[str, Any]] = []
        if info.enable_shared_rules:
            merged = self.rules_store.load_rules_for_sets(normalize_rule_sets(info.rule_sets))
        # 取消勾选的规则集也要从配置中清掉
        known = self.rules_store.load_rules_for_sets(self.rules_store.list_rule_sets())
        apply_shared_rules(config, merged, enabled=info.enable_shared_rules and bool(merged), stale_rules=known)
        ok, _ = self.config_repo.save_config(info.config_path, config)
        return ok

    # ============ 新增 ============

    def _new_info(self, name: str, **kwargs) -> SubscriptionInfo:
        config_path = self.config_repo.new_subscription_config_path(name)
        info = SubscriptionInfo(id=str(uuid.uuid4()), name=name, **kwargs)
        info.config_path = str(config_path)
        info.backup_path = f"{config_path}.bak"
        info.rule_sets = normalize_rule_sets(info.rule_sets)
        return info

    def _finish_add(self, info: SubscriptionInfo, apply_runtime: bool) -> Tuple[Optional[SubscriptionInfo], str]:
        info.last_update = _now_ms()
        self.sync_shared_rules(info)

        row = info.to_row()
        row.pop("name")
        row["sort_order"] = len(self.db.get_subscriptions())
        if not self.db.add_subscription(info.id, info.name, **row):
            self.config_repo.delete_config(info.config_path)
            return None, self._fail("Failed to save subscription")
        self.db.set_active_subscription(info.id)
        info.is_active = True

        logger.info(f"[sub] 新增订阅: {info.name} ({info.id})")
        self._emit(EVENT_ADDED, {"id": info.id, "name": info.name})
        self._emit(EVENT_ACTIVE_CHANGED, {"id": info.id, "config_path": info.config_path})
        if apply_runtime:
            self._emit(EVENT_APPLY_REQUESTED, {"config_path": info.config_path, "restart": True})
        return info, ""

    def add_url_subscription(
        self,
        url: str,
        name: str = "",
        use_original_config: bool = False,
        auto_update_minutes: int = 0,
        apply_runtime: bool = False,
        enable_shared_rules: bool = True,
        rule_sets: Optional[List[str]] = None,
    ) -> Tuple[Optional[SubscriptionInfo], str]:
        """下载订阅并生成配置，成功后设为当前订阅"""
        url = (url or "").strip()
        if not url:
            return None, self._fail("Please enter a subscription URL")

        sub_name = (name or "").strip() or urlparse(url).hostname or "subscription"
        try:
            fetched = self.fetcher(url)
        except SubscriptionFetchError as e:
            return None, self._fail(str(e))

        info = self._new_info(
            sub_name,
            url=url,
            use_original_config=use_original_config,
            auto_update_minutes=max(0, int(auto_update_minutes or 0)),
            enable_shared_rules=enable_shared_rules,
            rule_sets=rule_sets,
        )
        error = self._write_config(info, fetched.content)
        if error:
            return None, self._fail(error)

        info.clear_usage()
        for key, value in parse_userinfo_header(fetched.userinfo).items():
            setattr(info, key, value)
        return self._finish_add(info, apply_runtime)

    def add_manual_subscription(
        self,
        content: str,
        name: str = "",
        use_original_config: bool = False,
        apply_runtime: bool = False,
        enable_shared_rules: bool = True,
        rule_sets: Optional[List[str]] = None,
    ) -> Tuple[Optional[SubscriptionInfo], str]:
        """手动填写的节点 JSON / 分享链接 / 完整配置"""
        content = (content or "").strip()
        if not content:
            return None, self._fail("Please enter subscription content")
        if use_original_config and not is_json_object(content):
            return None, self._fail("Original subscription only supports sing-box JSON config")

        info = self._new_info(
            (name or "").strip() or "Manual subscription",
            is_manual=True,
            manual_content=content,
            use_original_config=use_original_config,
            enable_shared_rules=enable_shared_rules,
            rule_sets=rule_sets,
        )
        error = self._write_config(info, content)
        if error:
            return None, self._fail(error)
        return self._finish_add(info, apply_runtime)

    # ============ 刷新 ============

    def refresh_subscription(self, sub_id: str, apply_runtime: bool = False) -> Tuple[Optional[SubscriptionInfo], str]:
        info = self.get_subscription(sub_id)
        if info is None:
            return None, self._fail("Subscription not found")

        if info.is_manual:
            if not info.manual_content.strip():
                return None, self._fail("Manual subscription content is empty")
            error = self._write_config(info, info.manual_content)
            if error:
                return None, self._fail(error)
            info.clear_usage()
        else:
            if not info.url.strip():
                return None, self._fail("Subscription URL is empty")
            try:
                fetched = self.fetcher(info.url.strip())
            except SubscriptionFetchError as e:
                return None, self._fail(str(e))
            error = self._write_config(info, fetched.content)
            if error:
                return None, self._fail(error)
            info.clear_usage()
            for key, value in parse_userinfo_header(fetched.userinfo).items():
                setattr(info, key, value)

        info.last_update = _now_ms()
        self.sync_shared_rules(info)
        self.db.update_subscription(info.id, **info.to_row())

        logger.info(f"[sub] 已刷新订阅: {info.name} ({info.node_count} 个节点)")
        self._emit(EVENT_UPDATED, {"id": info.id})
        if apply_runtime:
            self._emit(EVENT_APPLY_REQUESTED, {"config_path": info.config_path, "restart": True})
        return info, ""

    def refresh_all(self, apply_runtime: bool = False) -> Dict[str, str]:
        """刷新所有启用的订阅，返回 {id: 错误信息}（成功为空字符串）"""
        results = {}
        for info in self.list_subscriptions():
            if info.enabled:
                _, error = self.refresh_subscription(info.id, apply_runtime)
                results[info.id] = error
        return results

    def refresh_due(self, now_ms: Optional[int] = None) -> List[str]:
        """刷新到期的订阅，返回成功刷新的 ID"""
        now_ms = _now_ms() if now_ms is None else now_ms
        refreshed = []
        for info in self.list_subscriptions():
            if not info.is_due(now_ms):
                continue
            updated, _ = self.refresh_subscription(info.id, apply_runtime=info.is_active)
            if updated is not None:
                refreshed.append(info.id)
        return refreshed

    # ============ 编辑 / 激活 / 删除 ============

    def update_subscription_meta(self, sub_id: str, **changes) -> Tuple[Optional[SubscriptionInfo], str]:
        """修改名称、URL、手动内容、刷新周期、规则集等元数据（不重新下载）"""
        info = self.get_subscription(sub_id)
        if info is None:
            return None, self._fail("Subscription not found")

        editable = {
            "name", "url", "is_manual", "manual_content", "use_original_config",
            "auto_update_minutes", "enable_shared_rules", "rule_sets", "enabled",
        }
        for key, value in changes.items():
            if key in editable and value is not None:
                setattr(info, key, value.strip() if isinstance(value, str) and key != "manual_content" else value)
        info.rule_sets = normalize_rule_sets(info.rule_sets)
        if not info.name:
            return None, self._fail("Subscription name cannot be empty")

        self.db.update_subscription(info.id, **info.to_row())
        self.sync_shared_rules(info)
        self._emit(EVENT_UPDATED, {"id": info.id})
        return info, ""

    def set_active_subscription(self, sub_id: str, apply_runtime: bool = False) -> Tuple[bool, str]:
        info = self.get_subscription(sub_id)
        if info is None or not self.db.set_active_subscription(sub_id):
            return False, self._fail("Subscription not found")

        self.sync_shared_rules(info)
        logger.info(f"[sub] 当前订阅: {info.name}")
        self._emit(EVENT_ACTIVE_CHANGED, {"id": info.id, "config_path": info.config_path})
        if apply_runtime and info.config_path:
            self._emit(EVENT_APPLY_REQUESTED, {"config_path": info.config_path, "restart": True})
        return True, ""

    def clear_active_subscription(self) -> None:
        self.db.set_active_subscription(None)
        self._emit(EVENT_ACTIVE_CHANGED, {"id": "", "config_path": ""})

    def remove_subscription(self, sub_id: str) -> Tuple[bool, str]:
        """删除订阅及其配置文件和备份"""
        info = self.get_subscription(sub_id)
        if info is None:
            return False, self._fail("Subscription not found")

        self.db.delete_subscription(sub_id)
        self._emit(EVENT_REMOVED, {"id": sub_id})
        if info.is_active:
            self._emit(EVENT_ACTIVE_CHANGED, {"id": "", "config_path": ""})
        if info.config_path:
            self.config_repo.delete_config(info.config_path)
        logger.info(f"[sub] 删除订阅: {info.name} ({sub_id})")
        return True, ""

    def rollback_subscription(self, sub_id: str) -> Tuple[bool, str]:
        info = self.get_subscription(sub_id)
        if info is None:
            return False, self._fail("Subscription not found")
        ok, error = self.config_repo.rollback_config(info.config_path)
        if not ok:
            return False, self._fail(f"Rollback failed: {error}")
        self._emit(EVENT_UPDATED, {"id": sub_id})
        return True, ""

    # ============ 当前配置 ============

    def _current_config_path(self) -> Optional[Path]:
        return self.config_repo.get_active_config_path()

    def get_current_config(self) -> str:
        """当前配置原文，不存在返回空字符串"""
        path = self._current_config_path()
        if not path:
            return ""
        try:
            return Path(path).read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"[sub] 读取当前配置失败 {path}: {e}")
            return ""

    def save_current_config(self, content: Union[str, Dict[str, Any]], apply_runtime: bool = False) -> Tuple[bool, str]:
        """保存手工编辑的当前配置（必须是 JSON 对象）"""
        path = self._current_config_path()
        if not path:
            return False, "Active config not found."
        config = content
        if isinstance(content, str):
            try:
                config = json.loads(content)
            except ValueError as e:
                return False, f"Config is not valid JSON: {e}"
        if not isinstance(config, dict):
            return False, "Config must be a JSON object."

        ok, error = self.config_repo.save_config(path, config)
        if not ok:
            return False, f"Failed to save config: {error}"
        if apply_runtime:
            self._emit(EVENT_APPLY_REQUESTED, {"config_path": str(path), "restart": True})
        return True, ""
