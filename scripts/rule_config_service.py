#!/usr/bin/env python3
"""当前生效配置中的路由规则增删改

每个操作都在内存中的配置副本上完成，最后一次性写回；
配置写入成功后，再尽力同步到共享规则集存储（失败只记录日志）。
找不到生效配置、配置不可读或写入失败时整个操作中止，两个文档都不改动。
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from config_repository import ConfigRepository
from rule_builder import (
    FIELD_INFOS,
    RuleEditData,
    RuleFieldInfo,
    RuleItem,
    build_route_rule,
    find_insert_index,
    format_payload,
    normalize_proxy_value,
    parse_rule_payload,
    rule_item_from_route_rule,
    rule_matches_item,
    rules_equal,
    strip_rule_markers,
)
from rule_matcher import RuleMatcher, find_rule_set_for_item
from shared_rules_store import SharedRulesStore

logger = logging.getLogger(__name__)


class RuleConfigService:
    """生效配置的规则编辑服务"""

    def __init__(
        self,
        config_repo: ConfigRepository,
        rules_store: SharedRulesStore,
        matcher: Optional[RuleMatcher] = None,
    ):
        self.config_repo = config_repo
        self.rules_store = rules_store
        self.matcher = matcher or RuleMatcher(rules_store)

    @staticmethod
    def field_infos() -> List[RuleFieldInfo]:
        return list(FIELD_INFOS)

    # ============ 读取 ============

    def _load_active(self) -> Tuple[Optional[Path], Optional[Dict[str, Any]], str]:
        path = self.config_repo.get_active_config_path()
        if not path:
            return None, None, "Active config not found."
        config, _ = self.config_repo.read_config(path)
        if config is None:
            return path, None, f"Failed to read config file: {path}"
        return path, config, ""

    def _save_active(self, path: Path, config: Dict[str, Any]) -> str:
        ok, _ = self.config_repo.save_config(path, config)
        if not ok:
            return f"Failed to save config: {path}"
        return ""

    @staticmethod
    def _route_rules(config: Dict[str, Any]) -> Tuple[Dict[str, Any], List[Any]]:
        route = config.get("route")
        if not isinstance(route, dict):
            route = {}
            config["route"] = route
        rules = route.get("rules")
        if not isinstance(rules, list):
            rules = []
        route["rules"] = rules
        return route, rules

    def load_outbound_tags(self, extra_tag: str = "") -> Tuple[List[str], str]:
        """生效配置中的出站 tag（排序去重）；没有任何 tag 时返回 ["direct"]

        Returns:
            (tag 列表, 错误信息)；读取失败时仍返回兜底列表
        """
        tags = set()
        _, config, error = self._load_active()
        if config is not None:
            for item in config.get("outbounds") or []:
                if isinstance(item, dict):
                    tag = str(item.get("tag", "")).strip()
                    if tag:
                        tags.add(tag)
        if extra_tag:
            tags.add(extra_tag)
        if not tags:
            tags.add("direct")
        return sorted(tags), error

    def list_rules(self) -> Tuple[List[RuleItem], str]:
        """生效配置中可识别的路由规则，附带所属规则集"""
        _, config, error = self._load_active()
        if config is None:
            return [], error
        rule_sets = self.rules_store.load_sets()
        items = []
        for rule in self._route_rules(config)[1]:
            item = rule_item_from_route_rule(rule)
            if item is None:
                continue
            item.rule_set = find_rule_set_for_item(item, rule_sets)
            items.append(item)
        return items, ""

    def find_rule_set(self, item: RuleItem) -> str:
        """查找规则所属的规则集，未找到返回空字符串（调用方按默认规则集处理）"""
        return self.matcher.find_rule_set(item)

    # ============ 增删改 ============

    def add_rule(self, data: RuleEditData) -> Tuple[Optional[RuleItem], str]:
        """新增规则

        已有相同规则且位于锚点之后时，把它移到锚点位置而不是重复插入。

        Returns:
            (新增的 RuleItem, 错误信息)
        """
        route_rule, error = build_route_rule(data)
        if route_rule is None:
            return None, error

        path, config, error = self._load_active()
        if config is None:
            return None, error

        _, rules = self._route_rules(config)
        existing_index = next(
            (i for i, rule in enumerate(rules) if rules_equal(rule, route_rule)), -1
        )
        insert_index = find_insert_index(rules)
        if existing_index < 0:
            rules.insert(insert_index, route_rule)
        elif existing_index > insert_index:
            existing = rules.pop(existing_index)
            rules.insert(insert_index, existing)
            logger.info(f"[rules] 规则已存在，移动到锚点位置 {insert_index}")

        error = self._save_active(path, config)
        if error:
            return None, error

        target_set = data.target_rule_set
        ok, store_error = self.rules_store.add_rule(target_set, route_rule)
        if not ok:
            logger.warning(f"[rules] 同步规则集失败 ({target_set}): {store_error}")

        logger.info(f"[rules] 新增规则 {data.field_info.key} -> {route_rule['outbound']} ({target_set})")
        return self._edited_item(data, route_rule), ""

    def update_rule(self, existing: RuleItem, data: RuleEditData) -> Tuple[Optional[RuleItem], str]:
        """用新规则替换配置中与 existing 对应的规则，并同步规则集归属"""
        route_rule, error = build_route_rule(data)
        if route_rule is None:
            return None, error

        path, config, error = self._load_active()
        if config is None:
            return None, error

        _, rules = self._route_rules(config)
        old_rule, error = self._remove_matching(rules, existing)
        if old_rule is None:
            return None, error

        rules.insert(find_insert_index(rules), route_rule)

        error = self._save_active(path, config)
        if error:
            return None, error

        target_set = data.target_rule_set
        old_set = self.rules_store.find_set_of_rule(old_rule)
        if old_set and old_set != target_set:
            self.rules_store.remove_rule(old_set, old_rule)
        ok, store_error = self.rules_store.replace_rule(target_set, old_rule, route_rule)
        if not ok:
            logger.warning(f"[rules] 同步规则集失败 ({target_set}): {store_error}")

        logger.info(f"[rules] 更新规则 {existing.payload} -> {format_payload(data.field_info.key, data.values)}")
        return self._edited_item(data, route_rule), ""

    def remove_rule(self, item: RuleItem) -> Tuple[bool, str]:
        """从配置中删除规则；规则集中从所属集合删除，找不到归属时从所有集合删除"""
        path, config, error = self._load_active()
        if config is None:
            return False, error

        _, rules = self._route_rules(config)
        old_rule, error = self._remove_matching(rules, item)
        if old_rule is None:
            return False, error

        error = self._save_active(path, config)
        if error:
            return False, error

        owner = self.rules_store.find_set_of_rule(old_rule)
        if owner:
            ok, store_error = self.rules_store.remove_rule(owner, old_rule)
        else:
            ok, store_error = self.rules_store.remove_rule_from_all(old_rule)
        if not ok:
            logger.warning(f"[rules] 同步规则集失败: {store_error}")

        logger.info(f"[rules] 删除规则 {item.payload}")
        return True, ""

    @staticmethod
    def _remove_matching(rules: List[Any], item: RuleItem) -> Tuple[Optional[Dict[str, Any]], str]:
        """按 payload + 出站精确匹配并移除第一条规则，返回被移除的规则（去标记）"""
        key, values, error = parse_rule_payload(item.payload)
        if error:
            return None, error
        for i, rule in enumerate(rules):
            if rule_matches_item(rule, key, values, item.proxy):
                del rules[i]
                return strip_rule_markers(rule), ""
        return None, "Rule not found in config."

    @staticmethod
    def _edited_item(data: RuleEditData, route_rule: Dict[str, Any]) -> RuleItem:
        item = rule_item_from_route_rule(route_rule, data.target_rule_set)
        if item is None:
            item = RuleItem(
                type=data.field_info.key,
                payload=format_payload(data.field_info.key, data.values),
                proxy=normalize_proxy_value(data.outbound_tag),
                rule_set=data.target_rule_set,
            )
        item.is_custom = True
        return item
