#!/usr/bin/env python3
"""规则所属规则集查找

配置文件中的规则与规则集文档之间没有 ID 关联，只能按结构匹配：
payload（key=值列表）+ 出站。界面可能把过长的值列表截断显示（末尾 ...），
因此匹配分两轮，并对截断的查询做子集容错：

1. 第一轮：action 为 route（或缺省）、包含匹配键、出站一致
2. 第二轮：不要求出站一致（显示标签与存储的 tag 格式可能不同）

每轮中值集合完全相等即命中；查询被截断时，去掉省略号后的每个值
都能在规则的值集合中精确找到也算命中。
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from rule_builder import (
    RuleItem,
    is_truncated_token,
    normalize_proxy_value,
    parse_rule_payload,
    rule_values,
    strip_truncation,
)

logger = logging.getLogger(__name__)


@dataclass
class RuleQuery:
    """由 RuleItem 构建的比较键"""
    key: str
    values: Set[str] = field(default_factory=set)
    proxy: str = ""
    truncated: bool = False
    truncated_tokens: Set[str] = field(default_factory=set)

    def matches_values(self, candidate: Set[str]) -> bool:
        if candidate == self.values:
            return True
        if self.truncated and self.truncated_tokens:
            return self.truncated_tokens <= candidate
        return False


def _normalize_token(token: str) -> str:
    lowered = token.lower()
    return lowered if lowered in ("true", "false") else token


def build_query(item: RuleItem) -> Tuple[Optional[RuleQuery], str]:
    """RuleItem → RuleQuery；payload 无法解析时返回 (None, 错误信息)"""
    key, values, error = parse_rule_payload(item.payload)
    if error:
        return None, error

    tokens = [_normalize_token(v) for v in values]
    truncated = any(is_truncated_token(t) for t in tokens)
    stripped = set()
    if truncated:
        for token in tokens:
            token = strip_truncation(token)
            if token:
                stripped.add(_normalize_token(token))

    return RuleQuery(
        key=key,
        values=set(tokens),
        proxy=normalize_proxy_value(item.proxy),
        truncated=truncated,
        truncated_tokens=stripped,
    ), ""


def _rule_candidate(rule: Any, query: RuleQuery, require_outbound: bool) -> Optional[Set[str]]:
    """规则对象通过轮次前置条件时返回其值集合，否则 None"""
    if not isinstance(rule, dict):
        return None
    action = rule.get("action")
    if action is not None and action != "route":
        return None
    if query.key not in rule:
        return None
    if require_outbound and normalize_proxy_value(str(rule.get("outbound", ""))) != query.proxy:
        return None
    return {_normalize_token(v) for v in rule_values(rule[query.key])}


def match_rule_set(query: RuleQuery, rule_sets: List[Dict[str, Any]]) -> str:
    """两轮扫描所有规则集，返回第一个命中的规则集名，未命中返回空字符串"""
    for require_outbound in (True, False):
        for rule_set in rule_sets:
            for rule in rule_set.get("rules") or []:
                candidate = _rule_candidate(rule, query, require_outbound)
                if candidate is not None and query.matches_values(candidate):
                    return str(rule_set.get("name", ""))
    return ""


def find_rule_set_for_item(item: RuleItem, rule_sets: List[Dict[str, Any]]) -> str:
    query, error = build_query(item)
    if query is None:
        logger.debug(f"[rules] 无法解析规则内容 {item.payload!r}: {error}")
        return ""
    return match_rule_set(query, rule_sets)


class RuleMatcher:
    """在规则集存储上查找 RuleItem 的所属规则集"""

    def __init__(self, store):
        self.store = store

    def find_rule_set(self, item: RuleItem) -> str:
        return find_rule_set_for_item(item, self.store.load_sets())
