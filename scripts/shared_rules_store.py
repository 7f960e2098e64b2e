#!/usr/bin/env python3
"""共享规则集存储

文档结构：
    {"sets": [{"name": "default", "rules": [<route 规则>, ...]}, ...]}

- 旧版文档（根为数组）按 "default" 规则集读取
- "default" 规则集始终视为存在，首次写入时才落盘
- 规则比较忽略键顺序和 shared/source 标记
- 一条规则只归属一个规则集：加入目标集时会从其它集中移除
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from config_repository import CONFIG_DIR, write_json_atomic
from rule_builder import DEFAULT_RULE_SET, normalize_rule_set_name, rule_signature, strip_rule_markers

logger = logging.getLogger(__name__)

SHARED_RULES_FILE = Path(os.environ.get("SHARED_RULES_FILE", str(CONFIG_DIR / "shared-rules.json")))


def _empty_document() -> Dict[str, Any]:
    return {"sets": []}


class SharedRulesStore:
    """规则集文档的增删改查（每次操作读取最新文档，写入为原子替换）"""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else SHARED_RULES_FILE

    # ============ 文档读写 ============

    def load_document(self) -> Dict[str, Any]:
        if not self.path.exists():
            return _empty_document()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"[store] 规则集文件无效，按空文档处理: {self.path}: {e}")
            return _empty_document()

        if isinstance(data, list):
            return {"sets": [{"name": DEFAULT_RULE_SET, "rules": data}]}
        if not isinstance(data, dict):
            logger.warning(f"[store] 规则集文件根节点无效，按空文档处理: {self.path}")
            return _empty_document()
        if not isinstance(data.get("sets"), list):
            data["sets"] = []
        return data

    def save_document(self, doc: Dict[str, Any]) -> Tuple[bool, str]:
        try:
            write_json_atomic(self.path, doc)
        except OSError as e:
            logger.error(f"[store] 写入规则集文件失败 {self.path}: {e}")
            return False, f"Failed to write rule sets: {e}"
        return True, ""

    def load_sets(self) -> List[Dict[str, Any]]:
        """所有规则集（名称非空），rules 只保留对象"""
        result = []
        for item in self.load_document()["sets"]:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name", "")).strip()
            if not name:
                continue
            rules = item.get("rules") if isinstance(item.get("rules"), list) else []
            result.append({"name": name, "rules": [r for r in rules if isinstance(r, dict)]})
        return result

    # ============ 规则集 ============

    def list_rule_sets(self) -> List[str]:
        """规则集名称（排序去重，始终包含 default）"""
        names = {s["name"] for s in self.load_sets()}
        names.add(DEFAULT_RULE_SET)
        return sorted(names)

    def has_rule_set(self, name: str) -> bool:
        return normalize_rule_set_name(name) in self.list_rule_sets()

    def load_rules(self, name: str) -> List[Dict[str, Any]]:
        target = normalize_rule_set_name(name)
        for item in self.load_sets():
            if item["name"] == target:
                return item["rules"]
        return []

    def load_rules_for_sets(self, names: List[str]) -> List[Dict[str, Any]]:
        """按给定顺序合并多个规则集的规则（去重、去标记）"""
        merged: List[Dict[str, Any]] = []
        seen = set()
        sets = {s["name"]: s["rules"] for s in self.load_sets()}
        for name in names or []:
            for rule in sets.get(normalize_rule_set_name(name), []):
                sig = rule_signature(rule)
                if sig in seen:
                    continue
                seen.add(sig)
                merged.append(strip_rule_markers(rule))
        return merged

    def save_rules(self, name: str, rules: List[Dict[str, Any]]) -> Tuple[bool, str]:
        """整体替换某个规则集的规则（不存在则新建）"""
        target = normalize_rule_set_name(name)
        doc = self.load_document()
        _set_rules(doc, target, [strip_rule_markers(r) for r in rules if isinstance(r, dict)])
        return self.save_document(doc)

    def create_rule_set(self, name: str) -> Tuple[bool, str]:
        name = (name or "").strip()
        if not name:
            return False, "Rule set name cannot be empty."
        doc = self.load_document()
        if _find_set(doc, name) is not None:
            return False, f"Rule set already exists: {name}"
        if name == DEFAULT_RULE_SET:
            # default 逻辑上总是存在，这里只是落盘
            _set_rules(doc, name, [])
            return self.save_document(doc)
        doc["sets"].append({"name": name, "rules": []})
        ok, error = self.save_document(doc)
        if ok:
            logger.info(f"[store] 新建规则集: {name}")
        return ok, error

    def rename_rule_set(self, old_name: str, new_name: str) -> Tuple[bool, str]:
        old_name = (old_name or "").strip()
        new_name = (new_name or "").strip()
        if old_name == DEFAULT_RULE_SET:
            return False, "The default rule set cannot be renamed."
        if not new_name:
            return False, "Rule set name cannot be empty."
        if old_name == new_name:
            return True, ""
        if new_name in self.list_rule_sets():
            return False, f"Rule set already exists: {new_name}"

        doc = self.load_document()
        item = _find_set(doc, old_name)
        if item is None:
            return False, f"Rule set not found: {old_name}"
        item["name"] = new_name
        ok, error = self.save_document(doc)
        if ok:
            logger.info(f"[store] 规则集重命名: {old_name} -> {new_name}")
        return ok, error

    def remove_rule_set(self, name: str) -> Tuple[bool, str]:
        name = (name or "").strip()
        if name == DEFAULT_RULE_SET:
            return False, "The default rule set cannot be removed."
        doc = self.load_document()
        if _find_set(doc, name) is None:
            return False, f"Rule set not found: {name}"
        doc["sets"] = [s for s in doc["sets"] if not (isinstance(s, dict) and _set_name(s) == name)]
        ok, error = self.save_document(doc)
        if ok:
            logger.info(f"[store] 删除规则集: {name}")
        return ok, error

    # ============ 单条规则 ============

    def add_rule(self, name: str, rule: Dict[str, Any]) -> Tuple[bool, str]:
        """把规则放入目标规则集；已在其它集中的同一规则会被移出"""
        target = normalize_rule_set_name(name)
        sig = rule_signature(rule)
        doc = self.load_document()

        moved_from = _remove_signature(doc, sig, exclude=target)
        rules = _get_rules(doc, target)
        if any(rule_signature(r) == sig for r in rules):
            if not moved_from:
                return True, ""
        else:
            rules.append(strip_rule_markers(rule))
        _set_rules(doc, target, rules)

        if moved_from:
            logger.info(f"[store] 规则从 {', '.join(moved_from)} 移到 {target}")
        return self.save_document(doc)

    def replace_rule(self, name: str, old_rule: Dict[str, Any], new_rule: Dict[str, Any]) -> Tuple[bool, str]:
        """在目标规则集中用新规则替换旧规则；旧规则不存在时追加"""
        target = normalize_rule_set_name(name)
        old_sig = rule_signature(old_rule)
        new_sig = rule_signature(new_rule)
        doc = self.load_document()

        _remove_signature(doc, new_sig, exclude=target)
        rules = _get_rules(doc, target)
        replaced = False
        for i, rule in enumerate(rules):
            if rule_signature(rule) == old_sig:
                rules[i] = strip_rule_markers(new_rule)
                replaced = True
                break
        if not replaced:
            rules.append(strip_rule_markers(new_rule))

        deduped = []
        seen = set()
        for rule in rules:
            sig = rule_signature(rule)
            if sig in seen:
                continue
            seen.add(sig)
            deduped.append(rule)
        _set_rules(doc, target, deduped)
        return self.save_document(doc)

    def remove_rule(self, name: str, rule: Dict[str, Any]) -> Tuple[bool, str]:
        """从规则集中移除规则；规则不存在也视为成功"""
        target = normalize_rule_set_name(name)
        sig = rule_signature(rule)
        doc = self.load_document()
        if _find_set(doc, target) is None:
            return True, ""
        rules = _get_rules(doc, target)
        for i, r in enumerate(rules):
            if rule_signature(r) == sig:
                del rules[i]
                _set_rules(doc, target, rules)
                return self.save_document(doc)
        return True, ""

    def remove_rule_from_all(self, rule: Dict[str, Any]) -> Tuple[bool, str]:
        doc = self.load_document()
        removed = _remove_signature(doc, rule_signature(rule))
        if not removed:
            return True, ""
        logger.info(f"[store] 从 {', '.join(removed)} 中移除规则")
        return self.save_document(doc)

    def find_set_of_rule(self, rule: Dict[str, Any]) -> str:
        """精确查找规则所在的规则集，找不到返回空字符串"""
        sig = rule_signature(rule)
        for item in self.load_sets():
            if any(rule_signature(r) == sig for r in item["rules"]):
                return item["name"]
        return ""


def _set_name(item: Dict[str, Any]) -> str:
    return str(item.get("name", "")).strip()


def _find_set(doc: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    for item in doc["sets"]:
        if isinstance(item, dict) and _set_name(item) == name:
            return item
    return None


def _get_rules(doc: Dict[str, Any], name: str) -> List[Dict[str, Any]]:
    item = _find_set(doc, name)
    if item is None or not isinstance(item.get("rules"), list):
        return []
    return [r for r in item["rules"] if isinstance(r, dict)]


def _set_rules(doc: Dict[str, Any], name: str, rules: List[Dict[str, Any]]) -> None:
    item = _find_set(doc, name)
    if item is None:
        doc["sets"].append({"name": name, "rules": rules})
    else:
        item["name"] = name
        item["rules"] = rules


def _remove_signature(doc: Dict[str, Any], sig: str, exclude: Optional[str] = None) -> List[str]:
    """从所有规则集（exclude 除外）中移除签名相同的规则，返回受影响的集名"""
    affected = []
    for item in doc["sets"]:
        if not isinstance(item, dict) or _set_name(item) == exclude:
            continue
        rules = item.get("rules") if isinstance(item.get("rules"), list) else []
        kept = [r for r in rules if not (isinstance(r, dict) and rule_signature(r) == sig)]
        if len(kept) != len(rules):
            item["rules"] = kept
            affected.append(_set_name(item))
    return affected
