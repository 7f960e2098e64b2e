#!/usr/bin/env python3
"""路由规则构建

RuleEditData（匹配字段 + 值 + 出站）→ sing-box route 规则对象：
    {"<key>": <值或数组>, "action": "route", "outbound": "<tag>"}

编码约定：
- ip_is_private 只能是单个布尔值
- 数值字段（端口）单值写标量，多值写数组
- 其他字段同样单值标量、多值数组，值为字符串

另外提供 RuleItem（展示用的 key=v1,v2 形式）与规则对象之间的互转、
规则锚点插入位置计算，以及规则比较用的签名。
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_RULE_SET = "default"

# 规则对象中的内部标记，比较和写入配置时忽略
RULE_MARKER_KEYS = ("shared", "source")

# 截断显示时追加在值末尾的省略号
TRUNCATION_MARKERS = ("...", "\u2026")

_BRACKET_TOKEN_RE = re.compile(r'"((?:[^"\\]|\\.)*)"|\'([^\']*)\'|([^\s,]+)')

# 值中出现这些字符时 payload 改用 JSON 数组写法
_NEEDS_QUOTING_RE = re.compile(r'[\s,"\'\[\]]')


@dataclass(frozen=True)
class RuleFieldInfo:
    """规则匹配字段目录项"""
    label: str
    key: str
    placeholder: str = ""
    numeric: bool = False


# 固定的匹配字段目录，运行期不可修改
FIELD_INFOS: Tuple[RuleFieldInfo, ...] = (
    RuleFieldInfo("Domain", "domain", "Example: example.com"),
    RuleFieldInfo("Domain Suffix", "domain_suffix", "Example: example.com"),
    RuleFieldInfo("Domain Keyword", "domain_keyword", "Example: google"),
    RuleFieldInfo("Domain Regex", "domain_regex", r"Example: ^.*\.example\.com$"),
    RuleFieldInfo("IP CIDR", "ip_cidr", "Example: 192.168.0.0/16"),
    RuleFieldInfo("Private IP", "ip_is_private", "Example: true / false"),
    RuleFieldInfo("Source IP CIDR", "source_ip_cidr", "Example: 10.0.0.0/8"),
    RuleFieldInfo("Port", "port", "Example: 80,443", numeric=True),
    RuleFieldInfo("Source Port", "source_port", "Example: 80,443", numeric=True),
    RuleFieldInfo("Port Range", "port_range", "Example: 10000:20000"),
    RuleFieldInfo("Source Port Range", "source_port_range", "Example: 10000:20000"),
    RuleFieldInfo("Process Name", "process_name", "Example: chrome.exe"),
    RuleFieldInfo("Process Path", "process_path", r"Example: C:\Program Files\App\app.exe"),
    RuleFieldInfo("Process Path Regex", "process_path_regex", r"Example: ^C:\\Program Files\\.+"),
)

FIELD_KEYS = tuple(info.key for info in FIELD_INFOS)


def field_info_for_key(key: str) -> RuleFieldInfo:
    """按匹配键查找目录项；目录外的键按非数值字段处理"""
    key = (key or "").strip()
    for info in FIELD_INFOS:
        if info.key == key:
            return info
    return RuleFieldInfo(label=key, key=key)


@dataclass
class RuleEditData:
    """规则编辑表单数据"""
    field_info: RuleFieldInfo
    values: List[str] = field(default_factory=list)
    outbound_tag: str = ""
    rule_set: str = DEFAULT_RULE_SET

    @property
    def target_rule_set(self) -> str:
        return normalize_rule_set_name(self.rule_set)


@dataclass
class RuleItem:
    """规则的展示视图，也是查找所属规则集时的查询键"""
    type: str = ""
    payload: str = ""
    proxy: str = ""
    rule_set: str = ""
    is_custom: bool = False


def normalize_rule_set_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    return name or DEFAULT_RULE_SET


def clean_values(values: List[Any]) -> List[str]:
    """去空白、去空值、保序去重"""
    result: List[str] = []
    for value in values or []:
        text = str(value).strip()
        if text and text not in result:
            result.append(text)
    return result


def build_route_rule(data: RuleEditData) -> Tuple[Optional[Dict[str, Any]], str]:
    """校验并构建路由规则对象

    校验顺序：匹配键 → 值（去空白去重后非空）→ 字段专属校验 → 出站。
    任一步失败返回 (None, 原因)。

    Returns:
        (规则对象, 错误信息)
    """
    key = (data.field_info.key or "").strip()
    if not key:
        return None, "Match type cannot be empty."

    values = clean_values(data.values)
    if not values:
        return None, "Match value cannot be empty."

    value: Any
    if key == "ip_is_private":
        if len(values) != 1:
            return None, "ip_is_private allows only one value (true/false)."
        raw = values[0].lower()
        if raw not in ("true", "false"):
            return None, "ip_is_private must be true or false."
        value = raw == "true"
    elif data.field_info.numeric:
        numbers: List[int] = []
        for v in values:
            if not (v.isascii() and v.isdigit()):
                return None, f"Port must be numeric: {v}"
            number = int(v)
            if number not in numbers:
                numbers.append(number)
        value = numbers[0] if len(numbers) == 1 else numbers
    else:
        value = values[0] if len(values) == 1 else values

    outbound = (data.outbound_tag or "").strip()
    if not outbound:
        return None, "Outbound cannot be empty."

    return {key: value, "action": "route", "outbound": outbound}, ""


# ============ payload 解析 ============


def split_payload_values(text: str) -> List[str]:
    """拆分 payload 中 = 右侧的值列表

    支持两种写法：
    - 方括号列表：[a b "c d"] / ["a","b"]，逗号或空白分隔，可带引号
    - 逗号分隔：a,b,c
    """
    text = (text or "").strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list) and all(isinstance(v, str) for v in parsed):
            return [v.strip() for v in parsed if v.strip()]

        # 截断或非严格 JSON 的列表，逐个取值
        inner = text[1:]
        if inner.endswith("]"):
            inner = inner[:-1]
        tokens = []
        for match in _BRACKET_TOKEN_RE.finditer(inner):
            quoted, single, bare = match.groups()
            if quoted is not None:
                tokens.append(_json_unescape(quoted).strip())
            elif single is not None:
                tokens.append(single.strip())
            else:
                tokens.append(bare.lstrip("\"'").strip())
        return [t for t in tokens if t]

    tokens = []
    for part in text.split(","):
        part = _strip_quotes(part.strip())
        if part:
            tokens.append(part)
    return tokens


def parse_rule_payload(payload: str) -> Tuple[str, List[str], str]:
    """解析 key=v1,v2 形式的规则内容

    Returns:
        (匹配键, 值列表, 错误信息)
    """
    trimmed = (payload or "").strip()
    eq = trimmed.find("=")
    if eq <= 0:
        return "", [], "Failed to parse current rule content."

    key = trimmed[:eq].strip()
    if not key:
        return "", [], "Failed to parse current rule content."

    values = split_payload_values(trimmed[eq + 1:])
    if not values:
        return "", [], "Match value cannot be empty."
    return key, values, ""


def format_payload(key: str, values: List[Any]) -> str:
    """RuleItem 展示用 payload：普通值写 key=v1,v2，含逗号/引号/空白的值写 key=["v1","v2"]"""
    texts = [str(v) for v in values]
    if any(_NEEDS_QUOTING_RE.search(t) for t in texts):
        return f"{key}={json.dumps(texts, ensure_ascii=False, separators=(',', ':'))}"
    return f"{key}={','.join(texts)}"


def is_truncated_token(token: str) -> bool:
    return any(token.endswith(marker) for marker in TRUNCATION_MARKERS)


def strip_truncation(token: str) -> str:
    """去掉值末尾的省略号（只处理末尾，不处理中间）"""
    for marker in TRUNCATION_MARKERS:
        if token.endswith(marker):
            return token[:-len(marker)].strip()
    return token


def _json_unescape(text: str) -> str:
    try:
        return json.loads(f'"{text}"')
    except ValueError:
        return text


def _strip_quotes(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1].strip()
    return text


# ============ 出站标签 ============


def normalize_proxy_value(proxy: Optional[str]) -> str:
    """规范化出站显示值：direct/reject 不区分大小写，去掉 [..] / Proxy(..) / route(..) 包装"""
    value = (proxy or "").strip()
    if value.lower() == "direct":
        return "direct"
    if value.lower() == "reject":
        return "reject"
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    if value.startswith("Proxy(") and value.endswith(")"):
        value = value[6:-1]
    if value.startswith("route(") and value.endswith(")"):
        value = value[6:-1]
    return value.strip()


def display_proxy_label(proxy: Optional[str]) -> str:
    value = normalize_proxy_value(proxy)
    if value == "direct":
        return "Direct"
    if value == "reject":
        return "Reject"
    return value


def is_custom_payload(payload: str) -> bool:
    """按匹配键前缀判断是否用户自定义规则"""
    p = (payload or "").lower()
    return p.startswith(("domain", "ip", "process", "package", "port", "source"))


# ============ 规则对象 ↔ RuleItem ============


def rule_values(value: Any) -> List[str]:
    """把规则对象中的匹配值转换为字符串列表（数组 / 数值 / 布尔 / 字符串）"""
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    result = []
    for item in items:
        if isinstance(item, bool):
            result.append("true" if item else "false")
        elif isinstance(item, int):
            result.append(str(item))
        elif isinstance(item, float):
            result.append(str(int(item)) if item.is_integer() else str(item))
        elif item is None:
            continue
        else:
            result.append(str(item).strip())
    return result


def rule_match_key(rule: Dict[str, Any]) -> str:
    """规则对象中的匹配键（目录中的第一个出现的字段）"""
    for key in rule:
        if key in FIELD_KEYS:
            return key
    return ""


def rule_item_from_route_rule(rule: Dict[str, Any], rule_set: str = "") -> Optional[RuleItem]:
    """规则对象 → 展示用 RuleItem；没有可识别匹配键时返回 None"""
    if not isinstance(rule, dict):
        return None
    key = rule_match_key(rule)
    if not key:
        return None
    payload = format_payload(key, rule_values(rule[key]))
    source = str(rule.get("source", "")).lower()
    return RuleItem(
        type=key,
        payload=payload,
        proxy=str(rule.get("outbound", "")),
        rule_set=rule_set,
        is_custom=source in ("user", "custom") or is_custom_payload(payload),
    )


def route_rule_from_item(item: RuleItem) -> Tuple[Optional[Dict[str, Any]], str]:
    """RuleItem → 规则对象（按精确解析，不做截断容错）"""
    key, values, error = parse_rule_payload(item.payload)
    if error:
        return None, error
    data = RuleEditData(
        field_info=field_info_for_key(key),
        values=values,
        outbound_tag=normalize_proxy_value(item.proxy),
        rule_set=item.rule_set,
    )
    return build_route_rule(data)


def rule_matches_item(rule: Any, key: str, values: List[str], proxy: str) -> bool:
    """配置中的规则对象是否与解析后的 RuleItem 精确对应（出站、匹配键、值集合）"""
    if not isinstance(rule, dict):
        return False
    if "action" in rule and rule.get("action") != "route":
        return False
    if key not in rule:
        return False
    if normalize_proxy_value(str(rule.get("outbound", ""))) != normalize_proxy_value(proxy):
        return False
    return _value_set(rule_values(rule[key])) == _value_set(values)


def _value_set(values: List[str]) -> set:
    return {v.lower() if v.lower() in ("true", "false") else v for v in values}


# ============ 规则列表工具 ============


def find_insert_index(rules: List[Any]) -> int:
    """新规则的插入位置

    clash_mode=direct / global 锚点规则之后；两者都存在取靠后者；
    都不存在时列表非空插到开头，空列表追加。
    """
    def _index_of(mode: str) -> int:
        for i, rule in enumerate(rules):
            if isinstance(rule, dict) and rule.get("clash_mode") == mode:
                return i
        return -1

    direct_index = _index_of("direct")
    global_index = _index_of("global")
    if direct_index >= 0 or global_index >= 0:
        return max(direct_index, global_index) + 1
    return 0


def strip_rule_markers(rule: Dict[str, Any]) -> Dict[str, Any]:
    """去掉 shared / source 内部标记（返回新字典）"""
    return {k: v for k, v in rule.items() if k not in RULE_MARKER_KEYS}


def rule_signature(rule: Dict[str, Any]) -> str:
    """规则比较签名：忽略键顺序和内部标记"""
    return json.dumps(strip_rule_markers(rule), sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def rules_equal(a: Any, b: Any) -> bool:
    if not isinstance(a, dict) or not isinstance(b, dict):
        return False
    return rule_signature(a) == rule_signature(b)
