#!/usr/bin/env python3
"""根据订阅节点生成 sing-box 配置

- 没有基础配置时生成完整骨架（DNS、入站、出站组、路由、clash_api）
- 注入节点：同 tag 后写覆盖，刷新 auto/manual（及分流组）成员
- 用户设置覆盖：端口、TUN、DNS、广告拦截、分流组等
- 原始配置模式：订阅给出的完整 JSON 原样使用，只覆盖端口
- 共享规则注入：插入到 clash_mode 锚点规则之后

命令行：
    python scripts/config_synthesizer.py <subscription-file> -o out.json
"""
import argparse
import copy
import ipaddress
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from db_helper import ProxySettings
from rule_builder import find_insert_index, strip_rule_markers, rule_signature

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(os.environ.get("SING_BOX_CONFIG_DIR", "/etc/sing-box"))
CACHE_FILE_PATH = str(CONFIG_DIR / "cache.db")

# 出站标签（暴露在 Clash API，保持稳定）
TAG_AUTO = "auto"
TAG_MANUAL = "manual"
TAG_DIRECT = "direct"
TAG_BLOCK = "block"

# 业务分流组
TAG_TELEGRAM = "Telegram"
TAG_YOUTUBE = "YouTube"
TAG_NETFLIX = "Netflix"
TAG_OPENAI = "OpenAI"
APP_GROUP_TAGS = (TAG_TELEGRAM, TAG_YOUTUBE, TAG_NETFLIX, TAG_OPENAI)

RESERVED_TAGS = {TAG_AUTO, TAG_MANUAL, TAG_DIRECT, TAG_BLOCK, *APP_GROUP_TAGS}

# DNS 服务器标签
DNS_PROXY = "dns_proxy"
DNS_CN = "dns_cn"
DNS_RESOLVER = "dns_resolver"
DNS_BLOCK = "dns_block"

# 规则集标签
RS_GEOSITE_CN = "geosite-cn"
RS_GEOSITE_GEOLOCATION_NOT_CN = "geosite-geolocation-!cn"
RS_GEOSITE_PRIVATE = "geosite-private"
RS_GEOSITE_ADS = "geosite-category-ads-all"
RS_GEOSITE_TELEGRAM = "geosite-telegram"
RS_GEOSITE_YOUTUBE = "geosite-youtube"
RS_GEOSITE_NETFLIX = "geosite-netflix"
RS_GEOSITE_OPENAI = "geosite-openai"
RS_GEOIP_CN = "geoip-cn"

APP_GROUP_RULE_SETS = {
    TAG_TELEGRAM: RS_GEOSITE_TELEGRAM,
    TAG_YOUTUBE: RS_GEOSITE_YOUTUBE,
    TAG_NETFLIX: RS_GEOSITE_NETFLIX,
    TAG_OPENAI: RS_GEOSITE_OPENAI,
}

RULE_SET_BASE = "https://raw.githubusercontent.com"

PRIVATE_IP_CIDRS = [
    "10.0.0.0/8", "100.64.0.0/10", "127.0.0.0/8", "169.254.0.0/16",
    "172.16.0.0/12", "192.168.0.0/16", "::1/128", "fc00::/7", "fe80::/10",
]

TUN_ROUTE_EXCLUDES = [
    "127.0.0.0/8", "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "::1/128", "fc00::/7",
]

CLASH_MODES = ("rule", "global")


def rule_set_url(tag: str) -> str:
    """SagerNet 远程规则集下载地址"""
    if tag.startswith("geoip-"):
        return f"{RULE_SET_BASE}/SagerNet/sing-geoip/rule-set/{tag}.srs"
    return f"{RULE_SET_BASE}/SagerNet/sing-geosite/rule-set/{tag}.srs"


def _remote_rule_set(tag: str, download_detour: str, update_interval: str) -> Dict[str, Any]:
    return {
        "tag": tag,
        "type": "remote",
        "format": "binary",
        "url": rule_set_url(tag),
        "download_detour": download_detour,
        "update_interval": update_interval,
    }


# ============ 配置骨架 ============


def build_base_config(settings: ProxySettings) -> Dict[str, Any]:
    """生成不含节点的完整配置骨架"""
    return {
        "log": {"disabled": False, "level": "info", "timestamp": True},
        "dns": build_dns_config(settings),
        "inbounds": build_inbounds(settings),
        "outbounds": build_outbounds(settings),
        "route": build_route_config(settings),
        "experimental": build_experimental(settings),
    }


def build_dns_config(settings: ProxySettings) -> Dict[str, Any]:
    strategy = settings.dns_strategy
    servers = [
        {
            "tag": DNS_PROXY,
            "address": settings.dns_proxy,
            "address_resolver": DNS_RESOLVER,
            "strategy": strategy,
            "detour": settings.normalized_default_outbound,
        },
        {
            "tag": DNS_CN,
            "address": settings.dns_cn,
            "address_resolver": DNS_RESOLVER,
            "strategy": strategy,
            "detour": TAG_DIRECT,
        },
        {"tag": DNS_RESOLVER, "address": settings.dns_resolver, "strategy": strategy, "detour": TAG_DIRECT},
        {"tag": DNS_BLOCK, "address": "rcode://success"},
    ]

    rules: List[Dict[str, Any]] = [
        {"clash_mode": "direct", "server": DNS_CN},
        {"clash_mode": "global", "server": DNS_PROXY},
    ]
    if settings.block_ads:
        rules.append({"rule_set": RS_GEOSITE_ADS, "server": DNS_BLOCK})
    rules.append({"rule_set": [RS_GEOSITE_CN, RS_GEOIP_CN], "server": DNS_CN})
    rules.append({"rule_set": RS_GEOSITE_GEOLOCATION_NOT_CN, "server": DNS_PROXY})

    return {
        "servers": servers,
        "rules": rules,
        "independent_cache": True,
        "final": DNS_PROXY,
    }


def build_inbounds(settings: ProxySettings) -> List[Dict[str, Any]]:
    mixed: Dict[str, Any] = {
        "type": "mixed",
        "tag": "mixed-in",
        "listen": "127.0.0.1",
        "listen_port": settings.mixed_port,
        "sniff": True,
    }
    if settings.system_proxy_enabled:
        mixed["set_system_proxy"] = True
    inbounds = [mixed]

    if settings.tun_enabled:
        addresses = []
        if settings.tun_ipv4:
            addresses.append(settings.tun_ipv4)
        if settings.tun_enable_ipv6 and settings.tun_ipv6:
            addresses.append(settings.tun_ipv6)
        inbounds.append({
            "type": "tun",
            "tag": "tun-in",
            "address": addresses,
            "auto_route": settings.tun_auto_route,
            "strict_route": settings.tun_strict_route,
            "stack": settings.tun_stack,
            "mtu": settings.tun_mtu,
            "sniff": True,
            "sniff_override_destination": True,
            "route_exclude_address": list(TUN_ROUTE_EXCLUDES),
        })
    return inbounds


def _urltest_outbound(settings: ProxySettings, members: List[str]) -> Dict[str, Any]:
    return {
        "type": "urltest",
        "tag": TAG_AUTO,
        "outbounds": members or [TAG_DIRECT],
        "url": settings.urltest_url,
        "interrupt_exist_connections": True,
        "idle_timeout": "10m",
        "interval": "10m",
        "tolerance": 50,
    }


def build_outbounds(settings: ProxySettings) -> List[Dict[str, Any]]:
    outbounds = [
        _urltest_outbound(settings, []),
        {"type": "selector", "tag": TAG_MANUAL, "outbounds": [TAG_AUTO]},
    ]
    if settings.enable_app_groups:
        for tag in APP_GROUP_TAGS:
            outbounds.append({"type": "selector", "tag": tag, "outbounds": [TAG_MANUAL, TAG_AUTO]})
    outbounds.append({"type": "direct", "tag": TAG_DIRECT})
    outbounds.append({"type": "block", "tag": TAG_BLOCK})
    return outbounds


def build_route_config(settings: ProxySettings) -> Dict[str, Any]:
    default_outbound = settings.normalized_default_outbound
    rules: List[Dict[str, Any]] = [{"action": "sniff"}]
    if settings.dns_hijack:
        rules.append({"protocol": "dns", "action": "hijack-dns"})
    rules.append({"clash_mode": "global", "outbound": default_outbound})
    rules.append({"clash_mode": "direct", "outbound": TAG_DIRECT})
    if settings.block_ads:
        rules.append({"rule_set": RS_GEOSITE_ADS, "action": "reject"})
    if settings.enable_app_groups:
        for group_tag, rs_tag in APP_GROUP_RULE_SETS.items():
            rules.append({"rule_set": rs_tag, "outbound": group_tag})
    rules.append({"rule_set": RS_GEOSITE_PRIVATE, "outbound": TAG_DIRECT})
    rules.append({"ip_cidr": list(PRIVATE_IP_CIDRS), "outbound": TAG_DIRECT})
    rules.append({"rule_set": [RS_GEOSITE_CN, RS_GEOIP_CN], "outbound": TAG_DIRECT})
    rules.append({"rule_set": RS_GEOSITE_GEOLOCATION_NOT_CN, "outbound": default_outbound})

    return {
        "rules": rules,
        "rule_set": build_rule_sets(settings),
        "final": default_outbound,
        "auto_detect_interface": True,
        "default_domain_resolver": DNS_RESOLVER,
    }


def build_rule_sets(settings: ProxySettings) -> List[Dict[str, Any]]:
    detour = settings.normalized_download_detour
    rule_sets = []
    if settings.block_ads:
        rule_sets.append(_remote_rule_set(RS_GEOSITE_ADS, detour, "1d"))
    rule_sets.append(_remote_rule_set(RS_GEOSITE_CN, detour, "1d"))
    rule_sets.append(_remote_rule_set(RS_GEOSITE_GEOLOCATION_NOT_CN, detour, "1d"))
    if settings.enable_app_groups:
        for rs_tag in APP_GROUP_RULE_SETS.values():
            rule_sets.append(_remote_rule_set(rs_tag, detour, "7d"))
    rule_sets.append(_remote_rule_set(RS_GEOSITE_PRIVATE, detour, "7d"))
    rule_sets.append(_remote_rule_set(RS_GEOIP_CN, detour, "1d"))
    return rule_sets


def build_experimental(settings: ProxySettings) -> Dict[str, Any]:
    return {
        "clash_api": {
            "external_controller": f"127.0.0.1:{settings.api_port}",
            "external_ui": "metacubexd",
            "external_ui_download_url":
                "https://github.com/MetaCubeX/metacubexd/archive/refs/heads/gh-pages.zip",
            "external_ui_download_detour": settings.normalized_download_detour,
            "default_mode": "rule",
        },
        "cache_file": {"enabled": True, "path": CACHE_FILE_PATH},
    }


# ============ 节点注入 ============


def _is_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def _should_include_in_groups(node: Dict[str, Any]) -> bool:
    server = str(node.get("server") or "").strip()
    return bool(server) and server != "0.0.0.0"


def inject_nodes(
    config: Dict[str, Any],
    nodes: List[Dict[str, Any]],
    settings: ProxySettings,
    replace_existing: bool = False,
) -> List[str]:
    """把节点写入 config["outbounds"] 并刷新出站组

    同 tag 节点后写覆盖（原位置替换）；与内置出站/分流组同名的节点被跳过。

    Args:
        config: sing-box 配置（原地修改）
        nodes: outbound 节点列表
        settings: 用户设置（urltest 地址、DNS 策略）
        replace_existing: 先移除配置中已有的代理节点

    Returns:
        加入 auto/manual 组的节点 tag 列表
    """
    outbounds = config.get("outbounds")
    if not isinstance(outbounds, list):
        outbounds = []
    if replace_existing:
        outbounds = [ob for ob in outbounds
                     if not (isinstance(ob, dict) and ob.get("server") and ob.get("tag") not in RESERVED_TAGS)]

    positions = {ob.get("tag"): i for i, ob in enumerate(outbounds) if isinstance(ob, dict) and ob.get("tag")}
    injected: List[str] = []
    overwritten = 0

    for index, raw in enumerate(nodes):
        if not isinstance(raw, dict):
            logger.warning(f"[synth] Skip node: not an object, index={index}")
            continue
        tag = str(raw.get("tag") or "").strip()
        if not tag:
            logger.warning(f"[synth] Skip node: missing tag, index={index}")
            continue
        if not str(raw.get("type") or "").strip():
            logger.warning(f"[synth] Skip node: missing type, tag={tag}, index={index}")
            continue
        if tag in RESERVED_TAGS:
            logger.warning(f"[synth] Skip node: tag conflicts with built-in outbound, tag={tag}")
            continue

        node = copy.deepcopy(raw)
        node["tag"] = tag
        server = str(node.get("server") or "").strip()
        if server and server != "0.0.0.0" and not _is_ip_address(server) and "domain_resolver" not in node:
            node["domain_resolver"] = {"server": DNS_RESOLVER, "strategy": settings.dns_strategy}

        if tag in positions:
            outbounds[positions[tag]] = node
            overwritten += 1
        else:
            positions[tag] = len(outbounds)
            outbounds.append(node)

        if _should_include_in_groups(node):
            if tag not in injected:
                injected.append(tag)
        elif tag in injected:
            injected.remove(tag)

    update_group_outbounds(outbounds, injected, settings)
    config["outbounds"] = outbounds

    logger.info(f"[synth] 注入 {len(injected)} 个节点（覆盖 {overwritten} 个同名出站）")
    return injected


def _ensure_outbound(outbounds: List[Any], tag: str, position: Optional[int] = None) -> int:
    for i, ob in enumerate(outbounds):
        if isinstance(ob, dict) and ob.get("tag") == tag:
            return i
    created = {"tag": tag}
    if position is None or position > len(outbounds):
        outbounds.append(created)
        return len(outbounds) - 1
    outbounds.insert(position, created)
    return position


def update_group_outbounds(outbounds: List[Any], node_tags: List[str], settings: ProxySettings) -> None:
    """刷新 auto (urltest) / manual (selector) 及已存在的分流组成员"""
    auto_idx = _ensure_outbound(outbounds, TAG_AUTO, 0)
    auto_outbound = outbounds[auto_idx]
    auto_outbound.update(_urltest_outbound(settings, list(node_tags)))

    manual_idx = _ensure_outbound(outbounds, TAG_MANUAL, auto_idx + 1)
    manual_outbound = outbounds[manual_idx]
    manual_outbound["type"] = "selector"
    manual_outbound["outbounds"] = [TAG_AUTO] + list(node_tags)

    for ob in outbounds:
        if isinstance(ob, dict) and ob.get("tag") in APP_GROUP_TAGS:
            ob["outbounds"] = [TAG_MANUAL, TAG_AUTO] + list(node_tags)


# ============ 设置覆盖 ============


def apply_port_settings(config: Dict[str, Any], settings: ProxySettings) -> None:
    """只覆盖端口：clash_api 监听端口与 mixed 入站端口"""
    experimental = config.get("experimental")
    if isinstance(experimental, dict):
        clash_api = experimental.get("clash_api")
        if isinstance(clash_api, dict) and "external_controller" in clash_api:
            clash_api["external_controller"] = f"127.0.0.1:{settings.api_port}"

    inbounds = config.get("inbounds")
    if isinstance(inbounds, list):
        for inbound in inbounds:
            if not isinstance(inbound, dict):
                continue
            if (inbound.get("type") == "mixed" or inbound.get("tag") == "mixed-in") and "listen_port" in inbound:
                inbound["listen_port"] = settings.mixed_port


def _normalize_cache_file(experimental: Dict[str, Any]) -> None:
    cache_file = experimental.get("cache_file")
    if not isinstance(cache_file, dict):
        cache_file = {}
    cache_file["enabled"] = cache_file.get("enabled", True)
    if not str(cache_file.get("path") or "").strip():
        cache_file["path"] = CACHE_FILE_PATH
    experimental["cache_file"] = cache_file


def apply_settings(config: Dict[str, Any], settings: ProxySettings) -> None:
    """按用户设置覆盖入站、clash_api、DNS、出站组与路由"""
    default_outbound = settings.normalized_default_outbound
    detour = settings.normalized_download_detour

    config["inbounds"] = build_inbounds(settings)

    experimental = config.get("experimental") if isinstance(config.get("experimental"), dict) else {}
    clash_api = experimental.get("clash_api") if isinstance(experimental.get("clash_api"), dict) else {}
    clash_api["external_controller"] = f"127.0.0.1:{settings.api_port}"
    clash_api["external_ui_download_detour"] = detour
    experimental["clash_api"] = clash_api
    _normalize_cache_file(experimental)
    config["experimental"] = experimental

    dns = config.get("dns") if isinstance(config.get("dns"), dict) else {}
    dns["strategy"] = settings.dns_strategy
    if isinstance(dns.get("servers"), list):
        for server in dns["servers"]:
            if not isinstance(server, dict):
                continue
            if server.get("tag") == DNS_PROXY:
                server["address"] = settings.dns_proxy
                server["detour"] = default_outbound
            elif server.get("tag") == DNS_CN:
                server["address"] = settings.dns_cn
            elif server.get("tag") == DNS_RESOLVER:
                server["address"] = settings.dns_resolver
    if isinstance(dns.get("rules"), list):
        dns_rules = [r for r in dns["rules"] if not (isinstance(r, dict) and r.get("rule_set") == RS_GEOSITE_ADS)]
        if settings.block_ads:
            dns_rules.insert(0, {"rule_set": RS_GEOSITE_ADS, "server": DNS_BLOCK})
        dns["rules"] = dns_rules
    config["dns"] = dns

    if isinstance(config.get("outbounds"), list):
        outbounds = config["outbounds"]
        for ob in outbounds:
            if isinstance(ob, dict) and ob.get("tag") == TAG_AUTO:
                ob["interrupt_exist_connections"] = True
                ob["idle_timeout"] = "10m"
                ob["url"] = settings.urltest_url
        if not settings.enable_app_groups:
            outbounds[:] = [ob for ob in outbounds
                            if not (isinstance(ob, dict) and ob.get("tag") in APP_GROUP_TAGS)]

    route = config.get("route")
    if isinstance(route, dict):
        _apply_route_settings(route, settings)


def _rule_set_tags(value: Any) -> Set[str]:
    """rule_set / tag 字段可能是字符串或字符串列表"""
    if isinstance(value, str):
        return {value}
    if isinstance(value, list):
        return {v for v in value if isinstance(v, str)}
    return set()


def _apply_route_settings(route: Dict[str, Any], settings: ProxySettings) -> None:
    default_outbound = settings.normalized_default_outbound
    route["final"] = default_outbound
    route["default_domain_resolver"] = DNS_RESOLVER

    app_rule_sets = set(APP_GROUP_RULE_SETS.values())

    if isinstance(route.get("rule_set"), list):
        rule_sets = route["rule_set"]
        for rs in rule_sets:
            if isinstance(rs, dict) and rs.get("type") == "remote":
                rs["download_detour"] = settings.normalized_download_detour
        if not settings.block_ads:
            rule_sets = [rs for rs in rule_sets if not (isinstance(rs, dict) and rs.get("tag") == RS_GEOSITE_ADS)]
        if not settings.enable_app_groups:
            rule_sets = [rs for rs in rule_sets if not (isinstance(rs, dict) and _rule_set_tags(rs.get("tag")) & app_rule_sets)]
        route["rule_set"] = rule_sets

    if not isinstance(route.get("rules"), list):
        return

    rules = route["rules"]
    for rule in rules:
        if not isinstance(rule, dict):
            continue
        if rule.get("clash_mode") == "global":
            rule["outbound"] = default_outbound
        if rule.get("rule_set") == RS_GEOSITE_GEOLOCATION_NOT_CN:
            rule["outbound"] = default_outbound

    hijack_index = next((i for i, r in enumerate(rules) if isinstance(r, dict)
                         and r.get("protocol") == "dns" and r.get("action") == "hijack-dns"), -1)
    if settings.dns_hijack and hijack_index < 0:
        rules.insert(min(1, len(rules)), {"protocol": "dns", "action": "hijack-dns"})
    elif not settings.dns_hijack and hijack_index >= 0:
        rules.pop(hijack_index)

    ads_index = next((i for i, r in enumerate(rules) if isinstance(r, dict)
                      and r.get("rule_set") == RS_GEOSITE_ADS and "action" in r), -1)
    if settings.block_ads and ads_index < 0:
        rules.append({"rule_set": RS_GEOSITE_ADS, "action": "reject"})
    elif not settings.block_ads and ads_index >= 0:
        rules.pop(ads_index)

    if not settings.enable_app_groups:
        rules[:] = [r for r in rules if not (isinstance(r, dict) and _rule_set_tags(r.get("rule_set")) & app_rule_sets)]


# ============ Clash 模式 / 共享规则 ============


def read_clash_default_mode(config: Optional[Dict[str, Any]]) -> str:
    """读取 clash_api.default_mode，非 global 一律视为 rule"""
    if not config:
        return "rule"
    experimental = config.get("experimental") if isinstance(config.get("experimental"), dict) else {}
    clash_api = experimental.get("clash_api") if isinstance(experimental.get("clash_api"), dict) else {}
    mode = str(clash_api.get("default_mode") or "").strip().lower()
    return "global" if mode == "global" else "rule"


def update_clash_default_mode(config: Dict[str, Any], mode: str) -> Tuple[bool, str]:
    """设置 clash_api.default_mode（rule / global）

    Returns:
        (是否成功, 错误信息)
    """
    normalized = (mode or "").strip().lower()
    if normalized not in CLASH_MODES:
        return False, f"Invalid proxy mode: {mode}"

    experimental = config.get("experimental") if isinstance(config.get("experimental"), dict) else {}
    clash_api = experimental.get("clash_api") if isinstance(experimental.get("clash_api"), dict) else {}
    clash_api["default_mode"] = normalized
    clash_api.setdefault("external_ui", "metacubexd")
    experimental["clash_api"] = clash_api
    _normalize_cache_file(experimental)
    config["experimental"] = experimental
    return True, ""


def apply_shared_rules(
    config: Dict[str, Any],
    shared_rules: List[Dict[str, Any]],
    enabled: bool = True,
    stale_rules: Optional[List[Dict[str, Any]]] = None,
) -> int:
    """把共享规则注入 route.rules 的锚点位置

    先移除与共享规则（及 stale_rules，即之前可能注入过的规则）相同的旧副本，
    再（enabled 时）按顺序去重插入。

    Returns:
        插入的规则数
    """
    route = config.get("route")
    if not isinstance(route, dict):
        return 0

    rules = route.get("rules") if isinstance(route.get("rules"), list) else []
    shared = [strip_rule_markers(r) for r in shared_rules if isinstance(r, dict)]
    signatures = {rule_signature(r) for r in shared}
    signatures.update(rule_signature(r) for r in stale_rules or [] if isinstance(r, dict))

    if signatures:
        rules = [r for r in rules if not (isinstance(r, dict) and rule_signature(r) in signatures)]

    inserted = 0
    if enabled and shared:
        insert_index = find_insert_index(rules)
        seen = set()
        for rule in shared:
            sig = rule_signature(rule)
            if sig in seen:
                continue
            seen.add(sig)
            rules.insert(insert_index, rule)
            insert_index += 1
            inserted += 1

    route["rules"] = rules
    if inserted:
        logger.info(f"[synth] 注入 {inserted} 条共享规则")
    return inserted


# ============ 入口 ============


def synthesize_config(
    nodes: List[Dict[str, Any]],
    settings: ProxySettings,
    base_config: Any = None,
) -> Tuple[Optional[Dict[str, Any]], str]:
    """基础配置 + 节点 + 设置覆盖 → 完整配置

    Args:
        nodes: outbound 节点列表（可为空）
        settings: 用户设置
        base_config: 基础配置，None 时生成骨架

    Returns:
        (配置, 错误信息)；基础配置不是 JSON 对象时返回 (None, 错误信息)
    """
    if base_config is None:
        config = build_base_config(settings)
    elif isinstance(base_config, dict):
        config = copy.deepcopy(base_config)
    else:
        return None, "Base config must be a JSON object."

    inject_nodes(config, nodes, settings)
    apply_settings(config, settings)
    if not nodes:
        logger.warning("[synth] 节点列表为空，生成的配置不含代理出站")
    return config, ""


def passthrough_config(raw: Any, settings: ProxySettings) -> Tuple[Optional[Dict[str, Any]], str]:
    """原始配置模式：JSON 原样保留，只覆盖端口

    Args:
        raw: 配置文本或已解析的对象
        settings: 用户设置

    Returns:
        (配置, 错误信息)
    """
    config = raw
    if isinstance(raw, (str, bytes)):
        try:
            config = json.loads(raw)
        except (json.JSONDecodeError, ValueError) as e:
            return None, f"Original config is not valid JSON: {e}"
    if not isinstance(config, dict):
        return None, "Original config must be a JSON object."

    config = copy.deepcopy(config)
    apply_port_settings(config, settings)
    return config, ""


def main() -> None:
    from config_repository import write_json_atomic
    from log_config import setup_logging
    from subscription_parser import CONTENT_KINDS, parse_subscription_content

    parser = argparse.ArgumentParser(description="根据订阅内容生成 sing-box 配置")
    parser.add_argument("subscription", help="订阅内容文件（分享链接 / Clash YAML / JSON）")
    parser.add_argument("-o", "--output", required=True, help="输出配置文件路径")
    parser.add_argument("--base", help="基础配置文件（默认生成骨架）")
    parser.add_argument("--kind", choices=CONTENT_KINDS, default="auto", help="订阅内容类型")
    parser.add_argument("--original", action="store_true", help="原始配置模式：只覆盖端口")
    parser.add_argument("--mixed-port", type=int, help="覆盖 mixed 入站端口")
    parser.add_argument("--api-port", type=int, help="覆盖 clash_api 端口")
    args = parser.parse_args()

    setup_logging()

    settings = ProxySettings()
    if args.mixed_port:
        settings.mixed_port = args.mixed_port
    if args.api_port:
        settings.api_port = args.api_port

    content = Path(args.subscription).read_text(encoding="utf-8")

    if args.original:
        config, error = passthrough_config(content, settings)
    else:
        base = None
        if args.base:
            base = json.loads(Path(args.base).read_text(encoding="utf-8"))
        result = parse_subscription_content(content, args.kind)
        print(f"[synth] 解析到 {len(result.nodes)} 个节点，跳过 {result.skipped} 行")
        config, error = synthesize_config(result.nodes, settings, base)

    if config is None:
        print(f"[synth] 生成失败: {error}", file=sys.stderr)
        sys.exit(1)

    write_json_atomic(Path(args.output), config)
    print(f"[synth] 已写入 {args.output}")


if __name__ == "__main__":
    main()
