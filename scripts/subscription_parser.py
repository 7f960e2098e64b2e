#!/usr/bin/env python3
"""订阅内容解析

识别订阅原文的格式并转换为 sing-box outbound 节点列表：
- JSON：sing-box 完整配置（outbounds/endpoints）、SIP008、单节点对象或节点数组
- Clash YAML：proxies 列表（PyYAML 解析）
- 分享链接列表：整体 base64 或逐行的 vmess/vless/trojan/ss/hysteria2/tuic 链接，
  以及 json://base64 与内嵌 JSON 行

逐行解析时单行失败只计入 skipped，不影响其余节点；节点顺序保持原样，
重复 tag 不在这里去重（由配置生成阶段处理）。
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import yaml

from proxy_models import (
    Hysteria2Node,
    NodeError,
    OutboundNode,
    ShadowsocksNode,
    TlsOptions,
    TransportOptions,
    TrojanNode,
    TuicNode,
    VlessNode,
    VmessNode,
)
from proxy_uri_parser import SUPPORTED_SCHEMES, decode_base64_text, is_supported_uri, parse_proxy_uri

logger = logging.getLogger(__name__)

# 订阅内容类型提示
CONTENT_AUTO = "auto"
CONTENT_JSON = "json"
CONTENT_URI_LIST = "uri_list"
CONTENT_KINDS = (CONTENT_AUTO, CONTENT_JSON, CONTENT_URI_LIST)

# sing-box 配置中视为代理节点的 outbound/endpoint 类型
PROXY_OUTBOUND_TYPES = {
    "socks", "http", "shadowsocks", "vmess", "vless", "trojan",
    "anytls", "hysteria", "hysteria2", "tuic", "wireguard", "ssh",
}

# 同一行内以逗号分隔的多个链接：只在逗号后紧跟 scheme:// 时切分
_URI_SPLIT_RE = re.compile(r",\s*(?=[A-Za-z][A-Za-z0-9+.-]*://)")


@dataclass
class ParseResult:
    """解析结果：有序节点列表 + 被跳过的条目数"""
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    skipped: int = 0

    def merge(self, other: "ParseResult") -> None:
        self.nodes.extend(other.nodes)
        self.skipped += other.skipped

    def __bool__(self) -> bool:
        return bool(self.nodes)


def parse_subscription_content(content: Union[str, bytes], kind: str = CONTENT_AUTO) -> ParseResult:
    """解析订阅原文

    Args:
        content: 订阅原文（bytes 按 UTF-8 解码）
        kind: 内容类型提示，auto / json（手动填写的节点 JSON）/ uri_list

    Returns:
        ParseResult
    """
    text = _to_text(content).strip()
    if not text:
        return ParseResult()

    if kind != CONTENT_URI_LIST:
        nodes = parse_json_nodes(text)
        if nodes:
            return ParseResult(nodes=nodes)
        if kind == CONTENT_JSON and nodes is None:
            logger.warning("[parser] 手动节点内容不是合法 JSON，按分享链接列表解析")

        if "proxies" in text:
            clash = parse_clash_config(text)
            if clash is not None:
                if not clash:
                    logger.warning(f"[parser] Clash 配置中没有可用节点，跳过 {clash.skipped} 个")
                return clash

    return parse_uri_list(text)


def parse_json_nodes(text: str) -> Optional[List[Dict[str, Any]]]:
    """按 JSON 解析节点

    Returns:
        节点列表；内容不是 JSON 时返回 None
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None

    if isinstance(data, dict):
        if "outbounds" in data or "endpoints" in data:
            return parse_singbox_config(data)
        if "servers" in data:
            return parse_sip008_config(data)
        node = normalize_json_node(data)
        return [node] if node else []

    if isinstance(data, list):
        nodes = []
        for item in data:
            if isinstance(item, dict):
                node = normalize_json_node(item)
                if node:
                    nodes.append(node)
        return nodes

    return []


def parse_singbox_config(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    """从 sing-box 完整配置中提取代理类 outbound / endpoint"""
    nodes = []
    for section in ("outbounds", "endpoints"):
        items = config.get(section)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, dict) and _is_proxy_outbound(item):
                nodes.append(item)
    return nodes


def parse_sip008_config(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    """SIP008: {"version": 1, "servers": [{"server", "server_port", "method", "password", "remarks"}]}"""
    servers = config.get("servers")
    if not isinstance(servers, list):
        return []

    nodes = []
    for item in servers:
        if not isinstance(item, dict):
            continue
        server = str(item.get("server") or "").strip()
        port = _to_int(item.get("server_port"))
        if not server or port <= 0:
            continue
        tag = str(item.get("remarks") or item.get("name") or "").strip() or f"{server}:{port}"
        nodes.append({
            "type": "shadowsocks",
            "tag": tag,
            "server": server,
            "server_port": port,
            "method": item.get("method", ""),
            "password": item.get("password", ""),
        })
    return nodes


def normalize_json_node(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """规范化单个 JSON 节点（protocol→type，address/host→server，port→server_port，name→tag）

    Returns:
        规范化后的节点（保留其余字段），缺少 type/server/port 时返回 None
    """
    node = dict(obj)

    node_type = str(node.get("type") or node.get("protocol") or "").strip()
    server = str(node.get("server") or node.get("address") or node.get("host") or "").strip()
    port = _to_int(node.get("server_port"))
    if port <= 0:
        port = _to_int(node.get("port"))

    if not node_type or not server or port <= 0:
        return None

    tag = str(node.get("tag") or node.get("name") or "").strip() or f"{server}:{port}"
    node["type"] = node_type
    node["server"] = server
    node["server_port"] = port
    node["tag"] = tag
    return node


def parse_clash_config(text: str) -> Optional[ParseResult]:
    """解析 Clash YAML 的 proxies 列表

    Returns:
        ParseResult；不是 Clash 配置（YAML 无效或没有 proxies 列表）时返回 None
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        logger.error(f"[parser] YAML 解析失败: {e}")
        return None

    if not isinstance(data, dict) or not isinstance(data.get("proxies"), list):
        return None

    result = ParseResult()

    for proxy in data["proxies"]:
        if not isinstance(proxy, dict):
            result.skipped += 1
            continue
        try:
            node = clash_proxy_to_node(proxy)
            result.nodes.append(node.to_outbound())
        except NodeError as e:
            result.skipped += 1
            logger.debug(f"[parser] 跳过 Clash 节点 {proxy.get('name')!r}: {e}")

    return result


def clash_proxy_to_node(proxy: Dict[str, Any]) -> OutboundNode:
    """Clash proxies 条目 → OutboundNode

    Raises:
        NodeError: 类型不支持或必填字段缺失
    """
    ptype = _str(proxy.get("type")).lower()
    server = _str(proxy.get("server"))
    port = _to_int(proxy.get("port"))
    tag = _str(proxy.get("name")) or f"{ptype}-{server}:{port}"

    if ptype == "vmess":
        node: OutboundNode = VmessNode(
            uuid=_str(proxy.get("uuid")),
            alter_id=_to_int(proxy.get("alterId")),
            security=_str(proxy.get("cipher")) or "auto",
        )
    elif ptype == "vless":
        node = VlessNode(
            uuid=_str(proxy.get("uuid")),
            flow=_str(proxy.get("flow")),
            packet_encoding=_str(proxy.get("packet-encoding")),
        )
    elif ptype == "trojan":
        node = TrojanNode(password=_str(proxy.get("password")))
    elif ptype in ("ss", "shadowsocks"):
        node = ShadowsocksNode(method=_str(proxy.get("cipher")), password=_str(proxy.get("password")))
    elif ptype in ("hysteria2", "hy2"):
        node = Hysteria2Node(
            password=_str(proxy.get("password")) or _str(proxy.get("auth")),
            obfs_type=_str(proxy.get("obfs")),
            obfs_password=_str(proxy.get("obfs-password")),
        )
    elif ptype == "tuic":
        node = TuicNode(
            uuid=_str(proxy.get("uuid")),
            password=_str(proxy.get("password")),
            congestion_control=_str(proxy.get("congestion-controller")),
            udp_relay_mode=_str(proxy.get("udp-relay-mode")),
        )
    else:
        raise NodeError(f"不支持的 Clash 节点类型: {ptype or '(empty)'}")

    node.tag = tag
    node.server = server
    node.port = port

    if ptype in ("vmess", "vless", "trojan"):
        node.tls = _clash_tls(proxy, ptype)
        node.transport = _clash_transport(proxy)
    elif ptype in ("hysteria2", "hy2", "tuic"):
        node.tls = TlsOptions(
            enabled=True,
            server_name=_str(proxy.get("sni")),
            alpn=_str_list(proxy.get("alpn")),
            insecure=_to_bool(proxy.get("skip-cert-verify")),
        )
    return node


def parse_uri_list(text: str) -> ParseResult:
    """解析分享链接列表（整体 base64 时先解码）"""
    result = ParseResult()

    if "://" not in text and not text.lstrip().startswith(("{", "[")):
        decoded = decode_base64_text(text)
        if decoded:
            text = decoded

    for entry in split_content_entries(text):
        if entry.startswith(("{", "[")):
            nodes = parse_json_nodes(entry)
            if nodes:
                result.nodes.extend(nodes)
            else:
                result.skipped += 1
            continue

        for uri in _URI_SPLIT_RE.split(entry):
            uri = uri.strip()
            if not uri:
                continue
            result.merge(_parse_single_entry(uri))

    if result.skipped:
        logger.info(f"[parser] 解析到 {len(result.nodes)} 个节点，跳过 {result.skipped} 行")
    return result


def split_content_entries(text: str) -> List[str]:
    """按行切分内容，内嵌的 JSON 对象/数组（可跨行）作为一个整体"""
    entries = []
    idx = 0
    length = len(text)
    while idx < length:
        ch = text[idx]
        if ch in " \t\r\n":
            idx += 1
            continue
        if ch in "{[":
            end = _find_json_end(text, idx)
            if end > 0 and _is_json(text[idx:end]):
                entries.append(text[idx:end].strip())
                idx = end
                continue
        nl = text.find("\n", idx)
        if nl == -1:
            nl = length
        segment = text[idx:nl].strip()
        if segment:
            entries.append(segment)
        idx = nl + 1
    return entries


def extract_nodes_with_fallback(content: Union[str, bytes]) -> ParseResult:
    """尽力提取节点：直接解析 → 分段解析 → base64 解码后解析 → 去掉 scheme 前缀再解码"""
    text = _to_text(content).strip()

    def try_parse(body: str) -> ParseResult:
        parsed = parse_subscription_content(body)
        if parsed:
            return parsed
        merged = ParseResult(skipped=parsed.skipped)
        for part in split_content_entries(body):
            merged.merge(parse_subscription_content(part))
        return merged

    result = try_parse(text)
    if result:
        return result

    decoded = decode_base64_text(text)
    if decoded:
        result = try_parse(decoded)
        if result:
            return result

    stripped = text
    for scheme in SUPPORTED_SCHEMES + ("json",):
        stripped = stripped.replace(f"{scheme}://", "")
    decoded = decode_base64_text(stripped)
    if decoded:
        return try_parse(decoded)
    return result


# ============ Helper Functions ============


def _parse_single_entry(uri: str) -> ParseResult:
    if uri.startswith("json://"):
        decoded = decode_base64_text(uri[7:])
        nodes = parse_json_nodes(decoded) if decoded else None
        if nodes:
            return ParseResult(nodes=nodes)
        logger.debug(f"[parser] 跳过无法解码的 json:// 行: {uri[:40]}")
        return ParseResult(skipped=1)

    if not is_supported_uri(uri):
        logger.debug(f"[parser] 跳过不支持的行: {uri[:40]}")
        return ParseResult(skipped=1)

    try:
        return ParseResult(nodes=[parse_proxy_uri(uri).to_outbound()])
    except NodeError as e:
        logger.debug(f"[parser] 跳过无效链接 {uri[:40]}: {e}")
        return ParseResult(skipped=1)


def _find_json_end(text: str, start: int) -> int:
    """返回从 start 开始的括号平衡片段的结束位置（不含），字符串内的括号不计；括号不闭合时返回 -1"""
    open_ch = text[start]
    close_ch = "}" if open_ch == "{" else "]"
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def _is_json(fragment: str) -> bool:
    try:
        json.loads(fragment)
    except ValueError:
        return False
    return True


def _is_proxy_outbound(item: Dict[str, Any]) -> bool:
    node_type = _str(item.get("type")).lower()
    if node_type not in PROXY_OUTBOUND_TYPES:
        return False
    port = _to_int(item.get("server_port"))
    if port <= 0:
        port = _to_int(item.get("port"))
    return bool(_str(item.get("server"))) and port > 0


def _clash_tls(proxy: Dict[str, Any], ptype: str) -> TlsOptions:
    tls_enabled = _to_bool(proxy.get("tls"))
    server_name = _str(proxy.get("servername")) or _str(proxy.get("sni")) or _str(proxy.get("peer"))
    insecure = _to_bool(proxy.get("skip-cert-verify")) or _to_bool(proxy.get("allowInsecure"))
    reality_opts = proxy.get("reality-opts") if isinstance(proxy.get("reality-opts"), dict) else {}

    # trojan 默认走 TLS
    if not (tls_enabled or server_name or insecure or reality_opts or ptype == "trojan"):
        return TlsOptions()

    tls = TlsOptions(
        enabled=True,
        server_name=server_name or _str(proxy.get("server")),
        insecure=insecure,
        alpn=_str_list(proxy.get("alpn")),
        fingerprint=_str(proxy.get("client-fingerprint")),
    )
    if tls_enabled and ptype == "vmess" and not tls.fingerprint:
        tls.fingerprint = "chrome"
    if reality_opts:
        tls.reality_public_key = _str(reality_opts.get("public-key"))
        tls.reality_short_id = _str(reality_opts.get("short-id"))
    return tls


def _clash_transport(proxy: Dict[str, Any]) -> TransportOptions:
    network = _str(proxy.get("network")).lower()

    if network == "ws":
        opts = proxy.get("ws-opts") if isinstance(proxy.get("ws-opts"), dict) else {}
        headers = {}
        if isinstance(opts.get("headers"), dict):
            headers = {_str(k): _str(v) for k, v in opts["headers"].items() if _str(k) and _str(v)}
        return TransportOptions(
            network="ws",
            path=_str(opts.get("path")) or _str(proxy.get("path")),
            headers=headers,
        )

    if network == "grpc":
        opts = proxy.get("grpc-opts") if isinstance(proxy.get("grpc-opts"), dict) else {}
        service_name = (_str(opts.get("grpc-service-name"))
                        or _str(proxy.get("grpc-service-name"))
                        or _str(proxy.get("path")))
        return TransportOptions(network="grpc", service_name=service_name)

    if network in ("h2", "http"):
        key = "h2-opts" if network == "h2" else "http-opts"
        opts = proxy.get(key) if isinstance(proxy.get(key), dict) else {}
        path = opts.get("path")
        # http-opts 的 path 是列表
        if isinstance(path, list):
            path = path[0] if path else ""
        return TransportOptions(network="http", path=_str(path), host=_str_list(opts.get("host")))

    return TransportOptions()


def _to_text(content: Union[str, bytes]) -> str:
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    return content.lstrip("\ufeff")


def _str(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [_str(v) for v in value if _str(v)]
    text = _str(value)
    return [v.strip() for v in text.split(",") if v.strip()] if text else []


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return _str(value).lower() in ("true", "1")
