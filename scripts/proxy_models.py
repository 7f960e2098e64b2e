#!/usr/bin/env python3
"""出站节点数据模型

每种协议一个 dataclass，统一由 to_outbound() 编码为 sing-box outbound 片段。
传输层为 tcp 时不输出 transport 字段（sing-box 不接受字面量 "tcp" 传输）。
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional

NODE_TYPES = ("vmess", "vless", "shadowsocks", "trojan", "tuic", "hysteria2")
TRANSPORT_TYPES = ("tcp", "ws", "grpc", "http")


class NodeError(ValueError):
    """节点字段缺失或非法"""


@dataclass
class TransportOptions:
    """传输层配置（tcp / ws / grpc / http）"""
    network: str = "tcp"
    path: str = ""
    host: List[str] = field(default_factory=list)
    service_name: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Optional[Dict[str, Any]]:
        network = self.network if self.network in TRANSPORT_TYPES else "tcp"
        if network == "tcp":
            return None

        transport: Dict[str, Any] = {"type": network}
        if network == "ws":
            if self.path:
                transport["path"] = self.path
            headers = dict(self.headers)
            if self.host and "Host" not in headers:
                headers["Host"] = self.host[0]
            if headers:
                transport["headers"] = headers
        elif network == "grpc":
            if self.service_name:
                transport["service_name"] = self.service_name
        elif network == "http":
            if self.path:
                transport["path"] = self.path
            if self.host:
                transport["host"] = list(self.host)
        return transport


@dataclass
class TlsOptions:
    """TLS / REALITY / uTLS 配置"""
    enabled: bool = False
    server_name: str = ""
    alpn: List[str] = field(default_factory=list)
    insecure: bool = False
    fingerprint: str = ""
    reality_public_key: str = ""
    reality_short_id: str = ""

    @property
    def reality_enabled(self) -> bool:
        return bool(self.reality_public_key)

    def to_dict(self) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None

        tls: Dict[str, Any] = {"enabled": True}
        if self.server_name:
            tls["server_name"] = self.server_name
        if self.insecure:
            tls["insecure"] = True
        if self.alpn:
            tls["alpn"] = list(self.alpn)
        if self.fingerprint:
            tls["utls"] = {"enabled": True, "fingerprint": self.fingerprint}
        if self.reality_enabled:
            reality = {"enabled": True, "public_key": self.reality_public_key}
            if self.reality_short_id:
                reality["short_id"] = self.reality_short_id
            tls["reality"] = reality
        return tls


@dataclass
class OutboundNode:
    """出站节点公共字段

    子类通过 _auth_fields() 提供各协议的认证字段；extra 中的键原样并入输出
    （如 domain_resolver、plugin 等不参与建模的可选项）。
    """
    tag: str = ""
    server: str = ""
    port: int = 0
    transport: TransportOptions = field(default_factory=TransportOptions)
    tls: TlsOptions = field(default_factory=TlsOptions)
    extra: Dict[str, Any] = field(default_factory=dict)

    type: ClassVar[str] = ""

    def validate(self) -> None:
        if not self.tag.strip():
            raise NodeError(f"{self.type} 节点缺少 tag")
        if not self.server.strip():
            raise NodeError(f"{self.type} 节点缺少服务器地址")
        if not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise NodeError(f"{self.type} 节点端口非法: {self.port}")

    def _auth_fields(self) -> Dict[str, Any]:
        return {}

    def to_outbound(self) -> Dict[str, Any]:
        self.validate()
        outbound: Dict[str, Any] = {
            "type": self.type,
            "tag": self.tag,
            "server": self.server,
            "server_port": self.port,
        }
        outbound.update(self._auth_fields())

        tls = self.tls.to_dict()
        if tls:
            outbound["tls"] = tls
        transport = self.transport.to_dict()
        if transport:
            outbound["transport"] = transport

        for key, value in self.extra.items():
            outbound.setdefault(key, value)
        return outbound


@dataclass
class VmessNode(OutboundNode):
    uuid: str = ""
    alter_id: int = 0
    security: str = "auto"

    type: ClassVar[str] = "vmess"

    def validate(self) -> None:
        super().validate()
        if not self.uuid:
            raise NodeError("VMess 节点缺少 UUID")

    def _auth_fields(self) -> Dict[str, Any]:
        return {"uuid": self.uuid, "security": self.security or "auto", "alter_id": self.alter_id}


@dataclass
class VlessNode(OutboundNode):
    uuid: str = ""
    flow: str = ""
    packet_encoding: str = ""

    type: ClassVar[str] = "vless"

    def validate(self) -> None:
        super().validate()
        if not self.uuid:
            raise NodeError("VLESS 节点缺少 UUID")

    def _auth_fields(self) -> Dict[str, Any]:
        fields = {"uuid": self.uuid}
        if self.flow:
            fields["flow"] = self.flow
        if self.packet_encoding:
            fields["packet_encoding"] = self.packet_encoding
        return fields


@dataclass
class TrojanNode(OutboundNode):
    password: str = ""

    type: ClassVar[str] = "trojan"

    def validate(self) -> None:
        super().validate()
        if not self.password:
            raise NodeError("Trojan 节点缺少密码")

    def _auth_fields(self) -> Dict[str, Any]:
        return {"password": self.password}


@dataclass
class ShadowsocksNode(OutboundNode):
    method: str = ""
    password: str = ""

    type: ClassVar[str] = "shadowsocks"

    def validate(self) -> None:
        super().validate()
        if not self.method:
            raise NodeError("Shadowsocks 节点缺少加密方式")

    def _auth_fields(self) -> Dict[str, Any]:
        return {"method": self.method, "password": self.password}


@dataclass
class Hysteria2Node(OutboundNode):
    password: str = ""
    obfs_type: str = ""
    obfs_password: str = ""

    type: ClassVar[str] = "hysteria2"

    def _auth_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"password": self.password}
        if self.obfs_type:
            fields["obfs"] = {"type": self.obfs_type, "password": self.obfs_password}
        return fields


@dataclass
class TuicNode(OutboundNode):
    uuid: str = ""
    password: str = ""
    congestion_control: str = ""
    udp_relay_mode: str = ""

    type: ClassVar[str] = "tuic"

    def validate(self) -> None:
        super().validate()
        if not self.uuid:
            raise NodeError("TUIC 节点缺少 UUID")

    def _auth_fields(self) -> Dict[str, Any]:
        fields = {"uuid": self.uuid, "password": self.password}
        if self.congestion_control:
            fields["congestion_control"] = self.congestion_control
        if self.udp_relay_mode:
            fields["udp_relay_mode"] = self.udp_relay_mode
        return fields


NODE_CLASSES = {cls.type: cls for cls in (
    VmessNode, VlessNode, TrojanNode, ShadowsocksNode, Hysteria2Node, TuicNode
)}
