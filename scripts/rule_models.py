#!/usr/bin/env python3
"""
路由规则与外部输入的数据模型

RuleGroup / CustomRule 由规则存储（rule_store）持有；
Node / Filter / CountryGroup 由外部订阅管理提供，这里只读；
OutboundTarget 是出站命名空间（outbound_resolver）的元素。
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

# 三个内置出站：始终存在，不可移除
OUTBOUND_PROXY = "Proxy"
OUTBOUND_DIRECT = "DIRECT"
OUTBOUND_REJECT = "REJECT"
BUILTIN_OUTBOUNDS = (OUTBOUND_PROXY, OUTBOUND_DIRECT, OUTBOUND_REJECT)

# 自定义规则类型（封闭枚举，顺序即前端展示顺序）
RULE_TYPES = (
    "domain_suffix",
    "domain_keyword",
    "domain",
    "ip_cidr",
    "geosite",
    "geoip",
    "port",
)
VALID_RULE_TYPES = frozenset(RULE_TYPES)

DEFAULT_RULE_PRIORITY = 100


class OutboundKind(Enum):
    BUILTIN = "builtin"
    COUNTRY = "country"
    FILTER = "filter"


class ProcessState(Enum):
    """Lifecycle state of the controlled sing-box process"""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


# 没有生命周期操作在执行时才可能出现的状态
STABLE_STATES = frozenset({ProcessState.STOPPED, ProcessState.RUNNING, ProcessState.CRASHED})


@dataclass
class RuleGroup:
    """预置规则组：只能启用/停用或改出站，不可删除"""
    id: str
    name: str
    site_rules: List[str]
    outbound: str
    enabled: bool = True
    ip_rules: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def copy(self) -> "RuleGroup":
        return RuleGroup(
            id=self.id,
            name=self.name,
            site_rules=list(self.site_rules),
            outbound=self.outbound,
            enabled=self.enabled,
            ip_rules=list(self.ip_rules),
        )


@dataclass
class CustomRule:
    """用户自定义规则，priority 越小越先匹配；seq 为创建序号，用于同优先级排序"""
    id: str
    name: str
    rule_type: str
    values: List[str]
    outbound: str
    enabled: bool = True
    priority: int = DEFAULT_RULE_PRIORITY
    seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def copy(self) -> "CustomRule":
        return CustomRule(
            id=self.id,
            name=self.name,
            rule_type=self.rule_type,
            values=list(self.values),
            outbound=self.outbound,
            enabled=self.enabled,
            priority=self.priority,
            seq=self.seq,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomRule":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            rule_type=str(data.get("rule_type", "")),
            values=[str(v) for v in data.get("values", [])],
            outbound=str(data.get("outbound", OUTBOUND_PROXY)),
            enabled=bool(data.get("enabled", True)),
            priority=int(data.get("priority", DEFAULT_RULE_PRIORITY)),
            seq=int(data.get("seq", 0)),
        )


@dataclass
class Node:
    """订阅节点（外部持有）。extra 中的字段原样并入 sing-box outbound"""
    tag: str
    type: str
    server: str
    server_port: int
    country: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        known = {"tag", "type", "server", "server_port", "country", "extra"}
        extra = dict(data.get("extra") or {})
        extra.update({k: v for k, v in data.items() if k not in known})
        return cls(
            tag=str(data["tag"]),
            type=str(data["type"]),
            server=str(data.get("server", "")),
            server_port=int(data.get("server_port", 0)),
            country=str(data.get("country") or "").upper(),
            extra=extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Filter:
    """节点过滤器（外部持有）。核心逻辑只读取 name 与 enabled，其余字段仅用于生成配置"""
    id: str
    name: str
    enabled: bool = True
    mode: str = "urltest"
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    include_countries: List[str] = field(default_factory=list)
    exclude_countries: List[str] = field(default_factory=list)
    urltest: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Filter":
        return cls(
            id=str(data.get("id") or data["name"]),
            name=str(data["name"]),
            enabled=bool(data.get("enabled", True)),
            mode=str(data.get("mode") or "urltest"),
            include=list(data.get("include") or []),
            exclude=list(data.get("exclude") or []),
            include_countries=list(data.get("include_countries") or []),
            exclude_countries=list(data.get("exclude_countries") or []),
            urltest=data.get("urltest") or data.get("urltest_config"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CountryGroup:
    code: str
    emoji: str
    name: str
    node_count: int

    @property
    def label(self) -> str:
        return f"{self.emoji} {self.name}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["label"] = self.label
        return data


@dataclass(frozen=True)
class OutboundTarget:
    label: str
    kind: OutboundKind
    node_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.label, "kind": self.kind.value, "node_count": self.node_count}
