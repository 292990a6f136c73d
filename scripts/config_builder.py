#!/usr/bin/env python3
"""根据生效规则、节点目录与设置渲染 sing-box 配置

route.rules 与 RuleStore.effective_rules() 一一对应、顺序一致（sing-box 自上而下匹配，命中即停）：
- 规则组 -> {"rule_set": [geosite-*, geoip-*], "outbound": <规则组出站>}
- 自定义规则 -> {<rule_type>: values, "outbound": ...}；geosite/geoip 类型转为 rule_set 引用

生成前会用当前出站命名空间重新校验所有出站引用，存在悬空引用或出站标签冲突时拒绝生成。
Final 选择器的成员即完整的出站命名空间，因此任何合法的 final_outbound 都是它的成员。
"""

from typing import Any, Dict, List, Sequence

from log_config import get_logger
from manager_errors import ConfigGenerationError
from manager_settings import ManagerSettings
from node_catalog import group_by_country, match_filter
from outbound_resolver import is_valid_outbound, labels, resolve
from rule_models import (
    BUILTIN_OUTBOUNDS,
    OUTBOUND_DIRECT,
    OUTBOUND_PROXY,
    OUTBOUND_REJECT,
    CustomRule,
    Filter,
    Node,
    OutboundKind,
    OutboundTarget,
    RuleGroup,
)

logger = get_logger("config_builder")

URLTEST_URL = "https://www.gstatic.com/generate_204"
URLTEST_INTERVAL = "5m"
URLTEST_TOLERANCE = 50

AUTO_OUTBOUND = "Auto"
FINAL_OUTBOUND = "Final"

# 由生成器自行占用的出站标签，节点、国家分组与过滤器都不能同名
RESERVED_TAGS = BUILTIN_OUTBOUNDS + (AUTO_OUTBOUND, FINAL_OUTBOUND)

# DNS 规则依赖的规则集，无论规则组是否启用都需要声明
DNS_GEOSITES = ("category-ads-all", "geolocation-cn", "geolocation-!cn")

# 直接以取值列表表达的自定义规则类型
PLAIN_RULE_TYPES = ("domain_suffix", "domain_keyword", "domain", "ip_cidr")


def geosite_tag(name: str) -> str:
    return f"geosite-{name}"


def geoip_tag(name: str) -> str:
    return f"geoip-{name}"


class _RuleSetRegistry:
    """按首次出现顺序收集远程规则集"""

    def __init__(self, settings: ManagerSettings):
        self.settings = settings
        self._entries: Dict[str, Dict[str, Any]] = {}

    def geosite(self, name: str) -> str:
        tag = geosite_tag(name)
        if tag not in self._entries:
            self._entries[tag] = self._remote(tag, f"{self.settings.geosite_base_url}/{tag}.srs")
        return tag

    def geoip(self, name: str) -> str:
        tag = geoip_tag(name)
        if tag not in self._entries:
            self._entries[tag] = self._remote(tag, f"{self.settings.geoip_base_url}/{tag}.srs")
        return tag

    @staticmethod
    def _remote(tag: str, url: str) -> Dict[str, Any]:
        return {
            "tag": tag,
            "type": "remote",
            "format": "binary",
            "url": url,
            "download_detour": OUTBOUND_DIRECT,
        }

    def entries(self) -> List[Dict[str, Any]]:
        return list(self._entries.values())


def find_tag_conflicts(nodes: Sequence[Node], targets: Sequence[OutboundTarget]) -> List[str]:
    """节点标签与保留标签、国家分组、过滤器之间的重名

    国家分组与过滤器之间的重名已由 resolve() 按先写入者保留处理，这里不再报告。
    """
    conflicts: List[str] = []
    node_tags = set()
    for node in nodes:
        if node.tag in RESERVED_TAGS and node.tag not in node_tags:
            conflicts.append(f"节点 {node.tag}")
        node_tags.add(node.tag)

    for target in targets:
        if target.kind is OutboundKind.BUILTIN:
            continue
        kind = "国家分组" if target.kind is OutboundKind.COUNTRY else "过滤器"
        if target.label in RESERVED_TAGS or target.label in node_tags:
            conflicts.append(f"{kind} {target.label}")
    return conflicts


def validate_outbounds(
    settings: ManagerSettings,
    nodes: Sequence[Node],
    filters: Sequence[Filter],
    effective_rules: Sequence[Any],
) -> None:
    """重新校验所有出站引用，存在悬空引用或标签冲突时抛出 ConfigGenerationError"""
    targets = resolve(group_by_country(list(nodes)), filters)

    conflicts = find_tag_conflicts(nodes, targets)
    if conflicts:
        raise ConfigGenerationError(
            f"存在 {len(conflicts)} 个重名的出站标签: {', '.join(conflicts)}",
            conflicts=conflicts,
        )

    dangling = []
    for rule in effective_rules:
        if not is_valid_outbound(rule.outbound, targets):
            dangling.append(f"{rule.id}({rule.name}) -> {rule.outbound}")
    if not is_valid_outbound(settings.final_outbound, targets):
        dangling.append(f"final -> {settings.final_outbound}")
    if dangling:
        raise ConfigGenerationError(
            f"存在 {len(dangling)} 个指向无效出站的引用: {', '.join(dangling)}",
            dangling=dangling,
        )


def build_log() -> Dict[str, Any]:
    return {"level": "info", "timestamp": True}


def build_dns(settings: ManagerSettings) -> Dict[str, Any]:
    return {
        "servers": [
            {"tag": "dns_proxy", "address": settings.proxy_dns,
             "address_resolver": "dns_resolver", "detour": OUTBOUND_PROXY},
            {"tag": "dns_direct", "address": settings.direct_dns,
             "address_resolver": "dns_resolver", "detour": OUTBOUND_DIRECT},
            {"tag": "dns_resolver", "address": "223.5.5.5"},
            {"tag": "dns_block", "address": "rcode://success"},
        ],
        "rules": [
            {"rule_set": [geosite_tag("category-ads-all")], "server": "dns_block"},
            {"rule_set": [geosite_tag("geolocation-cn")], "server": "dns_direct"},
            {"rule_set": [geosite_tag("geolocation-!cn")], "server": "dns_proxy"},
        ],
        "final": "dns_direct",
    }


def build_inbounds(settings: ManagerSettings) -> List[Dict[str, Any]]:
    inbounds = [{
        "type": "mixed",
        "tag": "mixed-in",
        "listen": "127.0.0.1",
        "listen_port": settings.mixed_port,
        "sniff": True,
        "sniff_override_destination": True,
    }]
    if settings.tun_enabled:
        inbounds.append({
            "type": "tun",
            "tag": "tun-in",
            "address": ["172.19.0.1/30", "fdfe:dcba:9876::1/126"],
            "auto_route": True,
            "strict_route": True,
            "stack": "system",
            "sniff": True,
            "sniff_override_destination": True,
        })
    return inbounds


def _urltest(tag: str, members: List[str], options: Dict[str, Any] = None) -> Dict[str, Any]:
    options = options or {}
    return {
        "tag": tag,
        "type": "urltest",
        "outbounds": members,
        "url": options.get("url", URLTEST_URL),
        "interval": options.get("interval", URLTEST_INTERVAL),
        "tolerance": options.get("tolerance", URLTEST_TOLERANCE),
    }


def build_outbounds(settings: ManagerSettings, nodes: Sequence[Node],
                    filters: Sequence[Filter]) -> List[Dict[str, Any]]:
    outbounds: List[Dict[str, Any]] = [
        {"type": "direct", "tag": OUTBOUND_DIRECT},
        {"type": "block", "tag": OUTBOUND_REJECT},
    ]

    node_tags: List[str] = []
    unique_nodes: List[Node] = []
    country_members: Dict[str, List[str]] = {}
    for node in nodes:
        if node.tag in node_tags:
            logger.warning(f"Duplicate node tag skipped: {node.tag}")
            continue
        outbound = {"tag": node.tag, "type": node.type, "server": node.server, "server_port": node.server_port}
        outbound.update(node.extra)
        outbounds.append(outbound)
        node_tags.append(node.tag)
        unique_nodes.append(node)
        if node.country:
            country_members.setdefault(node.country, []).append(node.tag)

    # 分组标签直接取自出站命名空间，与 validate_outbounds 的校验口径一致
    country_groups = group_by_country(list(nodes))
    targets = resolve(country_groups, filters)
    group_codes = {group.label: group.code for group in country_groups}
    enabled_filters: Dict[str, Filter] = {}
    for flt in filters:
        if flt.enabled:
            enabled_filters.setdefault(flt.name, flt)

    country_tags: List[str] = []
    filter_tags: List[str] = []
    for target in targets:
        if target.kind is OutboundKind.COUNTRY:
            outbounds.append(_urltest(target.label, country_members[group_codes[target.label]]))
            country_tags.append(target.label)
        elif target.kind is OutboundKind.FILTER:
            # 未命中任何节点的过滤器退化为指向 Proxy 的选择器，且不进入 Proxy 选择器
            flt = enabled_filters[target.label]
            members = [n.tag for n in unique_nodes if match_filter(n, flt)]
            if not members:
                logger.warning(f"Filter '{flt.name}' matches no node, falling back to {OUTBOUND_PROXY}")
                outbounds.append({"tag": flt.name, "type": "selector", "outbounds": [OUTBOUND_PROXY]})
                continue
            if flt.mode == "selector":
                outbounds.append({"tag": flt.name, "type": "selector", "outbounds": members})
            else:
                outbounds.append(_urltest(flt.name, members, flt.urltest))
            filter_tags.append(flt.name)

    if node_tags:
        outbounds.append(_urltest(AUTO_OUTBOUND, node_tags))
        proxy_members = [AUTO_OUTBOUND] + country_tags + filter_tags + node_tags
        proxy_default = AUTO_OUTBOUND
    else:
        logger.warning("No nodes available, Proxy falls back to DIRECT")
        proxy_members = [OUTBOUND_DIRECT]
        proxy_default = OUTBOUND_DIRECT

    outbounds.append({
        "tag": OUTBOUND_PROXY,
        "type": "selector",
        "outbounds": proxy_members,
        "default": proxy_default,
    })

    outbounds.append({
        "tag": FINAL_OUTBOUND,
        "type": "selector",
        "outbounds": labels(targets),
        "default": settings.final_outbound,
    })
    return outbounds


def route_rule_for(rule: Any, registry: _RuleSetRegistry) -> Dict[str, Any]:
    """单条生效规则 -> sing-box 路由规则"""
    if isinstance(rule, RuleGroup):
        tags = [registry.geosite(s) for s in rule.site_rules]
        tags += [registry.geoip(i) for i in rule.ip_rules]
        return {"rule_set": tags, "outbound": rule.outbound}

    if not isinstance(rule, CustomRule):
        raise ConfigGenerationError(f"未知的规则对象: {type(rule).__name__}")

    if rule.rule_type in PLAIN_RULE_TYPES:
        return {rule.rule_type: list(rule.values), "outbound": rule.outbound}
    if rule.rule_type == "port":
        return {"port": [int(v) for v in rule.values], "outbound": rule.outbound}
    if rule.rule_type == "geosite":
        return {"rule_set": [registry.geosite(v) for v in rule.values], "outbound": rule.outbound}
    if rule.rule_type == "geoip":
        return {"rule_set": [registry.geoip(v) for v in rule.values], "outbound": rule.outbound}
    raise ConfigGenerationError(f"规则 {rule.id} 的类型无效: {rule.rule_type}")


def build_route(settings: ManagerSettings, effective_rules: Sequence[Any]) -> Dict[str, Any]:
    registry = _RuleSetRegistry(settings)
    rules = [route_rule_for(rule, registry) for rule in effective_rules]
    for name in DNS_GEOSITES:
        registry.geosite(name)
    return {
        "rules": rules,
        "rule_set": registry.entries(),
        "final": FINAL_OUTBOUND,
        "auto_detect_interface": True,
    }


def build_experimental(settings: ManagerSettings) -> Dict[str, Any]:
    return {
        "clash_api": {
            "external_controller": f"127.0.0.1:{settings.clash_api_port}",
            "external_ui": settings.clash_ui_path,
            "default_mode": "rule",
        },
        "cache_file": {"enabled": True, "path": "cache.db"},
    }


def build_config(
    settings: ManagerSettings,
    nodes: Sequence[Node],
    filters: Sequence[Filter],
    effective_rules: Sequence[Any],
) -> Dict[str, Any]:
    """生成完整的 sing-box 配置（纯函数，不写文件）"""
    validate_outbounds(settings, nodes, filters, effective_rules)

    config: Dict[str, Any] = {
        "log": build_log(),
        "dns": build_dns(settings),
        "ntp": {"enabled": True, "server": "time.apple.com"},
        "inbounds": build_inbounds(settings),
        "outbounds": build_outbounds(settings, nodes, filters),
        "route": build_route(settings, effective_rules),
    }
    if settings.clash_api_port > 0:
        config["experimental"] = build_experimental(settings)

    logger.debug(f"Built config: {len(nodes)} nodes, {len(config['route']['rules'])} route rules")
    return config
