#!/usr/bin/env python3
"""
出站命名空间解析

resolve() 是纯函数：输入外部的国家分组与过滤器集合，输出当前合法的出站目标序列。
不做任何缓存，国家分组或过滤器变化后由调用方重新调用即可。
"""

from typing import Iterable, List

from rule_models import (
    BUILTIN_OUTBOUNDS,
    CountryGroup,
    Filter,
    OutboundKind,
    OutboundTarget,
)


def resolve(country_groups: Iterable[CountryGroup], filters: Iterable[Filter]) -> List[OutboundTarget]:
    """计算出站命名空间

    顺序：Proxy, DIRECT, REJECT；然后是非空国家分组（按输入顺序，标签 "<emoji> <name>"）；
    最后是启用的过滤器（标签为过滤器名）。标签重复时先写入者保留。
    """
    targets: List[OutboundTarget] = []
    seen = set()

    for label in BUILTIN_OUTBOUNDS:
        targets.append(OutboundTarget(label=label, kind=OutboundKind.BUILTIN))
        seen.add(label)

    for group in country_groups:
        if group.node_count <= 0:
            continue
        label = group.label
        if label in seen:
            continue
        seen.add(label)
        targets.append(OutboundTarget(label=label, kind=OutboundKind.COUNTRY, node_count=group.node_count))

    for flt in filters:
        if not flt.enabled or flt.name in seen:
            continue
        seen.add(flt.name)
        targets.append(OutboundTarget(label=flt.name, kind=OutboundKind.FILTER))

    return targets


def labels(targets: Iterable[OutboundTarget]) -> List[str]:
    return [t.label for t in targets]


def is_valid_outbound(outbound: str, targets: Iterable[OutboundTarget]) -> bool:
    """内置出站总是合法；其余必须出现在解析结果中"""
    if outbound in BUILTIN_OUTBOUNDS:
        return True
    return any(t.label == outbound for t in targets)
