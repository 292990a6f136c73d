#!/usr/bin/env python3
"""
节点 / 过滤器目录（只读外部输入）

订阅解析、节点存储与过滤器管理都属于外部的订阅管理服务，这里只读取其导出的目录文档：

    {
        "nodes":   [{"tag": "香港 01", "type": "vless", "server": "...", "server_port": 443,
                     "country": "HK", ...额外 outbound 字段}],
        "filters": [{"id": "f1", "name": "流媒体", "enabled": true, "mode": "urltest",
                     "include": ["netflix"], "exclude": [], "include_countries": [],
                     "exclude_countries": []}]
    }

来源可以是本地 JSON 文件，也可以是 HTTP 地址（GET 返回同样的文档）。
国家分组由节点按国家代码聚合得出。
"""

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests

from log_config import get_logger
from manager_errors import CatalogError
from rule_models import CountryGroup, Filter, Node

logger = get_logger("node_catalog")

DEFAULT_CATALOG_TIMEOUT = 10

COUNTRY_NAMES: Dict[str, str] = {
    "HK": "香港",
    "TW": "台湾",
    "MO": "澳门",
    "JP": "日本",
    "KR": "韩国",
    "SG": "新加坡",
    "US": "美国",
    "CA": "加拿大",
    "GB": "英国",
    "DE": "德国",
    "FR": "法国",
    "NL": "荷兰",
    "RU": "俄罗斯",
    "IN": "印度",
    "AU": "澳大利亚",
    "TR": "土耳其",
    "AR": "阿根廷",
    "BR": "巴西",
    "MY": "马来西亚",
    "TH": "泰国",
    "VN": "越南",
    "PH": "菲律宾",
    "ID": "印度尼西亚",
    "CN": "中国",
}


def country_emoji(code: str) -> str:
    """两位国家代码转国旗 emoji（区域指示符号），非法代码返回 🏳"""
    code = (code or "").upper()
    if len(code) != 2 or not code.isalpha() or not code.isascii():
        return "🏳"
    return "".join(chr(0x1F1E6 + ord(c) - ord("A")) for c in code)


def country_name(code: str) -> str:
    code = (code or "").upper()
    return COUNTRY_NAMES.get(code, code)


def group_by_country(nodes: List[Node]) -> List[CountryGroup]:
    """按国家代码聚合节点，按代码排序保证输出稳定"""
    counts: Dict[str, int] = {}
    for node in nodes:
        if node.country:
            counts[node.country] = counts.get(node.country, 0) + 1
    return [
        CountryGroup(code=code, emoji=country_emoji(code), name=country_name(code), node_count=counts[code])
        for code in sorted(counts)
    ]


def match_filter(node: Node, flt: Filter) -> bool:
    """节点是否命中过滤器：国家包含 → 国家排除 → 关键字包含 → 关键字排除"""
    name = node.tag.lower()

    if flt.include_countries and not any(node.country.lower() == c.lower() for c in flt.include_countries):
        return False
    if any(node.country.lower() == c.lower() for c in flt.exclude_countries):
        return False
    if flt.include and not any(k.lower() in name for k in flt.include):
        return False
    if any(k.lower() in name for k in flt.exclude):
        return False
    return True


def parse_catalog(document: Dict[str, Any]) -> Tuple[List[Node], List[Filter]]:
    if not isinstance(document, dict):
        raise CatalogError("目录文档必须是 JSON 对象")
    try:
        nodes = [Node.from_dict(item) for item in document.get("nodes") or []]
        filters = [Filter.from_dict(item) for item in document.get("filters") or []]
    except (KeyError, TypeError, ValueError) as exc:
        raise CatalogError(f"目录文档格式错误: {exc}") from exc
    return nodes, filters


class NodeCatalog:
    """节点与过滤器的只读快照；refresh() 失败时保留旧快照"""

    def __init__(self, path: Optional[Path] = None, url: str = "",
                 timeout: float = DEFAULT_CATALOG_TIMEOUT):
        self.path = Path(path) if path else None
        self.url = url.rstrip("/") if url else ""
        self.timeout = timeout
        self._lock = threading.Lock()
        self._nodes: List[Node] = []
        self._filters: List[Filter] = []
        self._session: Optional[requests.Session] = None

    @property
    def source(self) -> str:
        return self.url or (str(self.path) if self.path else "memory")

    def nodes(self) -> List[Node]:
        with self._lock:
            return list(self._nodes)

    def filters(self) -> List[Filter]:
        with self._lock:
            return list(self._filters)

    def country_groups(self) -> List[CountryGroup]:
        return group_by_country(self.nodes())

    def namespace_inputs(self) -> Tuple[List[CountryGroup], List[Filter]]:
        """出站命名空间的输入（国家分组, 过滤器），同一快照内读取"""
        with self._lock:
            nodes = list(self._nodes)
            filters = list(self._filters)
        return group_by_country(nodes), filters

    def replace(self, nodes: List[Node], filters: List[Filter]) -> None:
        with self._lock:
            self._nodes = list(nodes)
            self._filters = list(filters)

    def refresh(self) -> Dict[str, int]:
        """从来源重新加载目录"""
        if self.url:
            document = self._fetch_remote()
        elif self.path is not None:
            document = self._read_file()
        else:
            return self._counts()

        nodes, filters = parse_catalog(document)
        self.replace(nodes, filters)
        logger.info(f"Catalog refreshed from {self.source}: {len(nodes)} nodes, {len(filters)} filters")
        return self._counts()

    def _counts(self) -> Dict[str, int]:
        with self._lock:
            return {"nodes": len(self._nodes), "filters": len(self._filters)}

    def _read_file(self) -> Dict[str, Any]:
        if not self.path.exists():
            logger.warning(f"Catalog file not found: {self.path}, using empty catalog")
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise CatalogError(f"读取目录文件失败 {self.path}: {exc}") from exc

    def _fetch_remote(self) -> Dict[str, Any]:
        if self._session is None:
            self._session = requests.Session()
        try:
            resp = self._session.get(f"{self.url}/catalog", timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            raise CatalogError(f"获取目录失败 {self.url}: {exc}") from exc
        except ValueError as exc:
            raise CatalogError(f"目录响应不是合法 JSON: {exc}") from exc
        # 兼容 {"data": {...}} 包装
        if isinstance(data, dict) and "data" in data and "nodes" not in data:
            data = data["data"]
        return data
