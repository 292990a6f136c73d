"""
Unit tests for the node catalog.
"""

import json
from unittest.mock import MagicMock

import pytest
import requests

from manager_errors import CatalogError
from node_catalog import NodeCatalog, country_emoji, country_name, group_by_country, match_filter, parse_catalog
from rule_models import Filter, Node

CATALOG = {
    "nodes": [
        {"tag": "香港 01", "type": "shadowsocks", "server": "hk.example.com", "server_port": 8388,
         "country": "hk", "method": "aes-128-gcm", "password": "x"},
        {"tag": "日本 01", "type": "trojan", "server": "jp.example.com", "server_port": 443, "country": "JP"},
    ],
    "filters": [
        {"id": "f1", "name": "流媒体", "enabled": True, "include": ["netflix"]},
    ],
}


class TestCountryHelpers:
    """Tests for country emoji and names."""

    def test_emoji(self):
        assert country_emoji("hk") == "🇭🇰"
        assert country_emoji("JP") == "🇯🇵"

    @pytest.mark.parametrize("code", ["", "X", "ABC", "1A"])
    def test_emoji_fallback(self, code):
        assert country_emoji(code) == "🏳"

    def test_name(self):
        assert country_name("hk") == "香港"
        assert country_name("ZZ") == "ZZ"

    def test_group_by_country(self, sample_nodes):
        groups = group_by_country(sample_nodes + [Node(tag="x", type="direct", server="", server_port=0)])
        assert [(g.code, g.node_count) for g in groups] == [("HK", 2), ("JP", 1), ("US", 1)]
        assert groups[0].label == "🇭🇰 香港"


class TestMatchFilter:
    """Tests for filter matching."""

    def test_keyword_include(self, sample_nodes):
        flt = Filter(id="f", name="f", include=["NETFLIX"])
        assert [n.tag for n in sample_nodes if match_filter(n, flt)] == ["香港 02 Netflix", "美国 01 Netflix"]

    def test_keyword_exclude(self, sample_nodes):
        flt = Filter(id="f", name="f", exclude=["netflix"])
        assert [n.tag for n in sample_nodes if match_filter(n, flt)] == ["香港 01", "日本 01"]

    def test_countries(self, sample_nodes):
        flt = Filter(id="f", name="f", include_countries=["hk", "us"], exclude_countries=["US"])
        assert [n.tag for n in sample_nodes if match_filter(n, flt)] == ["香港 01", "香港 02 Netflix"]

    def test_empty_filter_matches_all(self, sample_nodes):
        flt = Filter(id="f", name="f")
        assert all(match_filter(n, flt) for n in sample_nodes)


class TestParseCatalog:
    """Tests for catalog document parsing."""

    def test_parse(self):
        nodes, filters = parse_catalog(CATALOG)
        assert nodes[0].country == "HK"
        assert nodes[0].extra == {"method": "aes-128-gcm", "password": "x"}
        assert filters[0].name == "流媒体"

    def test_missing_required_field(self):
        with pytest.raises(CatalogError):
            parse_catalog({"nodes": [{"type": "vless"}]})

    def test_not_an_object(self):
        with pytest.raises(CatalogError):
            parse_catalog([])


class TestNodeCatalog:
    """Tests for NodeCatalog sources."""

    def test_refresh_from_file(self, temp_dir):
        path = temp_dir / "catalog.json"
        path.write_text(json.dumps(CATALOG, ensure_ascii=False), encoding="utf-8")
        catalog = NodeCatalog(path=path)

        assert catalog.refresh() == {"nodes": 2, "filters": 1}
        groups, filters = catalog.namespace_inputs()
        assert [g.code for g in groups] == ["HK", "JP"]
        assert [f.name for f in filters] == ["流媒体"]

    def test_missing_file_is_empty(self, temp_dir):
        catalog = NodeCatalog(path=temp_dir / "missing.json")
        assert catalog.refresh() == {"nodes": 0, "filters": 0}

    def test_bad_file_keeps_previous_snapshot(self, temp_dir):
        path = temp_dir / "catalog.json"
        path.write_text(json.dumps(CATALOG), encoding="utf-8")
        catalog = NodeCatalog(path=path)
        catalog.refresh()

        path.write_text("{broken", encoding="utf-8")
        with pytest.raises(CatalogError):
            catalog.refresh()
        assert len(catalog.nodes()) == 2

    def test_refresh_from_url(self):
        catalog = NodeCatalog(url="http://catalog.local/api/")
        response = MagicMock()
        response.json.return_value = {"data": CATALOG}
        session = MagicMock()
        session.get.return_value = response
        catalog._session = session

        assert catalog.refresh() == {"nodes": 2, "filters": 1}
        session.get.assert_called_once_with("http://catalog.local/api/catalog", timeout=10)

    def test_url_error(self):
        catalog = NodeCatalog(url="http://catalog.local")
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")
        catalog._session = session

        with pytest.raises(CatalogError):
            catalog.refresh()

    def test_memory_catalog(self, sample_nodes, sample_filters):
        catalog = NodeCatalog()
        catalog.replace(sample_nodes, sample_filters)
        assert catalog.source == "memory"
        assert catalog.refresh() == {"nodes": 4, "filters": 3}
