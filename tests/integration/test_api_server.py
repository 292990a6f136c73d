"""
REST API integration tests for singbox-manager.

Runs the FastAPI app in-process (TestClient) against real components and
the stub sing-box binary from conftest.py.

Usage:
    pytest tests/integration/test_api_server.py -v
"""

import json
import os
import time

import pytest
from fastapi.testclient import TestClient

from api_server import build_context, create_app

pytestmark = pytest.mark.skipif(os.name != "posix", reason="requires a POSIX shell")

CATALOG = {
    "nodes": [
        {"tag": "香港 01", "type": "shadowsocks", "server": "hk.example.com", "server_port": 8388,
         "country": "HK", "method": "aes-128-gcm", "password": "x"},
        {"tag": "日本 01 Netflix", "type": "trojan", "server": "jp.example.com", "server_port": 443,
         "country": "JP", "password": "x"},
    ],
    "filters": [
        {"id": "f1", "name": "流媒体", "enabled": True, "include": ["netflix"]},
        {"id": "f2", "name": "已停用", "enabled": False},
    ],
}


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def client(settings):
    settings.data_path.mkdir(parents=True, exist_ok=True)
    settings.catalog_file.write_text(json.dumps(CATALOG, ensure_ascii=False), encoding="utf-8")
    app = create_app(context=build_context(settings))
    with TestClient(app) as test_client:
        yield test_client


def _create_rule(client, **overrides):
    body = {"name": "公司", "rule_type": "domain_suffix", "values": ["corp.example"], "outbound": "DIRECT"}
    body.update(overrides)
    return client.post("/api/rules", json=body)


class TestHealthAndCatalog:
    """Tests for health and read-only catalog endpoints."""

    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["config_version"] == 1

    def test_catalog_loaded_on_startup(self, client):
        assert len(client.get("/api/nodes").json()["data"]) == 2
        countries = client.get("/api/nodes/countries").json()["data"]
        assert [c["code"] for c in countries] == ["HK", "JP"]
        assert countries[0]["label"] == "🇭🇰 香港"
        assert [f["name"] for f in client.get("/api/filters").json()["data"]] == ["流媒体", "已停用"]

    def test_nodes_by_country(self, client):
        resp = client.get("/api/nodes/country/jp")
        assert resp.status_code == 200
        assert [n["tag"] for n in resp.json()["data"]] == ["日本 01 Netflix"]
        assert resp.json()["group"]["label"] == "🇯🇵 日本"

        resp = client.get("/api/nodes/country/KR")
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotFoundError"

    def test_outbounds(self, client):
        values = [t["value"] for t in client.get("/api/outbounds").json()["data"]]
        assert values == ["Proxy", "DIRECT", "REJECT", "🇭🇰 香港", "🇯🇵 日本", "流媒体"]

    def test_catalog_refresh_marks_inputs_changed(self, client):
        resp = client.post("/api/catalog/refresh")
        assert resp.status_code == 200
        assert resp.json()["data"] == {"nodes": 2, "filters": 2}
        assert client.get("/api/config/status").json()["data"]["inputs_changed"] is True


class TestRuleEndpoints:
    """Tests for rule group and custom rule CRUD."""

    def test_list_rule_groups(self, client):
        groups = client.get("/api/rule-groups").json()["data"]
        assert groups[0]["id"] == "ad-block"
        assert len(groups) == 13

    def test_update_rule_group(self, client):
        resp = client.put("/api/rule-groups/netflix", json={"enabled": True, "outbound": "流媒体"})
        assert resp.status_code == 200
        assert resp.json()["data"]["outbound"] == "流媒体"
        assert resp.json()["version"] == 2

    def test_update_rule_group_invalid_outbound(self, client):
        resp = client.put("/api/rule-groups/netflix", json={"outbound": "已停用"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "InvalidOutboundError"
        assert "流媒体" in body["available_outbounds"]

    def test_update_unknown_rule_group(self, client):
        resp = client.put("/api/rule-groups/missing", json={"enabled": True})
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotFoundError"

    def test_custom_rule_crud(self, client):
        resp = _create_rule(client, priority=10)
        assert resp.status_code == 200
        rule = resp.json()["data"]
        assert rule["priority"] == 10

        resp = client.put(f"/api/rules/{rule['id']}", json={"values": ["corp.example", "corp.test"]})
        assert resp.status_code == 200
        assert resp.json()["data"]["values"] == ["corp.example", "corp.test"]
        assert resp.json()["data"]["name"] == "公司"

        assert [r["id"] for r in client.get("/api/rules").json()["data"]] == [rule["id"]]

        assert client.delete(f"/api/rules/{rule['id']}").status_code == 200
        assert client.get("/api/rules").json()["data"] == []
        assert client.delete(f"/api/rules/{rule['id']}").status_code == 404

    def test_create_rule_validation(self, client):
        resp = _create_rule(client, rule_type="process_name")
        assert resp.status_code == 400
        assert resp.json()["error"] == "ValidationError"

        resp = _create_rule(client, values=["  "])
        assert resp.status_code == 400

        resp = client.post("/api/rules", json={"name": "x"})
        assert resp.status_code == 422

    def test_effective_rules_order(self, client):
        _create_rule(client, name="late", priority=90)
        _create_rule(client, name="early", priority=10)

        data = client.get("/api/rules/effective").json()["data"]
        kinds = [item["kind"] for item in data]
        assert kinds.index("custom_rule") > max(i for i, k in enumerate(kinds) if k == "rule_group")
        assert [item["name"] for item in data if item["kind"] == "custom_rule"] == ["early", "late"]


class TestConfigAndService:
    """Tests for config generation, apply and process control."""

    def test_preview_is_pure(self, client):
        _create_rule(client)
        before = client.get("/api/config/status").json()["data"]

        resp = client.get("/api/config/preview")
        assert resp.status_code == 200
        config = resp.json()["data"]
        effective = client.get("/api/rules/effective").json()["data"]
        assert len(config["route"]["rules"]) == len(effective)
        assert config["route"]["rules"][-1] == {"domain_suffix": ["corp.example"], "outbound": "DIRECT"}

        assert client.get("/api/config/status").json()["data"] == before

    def test_generate_writes_without_applying(self, client, settings):
        resp = client.post("/api/config/generate")
        assert resp.status_code == 200
        assert os.path.exists(settings.config_path)
        status = client.get("/api/config/status").json()["data"]
        assert status["last_applied_version"] == 0
        assert status["stale"] is True

    def test_apply_then_start_and_stop(self, client, settings):
        resp = client.post("/api/config/apply")
        assert resp.status_code == 200
        assert resp.json()["data"]["written"] is True
        assert resp.json()["data"]["state"] == "stopped"
        status = client.get("/api/config/status").json()["data"]
        assert status["last_applied_version"] == status["version"]
        assert status["stale"] is False

        resp = client.post("/api/service/start")
        assert resp.status_code == 200
        assert resp.json()["data"]["state"] == "running"

        assert _wait_for(lambda: client.get("/api/service/status").json()["data"]["state"] == "running")
        service = client.get("/api/service/status").json()["data"]
        assert service["probe_count"] >= 1

        assert client.post("/api/service/reload").json()["data"]["state"] == "running"
        assert client.post("/api/service/restart").json()["data"]["state"] == "running"

        logs = client.get("/api/monitor/logs", params={"lines": 50}).json()["data"]
        assert any("stub running" in line for line in logs["lines"])

        assert client.post("/api/service/stop").json()["data"]["state"] == "stopped"

    def test_start_without_config(self, client):
        resp = client.post("/api/service/start")
        assert resp.status_code == 500
        assert resp.json()["error"] == "ProcessStartError"

    def test_apply_with_dangling_outbound(self, client, settings):
        _create_rule(client, outbound="流媒体")
        catalog = dict(CATALOG, filters=[])
        settings.catalog_file.write_text(json.dumps(catalog, ensure_ascii=False), encoding="utf-8")
        client.post("/api/catalog/refresh")

        resp = client.post("/api/config/apply")
        assert resp.status_code == 422
        assert resp.json()["error"] == "ConfigGenerationError"
        assert resp.json()["dangling"]

    def test_auto_apply(self, client, settings):
        resp = client.put("/api/settings", json={"auto_apply": True})
        assert resp.status_code == 200
        assert resp.json()["changed"] == ["auto_apply"]

        _create_rule(client)

        def synced():
            data = client.get("/api/config/status").json()["data"]
            return data["version"] == 2 and not data["stale"]

        assert _wait_for(synced)


class TestSettingsAndLogs:
    """Tests for settings and log endpoints."""

    def test_get_settings(self, client, settings):
        data = client.get("/api/settings").json()["data"]
        assert data["singbox_path"] == settings.singbox_path
        assert data["auto_apply"] is False

    def test_update_settings_persists(self, client, settings):
        resp = client.put("/api/settings", json={"mixed_port": 7890})
        assert resp.status_code == 200
        assert resp.json()["data"]["mixed_port"] == 7890
        assert settings.settings_file.exists()
        assert client.get("/api/config/status").json()["data"]["inputs_changed"] is True

    def test_update_final_outbound_validated(self, client):
        resp = client.put("/api/settings", json={"final_outbound": "不存在"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidOutboundError"

        resp = client.put("/api/settings", json={"final_outbound": "🇭🇰 香港"})
        assert resp.status_code == 200

    def test_reject_as_final_outbound_generates(self, client):
        assert client.put("/api/settings", json={"final_outbound": "REJECT"}).status_code == 200
        config = client.get("/api/config/preview").json()["data"]
        final = next(o for o in config["outbounds"] if o["tag"] == "Final")
        assert final["default"] == "REJECT"
        assert "REJECT" in final["outbounds"]

    def test_update_settings_rejects_bad_port(self, client):
        assert client.put("/api/settings", json={"mixed_port": 70000}).status_code == 422

    def test_logs_empty_before_start(self, client):
        data = client.get("/api/monitor/logs").json()["data"]
        assert data["lines"] == []
