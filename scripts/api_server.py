#!/usr/bin/env python3
"""FastAPI 服务：为前端提供 sing-box 路由规则与进程管理接口"""
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from log_config import get_logger, setup_logging
from manager_errors import CatalogError, InvalidOutboundError, ManagerError, NotFoundError
from manager_settings import ManagerSettings
from node_catalog import NodeCatalog
from outbound_resolver import is_valid_outbound, labels
from process_controller import ProcessController
from reconciler import ReconciliationCoordinator
from rule_models import DEFAULT_RULE_PRIORITY, RuleGroup
from rule_store import RuleStore, load_preset_rule_groups
from status_probe import StatusProbe

logger = get_logger("api_server")

DEFAULT_LOG_LINES = 200
MAX_LOG_LINES = 5000

# 修改后需要重新生成配置的设置项
CONFIG_AFFECTING_SETTINGS = frozenset({
    "mixed_port",
    "tun_enabled",
    "proxy_dns",
    "direct_dns",
    "final_outbound",
    "clash_api_port",
})


# ============ 请求模型 ============

class RuleGroupUpdateRequest(BaseModel):
    """修改规则组（启用状态与出站一起校验、一次提交）"""
    enabled: Optional[bool] = Field(None, description="是否启用")
    outbound: Optional[str] = Field(None, description="出站")


class CustomRuleCreateRequest(BaseModel):
    """添加自定义规则"""
    name: str = Field(..., description="规则名称")
    rule_type: str = Field(..., description="domain_suffix/domain_keyword/domain/ip_cidr/geosite/geoip/port")
    values: List[str] = Field(..., description="规则内容")
    outbound: str = Field(..., description="出站")
    enabled: bool = Field(True, description="是否启用")
    priority: int = Field(DEFAULT_RULE_PRIORITY, description="优先级，越小越先匹配")


class CustomRuleUpdateRequest(BaseModel):
    """修改自定义规则（部分字段）"""
    name: Optional[str] = None
    rule_type: Optional[str] = None
    values: Optional[List[str]] = None
    outbound: Optional[str] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = None


class SettingsUpdateRequest(BaseModel):
    """修改设置（白名单字段）"""
    singbox_path: Optional[str] = None
    mixed_port: Optional[int] = Field(None, ge=1, le=65535)
    tun_enabled: Optional[bool] = None
    proxy_dns: Optional[str] = None
    direct_dns: Optional[str] = None
    final_outbound: Optional[str] = None
    clash_api_port: Optional[int] = Field(None, ge=0, le=65535)
    auto_apply: Optional[bool] = None
    check_config: Optional[bool] = None


# ============ 组件装配 ============

@dataclass
class ManagerContext:
    settings: ManagerSettings
    catalog: NodeCatalog
    store: RuleStore
    controller: ProcessController
    probe: StatusProbe
    coordinator: ReconciliationCoordinator


def build_context(settings: ManagerSettings) -> ManagerContext:
    catalog = NodeCatalog(
        path=settings.catalog_file,
        url=settings.catalog_url,
        timeout=settings.catalog_timeout,
    )
    store = RuleStore(
        namespace_source=catalog.namespace_inputs,
        state_path=settings.rules_state_file,
        presets=load_preset_rule_groups(settings.rule_groups_file),
    )
    controller = ProcessController(settings)
    probe = StatusProbe(controller, interval=settings.probe_interval)
    coordinator = ReconciliationCoordinator(settings, store, catalog, controller)
    return ManagerContext(
        settings=settings,
        catalog=catalog,
        store=store,
        controller=controller,
        probe=probe,
        coordinator=coordinator,
    )


def tail_file(path: Path, lines: int) -> List[str]:
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=lines)]


def create_app(settings: Optional[ManagerSettings] = None,
               context: Optional[ManagerContext] = None) -> FastAPI:
    if context is None:
        context = build_context(settings or ManagerSettings.load())
    settings = context.settings
    catalog = context.catalog
    store = context.store
    controller = context.controller
    probe = context.probe
    coordinator = context.coordinator

    app = FastAPI(title="sing-box Manager API", version="0.1.0")
    app.state.context = context
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ManagerError)
    async def manager_error_handler(request: Request, exc: ManagerError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.on_event("startup")
    async def startup_event():
        """加载节点目录并启动后台线程（状态探测 + 协调器）"""
        try:
            catalog.refresh()
        except CatalogError as exc:
            logger.error(f"Initial catalog load failed: {exc.message}")
        probe.start()
        coordinator.start()
        logger.info(f"Manager started: data_dir={settings.data_dir}, auto_apply={settings.auto_apply}")

    @app.on_event("shutdown")
    async def shutdown_event():
        coordinator.stop()
        probe.stop()
        controller.shutdown()

    # ============ 健康检查 ============

    @app.get("/api/health")
    def api_health():
        status = probe.last_status
        return {
            "status": "ok",
            "sing_box": status.state.value,
            "config_version": store.version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ============ 规则组 ============

    @app.get("/api/rule-groups")
    def api_list_rule_groups():
        return {"data": [g.to_dict() for g in store.list_rule_groups()]}

    @app.put("/api/rule-groups/{group_id}")
    def api_update_rule_group(group_id: str, payload: RuleGroupUpdateRequest):
        group = store.update_rule_group(group_id, enabled=payload.enabled, outbound=payload.outbound)
        return {"data": group.to_dict(), "version": store.version}

    # ============ 自定义规则 ============

    @app.get("/api/rules")
    def api_list_rules():
        return {"data": [r.to_dict() for r in store.list_custom_rules()]}

    @app.get("/api/rules/effective")
    def api_effective_rules():
        version, rules = store.snapshot()
        return {
            "version": version,
            "data": [
                {"kind": "rule_group" if isinstance(r, RuleGroup) else "custom_rule", **r.to_dict()}
                for r in rules
            ],
        }

    @app.post("/api/rules")
    def api_create_rule(payload: CustomRuleCreateRequest):
        rule = store.create_custom_rule(payload.model_dump())
        return {"data": rule.to_dict(), "version": store.version}

    @app.put("/api/rules/{rule_id}")
    def api_update_rule(rule_id: str, payload: CustomRuleUpdateRequest):
        rule = store.update_custom_rule(rule_id, payload.model_dump(exclude_unset=True))
        return {"data": rule.to_dict(), "version": store.version}

    @app.delete("/api/rules/{rule_id}")
    def api_delete_rule(rule_id: str):
        store.delete_custom_rule(rule_id)
        return {"message": "规则已删除", "version": store.version}

    # ============ 出站 / 节点目录 ============

    @app.get("/api/outbounds")
    def api_outbounds():
        return {"data": [t.to_dict() for t in store.namespace()]}

    @app.get("/api/nodes")
    def api_nodes():
        return {"data": [n.to_dict() for n in catalog.nodes()]}

    @app.get("/api/nodes/countries")
    def api_countries():
        return {"data": [g.to_dict() for g in catalog.country_groups()]}

    @app.get("/api/nodes/country/{code}")
    def api_country_nodes(code: str):
        """某个国家分组下的节点，国家代码不区分大小写"""
        code = code.upper()
        group = next((g for g in catalog.country_groups() if g.code == code), None)
        if group is None:
            raise NotFoundError("国家分组", code)
        nodes = [n.to_dict() for n in catalog.nodes() if n.country == code]
        return {"data": nodes, "group": group.to_dict()}

    @app.get("/api/filters")
    def api_filters():
        return {"data": [f.to_dict() for f in catalog.filters()]}

    @app.post("/api/catalog/refresh")
    def api_refresh_catalog():
        counts = catalog.refresh()
        coordinator.mark_inputs_changed()
        return {"message": "节点目录已刷新", "data": counts, "source": catalog.source}

    # ============ 配置 ============

    @app.get("/api/config/preview")
    def api_config_preview():
        version, config = coordinator.render()
        return {"version": version, "data": config}

    @app.post("/api/config/generate")
    def api_config_generate():
        path = coordinator.generate()
        return {"message": "配置已生成", "path": path, "version": store.version}

    @app.post("/api/config/apply")
    def api_config_apply():
        result = coordinator.apply_now()
        return {"message": "配置已应用", "data": result.to_dict(), "status": coordinator.status()}

    @app.get("/api/config/status")
    def api_config_status():
        return {"data": coordinator.status()}

    # ============ 服务 ============

    @app.get("/api/service/status")
    def api_service_status():
        return {"data": probe.get_status(), "current": controller.status().to_dict()}

    @app.post("/api/service/start")
    def api_service_start():
        return {"data": controller.start().to_dict()}

    @app.post("/api/service/stop")
    def api_service_stop():
        return {"data": controller.stop().to_dict()}

    @app.post("/api/service/restart")
    def api_service_restart():
        return {"data": controller.restart().to_dict()}

    @app.post("/api/service/reload")
    def api_service_reload():
        return {"data": controller.reload().to_dict()}

    # ============ 设置 ============

    @app.get("/api/settings")
    def api_get_settings():
        return {"data": settings.to_dict()}

    @app.put("/api/settings")
    def api_update_settings(payload: SettingsUpdateRequest):
        changes = payload.model_dump(exclude_unset=True)
        changes = {k: v for k, v in changes.items() if v is not None}
        if "final_outbound" in changes:
            targets = store.namespace()
            if not is_valid_outbound(changes["final_outbound"], targets):
                raise InvalidOutboundError(changes["final_outbound"], labels(targets))

        changed = settings.apply_update(changes)
        if changed:
            settings.save()
            logger.info(f"Settings updated: {', '.join(sorted(changed))}")
        if CONFIG_AFFECTING_SETTINGS & set(changed):
            coordinator.mark_inputs_changed()
        elif changed.get("auto_apply"):
            coordinator.wakeup()
        return {"data": settings.to_dict(), "changed": sorted(changed)}

    # ============ 日志 ============

    @app.get("/api/monitor/logs")
    def api_monitor_logs(lines: int = Query(DEFAULT_LOG_LINES, ge=1, le=MAX_LOG_LINES)):
        path = settings.singbox_log_file
        return {"data": {"path": str(path), "lines": tail_file(path, lines)}}

    return app


def main() -> None:
    import uvicorn

    settings = ManagerSettings.load()
    setup_logging(log_file=settings.log_dir / "manager.log", force=True)
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
