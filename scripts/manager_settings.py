#!/usr/bin/env python3
"""
管理器设置

读取顺序：dataclass 默认值 → <data_dir>/settings.yml → 环境变量。
设置表单属于外部界面，这里只提供读取、按白名单更新和写回 YAML。
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from log_config import get_logger
from manager_errors import ValidationError

logger = get_logger("manager_settings")

DEFAULT_DATA_DIR = Path.home() / ".singbox-manager"
SETTINGS_FILE_NAME = "settings.yml"

# PUT /api/settings 允许修改的字段
UPDATABLE_FIELDS = frozenset({
    "singbox_path",
    "mixed_port",
    "tun_enabled",
    "proxy_dns",
    "direct_dns",
    "final_outbound",
    "clash_api_port",
    "auto_apply",
    "check_config",
})


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# 环境变量 -> (字段, 转换函数)
ENV_OVERRIDES = {
    "SBM_SINGBOX_PATH": ("singbox_path", str),
    "SBM_CONFIG_PATH": ("config_path", str),
    "SBM_API_HOST": ("api_host", str),
    "SBM_API_PORT": ("api_port", int),
    "SBM_AUTO_APPLY": ("auto_apply", _env_bool),
    "SBM_PROBE_INTERVAL": ("probe_interval", float),
    "SBM_CATALOG_URL": ("catalog_url", str),
    "SBM_CLASH_API_PORT": ("clash_api_port", int),
}


@dataclass
class ManagerSettings:
    data_dir: str = str(DEFAULT_DATA_DIR)
    singbox_path: str = "sing-box"
    config_path: str = ""

    # 入站
    mixed_port: int = 2080
    tun_enabled: bool = False

    # DNS
    proxy_dns: str = "https://1.1.1.1/dns-query"
    direct_dns: str = "https://223.5.5.5/dns-query"

    # 路由
    final_outbound: str = "Proxy"
    geosite_base_url: str = "https://raw.githubusercontent.com/SagerNet/sing-geosite/rule-set"
    geoip_base_url: str = "https://raw.githubusercontent.com/SagerNet/sing-geoip/rule-set"

    # sing-box experimental
    clash_api_port: int = 0
    clash_ui_path: str = "ui"

    # 策略
    auto_apply: bool = True
    probe_interval: float = 5.0
    start_timeout: float = 15.0
    stop_timeout: float = 10.0
    check_config: bool = False

    # 节点目录
    catalog_url: str = ""
    catalog_timeout: float = 10.0

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 9090

    def __post_init__(self):
        if not self.config_path:
            self.config_path = str(Path(self.data_dir) / "generated" / "config.json")

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def settings_file(self) -> Path:
        return self.data_path / SETTINGS_FILE_NAME

    @property
    def rules_state_file(self) -> Path:
        return self.data_path / "rules.json"

    @property
    def rule_groups_file(self) -> Path:
        return self.data_path / "rule_groups.yml"

    @property
    def catalog_file(self) -> Path:
        return self.data_path / "catalog.json"

    @property
    def log_dir(self) -> Path:
        return self.data_path / "logs"

    @property
    def singbox_log_file(self) -> Path:
        return self.log_dir / "sing-box.log"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagerSettings":
        known = {f.name: f for f in fields(cls)}
        values = {}
        for key, value in (data or {}).items():
            if key not in known:
                logger.warning(f"Ignoring unknown setting: {key}")
                continue
            values[key] = value
        return cls(**values)

    @classmethod
    def load(cls, data_dir: Optional[str] = None) -> "ManagerSettings":
        """从数据目录下的 settings.yml 加载，再应用环境变量覆盖"""
        data_dir = data_dir or os.environ.get("SBM_DATA_DIR") or str(DEFAULT_DATA_DIR)
        path = Path(data_dir).expanduser() / SETTINGS_FILE_NAME

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            except (OSError, yaml.YAMLError) as exc:
                raise ValidationError(f"读取设置文件失败 {path}: {exc}") from exc
        data["data_dir"] = str(Path(data_dir).expanduser())

        for env_name, (field_name, convert) in ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                data[field_name] = convert(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid {env_name}={raw!r}")

        return cls.from_dict(data)

    def save(self) -> None:
        path = self.settings_file
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(self.to_dict(), allow_unicode=True, sort_keys=False), encoding="utf-8")

    def apply_update(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        """按白名单更新字段，返回实际发生变化的字段"""
        rejected = sorted(set(changes) - UPDATABLE_FIELDS)
        if rejected:
            raise ValidationError(f"以下设置不允许修改: {', '.join(rejected)}")

        changed = {}
        for key, value in changes.items():
            if getattr(self, key) != value:
                setattr(self, key, value)
                changed[key] = value
        return changed
