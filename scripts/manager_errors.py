#!/usr/bin/env python3
"""
singbox-manager 错误类型

每个错误携带 status_code，REST 层统一映射为 HTTP 响应：

    ManagerError
    ├── RuleStoreError
    │   ├── NotFoundError            404  未知的规则组 / 规则 ID
    │   ├── ValidationError          400  名称/取值为空、未知 rule_type、取值格式错误
    │   ├── InvalidOutboundError     400  出站不在当前出站命名空间中
    │   └── PersistenceError         500  规则状态写盘失败（内存未变更）
    ├── ProcessControlError
    │   ├── OperationInProgressError 409  已有生命周期操作在执行
    │   ├── ProcessTimeoutError      504  生命周期操作超时（状态置为 crashed）
    │   ├── ProcessStartError        500  进程无法拉起或启动后立即退出
    │   └── ConfigWriteError         500  apply 无法写入配置（不会继续重启）
    ├── ConfigGenerationError        422  生成配置时发现悬空出站引用
    ├── CatalogError                 502  节点/过滤器目录加载失败
    └── ProbeError                   503  状态探测失败（仅计数，不视为崩溃）
"""

from typing import List, Optional


class ManagerError(Exception):
    """所有管理器错误的基类"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": type(self).__name__}


class RuleStoreError(ManagerError):
    pass


class NotFoundError(RuleStoreError):
    status_code = 404

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} '{identifier}' 不存在")
        self.kind = kind
        self.identifier = identifier


class ValidationError(RuleStoreError):
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidOutboundError(RuleStoreError):
    status_code = 400

    def __init__(self, outbound: str, available: Optional[List[str]] = None):
        super().__init__(f"无效的出站 '{outbound}'")
        self.outbound = outbound
        self.available = list(available or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["available_outbounds"] = self.available
        return data


class PersistenceError(RuleStoreError):
    status_code = 500


class ProcessControlError(ManagerError):
    pass


class OperationInProgressError(ProcessControlError):
    status_code = 409

    def __init__(self, operation: Optional[str] = None):
        message = "已有操作正在执行"
        if operation:
            message += f": {operation}"
        super().__init__(message)
        self.operation = operation


class ProcessTimeoutError(ProcessControlError):
    status_code = 504

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} 超时（{timeout:g}s），进程状态未知")
        self.operation = operation
        self.timeout = timeout


class ProcessStartError(ProcessControlError):
    status_code = 500


class ConfigWriteError(ProcessControlError):
    status_code = 500


class ConfigGenerationError(ManagerError):
    status_code = 422

    def __init__(self, message: str, dangling: Optional[List[str]] = None,
                 conflicts: Optional[List[str]] = None):
        super().__init__(message)
        self.dangling = list(dangling or [])
        self.conflicts = list(conflicts or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["dangling"] = self.dangling
        if self.conflicts:
            data["conflicts"] = self.conflicts
        return data


class CatalogError(ManagerError):
    status_code = 502


class ProbeError(ManagerError):
    status_code = 503
