#!/usr/bin/env python3
"""
配置协调器

维护 last_applied_version：规则存储每次提交新版本后，若 auto_apply 开启且
当前版本与 last_applied_version 不同，就在后台线程中生成配置并调用 controller.apply()。

- last_applied_version 取发起 apply 时捕获的版本（而不是完成时的最新版本）；
  apply 期间到达的新提交会再次唤醒后台线程，由下一轮处理，不会丢失
- 配置写入成功即推进 last_applied_version；写入或生成失败时记录错误，
  同一版本不会自动重试，直到版本号或目录输入再次变化
- auto_apply 关闭时只报告 stale，由操作者手动 apply
- 节点目录刷新后调用 mark_inputs_changed()，即使版本号不变也视为需要 apply
"""

import threading
import time
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from config_builder import build_config
from log_config import get_logger
from manager_errors import ManagerError, OperationInProgressError
from manager_settings import ManagerSettings
from node_catalog import NodeCatalog
from process_controller import ApplyResult, ProcessController
from rule_models import Filter, Node
from rule_store import EffectiveRule, RuleStore

logger = get_logger("reconciler")

ConfigBuilder = Callable[[ManagerSettings, Sequence[Node], Sequence[Filter], Sequence[EffectiveRule]], Dict[str, Any]]


class ReconciliationCoordinator:
    """规则版本与运行中进程之间的协调"""

    def __init__(
        self,
        settings: ManagerSettings,
        store: RuleStore,
        catalog: NodeCatalog,
        controller: ProcessController,
        builder: ConfigBuilder = build_config,
    ):
        self.settings = settings
        self.store = store
        self.catalog = catalog
        self.controller = controller
        self._builder = builder

        self._lock = threading.Lock()
        self._synced = threading.Condition(self._lock)
        # 同一时刻只有一次 apply（保证 last_applied_version 与磁盘配置一致）
        self._apply_lock = threading.Lock()

        self._last_applied_version = 0
        self._inputs_generation = 0
        self._applied_inputs_generation = 0
        self._failed_key: Optional[Tuple[int, int]] = None
        self._last_error: Optional[str] = None
        self._last_result: Optional[ApplyResult] = None
        self._last_applied_at: Optional[float] = None
        self._apply_count = 0

        self._wakeup = threading.Event()
        self._shutdown_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        store.subscribe(self._on_version)

    # ============ 状态 ============

    @property
    def last_applied_version(self) -> int:
        with self._lock:
            return self._last_applied_version

    @property
    def auto_apply(self) -> bool:
        return bool(self.settings.auto_apply)

    def is_stale(self) -> bool:
        version = self.store.version
        with self._lock:
            return self._stale_locked(version)

    def _stale_locked(self, version: int) -> bool:
        return (version != self._last_applied_version
                or self._inputs_generation != self._applied_inputs_generation)

    def status(self) -> Dict[str, Any]:
        version = self.store.version
        with self._lock:
            return {
                "version": version,
                "last_applied_version": self._last_applied_version,
                "stale": self._stale_locked(version),
                "inputs_changed": self._inputs_generation != self._applied_inputs_generation,
                "auto_apply": self.auto_apply,
                "applying": self._apply_lock.locked(),
                "apply_count": self._apply_count,
                "last_applied_at": self._last_applied_at,
                "last_error": self._last_error,
                "last_result": self._last_result.to_dict() if self._last_result else None,
            }

    def wait_until_synced(self, timeout: float) -> bool:
        """阻塞直到 last_applied_version 追上当前版本（最多 timeout 秒）"""
        deadline = time.monotonic() + timeout
        with self._synced:
            while self._stale_locked(self.store.version):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._synced.wait(remaining)
            return True

    # ============ 触发 ============

    def _on_version(self, version: int) -> None:
        if self.auto_apply:
            logger.debug(f"Rule version {version} committed, scheduling reconciliation")
            self._wakeup.set()

    def mark_inputs_changed(self) -> None:
        """节点/过滤器目录变化（版本号不变，但生成的配置会变）"""
        with self._lock:
            self._inputs_generation += 1
        if self.auto_apply:
            self._wakeup.set()

    def wakeup(self) -> None:
        self._wakeup.set()

    # ============ 生成与应用 ============

    def render(self) -> Tuple[int, Dict[str, Any]]:
        """生成 (版本号, 配置)；无副作用"""
        version, rules = self.store.snapshot()
        config = self._builder(self.settings, self.catalog.nodes(), self.catalog.filters(), rules)
        return version, config

    def generate(self) -> str:
        """只写入配置文件：不重启进程，也不推进 last_applied_version"""
        _, config = self.render()
        return str(self.controller.write_config(config))

    def reconcile_once(self) -> Optional[ApplyResult]:
        """一轮协调；无需 apply 时返回 None"""
        if not self.auto_apply:
            return None
        version = self.store.version
        with self._lock:
            if not self._stale_locked(version):
                return None
            if self._failed_key == (version, self._inputs_generation):
                return None
        wait = self.settings.start_timeout + self.settings.stop_timeout
        return self._apply(wait=wait, reason="auto")

    def apply_now(self) -> ApplyResult:
        """操作者手动 apply；已有 apply 在执行时抛出 OperationInProgressError"""
        return self._apply(wait=None, reason="manual")

    def _apply(self, wait: Optional[float], reason: str) -> ApplyResult:
        if wait is None:
            acquired = self._apply_lock.acquire(blocking=False)
        else:
            acquired = self._apply_lock.acquire(timeout=wait)
        if not acquired:
            raise OperationInProgressError("apply")

        try:
            with self._lock:
                inputs_generation = self._inputs_generation
            version, rules = self.store.snapshot()
            logger.info(f"Applying config version {version} ({reason})")
            try:
                config = self._builder(self.settings, self.catalog.nodes(), self.catalog.filters(), rules)
                result = self.controller.apply(config, wait=wait)
            except OperationInProgressError:
                raise
            except ManagerError as e:
                with self._lock:
                    self._failed_key = (version, inputs_generation)
                    self._last_error = e.message
                logger.error(f"Apply of version {version} failed: {e.message}")
                raise

            with self._synced:
                self._last_applied_version = version
                self._applied_inputs_generation = inputs_generation
                self._failed_key = None
                self._last_error = result.restart_error
                self._last_result = result
                self._last_applied_at = time.time()
                self._apply_count += 1
                self._synced.notify_all()
            logger.info(f"Config version {version} applied (restarted={result.restarted}, "
                        f"state={result.state.value})")
            return result
        finally:
            self._apply_lock.release()

    # ============ 后台线程 ============

    def run(self) -> None:
        """后台协调循环；除事件唤醒外，每个探测周期也会检查一次"""
        logger.info("Reconciliation worker started")
        # 启动时检查一次（新系统版本号为 1，last_applied_version 为 0）
        self._wakeup.set()
        while not self._shutdown_event.is_set():
            self._wakeup.wait(timeout=self.settings.probe_interval)
            if self._shutdown_event.is_set():
                break
            # 先清除再处理：apply 期间到达的提交会重新置位
            self._wakeup.clear()
            try:
                self.reconcile_once()
            except OperationInProgressError as e:
                logger.info(f"Reconciliation deferred: {e.message}")
            except ManagerError:
                # 已记录在 last_error
                pass
            except Exception:
                logger.exception("Reconciliation pass failed")
        logger.info("Reconciliation worker stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._shutdown_event.clear()
        self._thread = threading.Thread(target=self.run, name="reconciler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._shutdown_event.set()
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
