#!/usr/bin/env python3
"""
sing-box 进程控制器

状态机：
    Stopped --start()--> Starting --(健康信号)--> Running
    Running --stop()--> Stopping --(退出)--> Stopped
    Running --restart()--> Stopping --> Starting --> Running
    Running|Starting|Stopping --(意外退出)--> Crashed
    Crashed --start()--> Starting

同一时刻最多只有一个生命周期操作（start/stop/restart/reload/apply）在执行；
并发请求要么在 wait 时间内排队，要么直接以 OperationInProgressError 拒绝。
所有等待都有上限，超时后状态置为 Crashed（进程的真实结果未知）。
"""

import hashlib
import json
import os
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import requests

from log_config import get_logger
from manager_errors import (
    ConfigWriteError,
    OperationInProgressError,
    ProbeError,
    ProcessStartError,
    ProcessTimeoutError,
)
from manager_settings import ManagerSettings
from rule_models import STABLE_STATES, ProcessState

logger = get_logger("process_controller")

HEALTH_POLL_INTERVAL = 0.1
KILL_GRACE_SECONDS = 2.0
CHECK_TIMEOUT_SECONDS = 30
VERSION_TIMEOUT_SECONDS = 5
CLASH_API_TIMEOUT = 1.0

HealthCheck = Callable[[], bool]


@dataclass
class ProcessStatus:
    """对外报告的进程状态快照"""
    state: ProcessState
    pid: Optional[int] = None
    version: Optional[str] = None
    config_in_sync: bool = False
    operation: Optional[str] = None
    last_error: Optional[str] = None
    since: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "pid": self.pid,
            "version": self.version,
            "config_in_sync": self.config_in_sync,
            "operation": self.operation,
            "last_error": self.last_error,
            "since": self.since,
        }


@dataclass
class ApplyResult:
    """apply() 的结果：配置已写入，但重启可能失败（两者可以不一致）"""
    written: bool
    restarted: bool
    state: ProcessState
    config_path: str
    restart_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "written": self.written,
            "restarted": self.restarted,
            "state": self.state.value,
            "config_path": self.config_path,
            "restart_error": self.restart_error,
        }


def _file_digest(path: Path) -> Optional[str]:
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return None


class ProcessController:
    """sing-box 进程生命周期管理"""

    def __init__(self, settings: ManagerSettings, health_check: Optional[HealthCheck] = None):
        self.settings = settings
        self._health_check = health_check or self._default_health_check
        self._state_lock = threading.Lock()
        self._op_lock = threading.Lock()

        self._state = ProcessState.STOPPED
        self._since = time.time()
        self._operation: Optional[str] = None
        self._last_error: Optional[str] = None
        self._proc: Optional[subprocess.Popen] = None
        self._expected_exit = False
        self._loaded_digest: Optional[str] = None
        self._version: Optional[str] = None
        self._last_stable = ProcessStatus(state=ProcessState.STOPPED)

    # ============ 状态 ============

    @property
    def config_path(self) -> Path:
        return Path(self.settings.config_path).expanduser()

    @property
    def state(self) -> ProcessState:
        with self._state_lock:
            return self._state

    @property
    def busy(self) -> bool:
        return self._op_lock.locked()

    def status(self) -> ProcessStatus:
        """当前状态（可能是 Starting/Stopping 等中间状态），不阻塞"""
        with self._state_lock:
            return self._snapshot_locked()

    def probe(self) -> ProcessStatus:
        """供状态探测循环调用

        有生命周期操作在执行时直接返回最近的稳定状态，不等待；
        进程存活但健康检查失败时抛出 ProbeError，状态保持不变。
        """
        if self.busy:
            with self._state_lock:
                return self._last_stable

        with self._state_lock:
            proc = self._proc
            state = self._state
        if state == ProcessState.RUNNING and proc is not None and proc.poll() is None:
            try:
                healthy = self._health_check()
            except Exception as exc:
                raise ProbeError(f"健康检查异常: {exc}") from exc
            if not healthy:
                raise ProbeError("健康检查未通过")
        return self.status()

    def _snapshot_locked(self) -> ProcessStatus:
        running = self._state == ProcessState.RUNNING
        in_sync = running and self._loaded_digest is not None and \
            self._loaded_digest == _file_digest(self.config_path)
        return ProcessStatus(
            state=self._state,
            pid=self._proc.pid if (self._proc is not None and self._proc.poll() is None) else None,
            version=self._version if running else None,
            config_in_sync=in_sync,
            operation=self._operation,
            last_error=self._last_error,
            since=self._since,
        )

    def _set_state(self, state: ProcessState, error: Optional[str] = None) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
            self._since = time.time()
            if error is not None:
                self._last_error = error
            elif state == ProcessState.RUNNING:
                self._last_error = None
            if state in STABLE_STATES:
                self._last_stable = self._snapshot_locked()
        if previous != state:
            log = logger.error if state == ProcessState.CRASHED else logger.info
            log(f"sing-box state: {previous.value} -> {state.value}" + (f" ({error})" if error else ""))

    # ============ 操作串行化 ============

    def _acquire(self, operation: str, wait: Optional[float]) -> None:
        if wait is None:
            acquired = self._op_lock.acquire(blocking=False)
        else:
            acquired = self._op_lock.acquire(timeout=wait)
        if not acquired:
            with self._state_lock:
                current = self._operation
            raise OperationInProgressError(current)
        with self._state_lock:
            self._operation = operation

    def _release(self) -> None:
        with self._state_lock:
            self._operation = None
        self._op_lock.release()

    # ============ 生命周期 ============

    def start(self, wait: Optional[float] = None) -> ProcessStatus:
        """启动进程；Starting/Running 时为无操作，直接返回当前状态"""
        current = self.status()
        if current.state in (ProcessState.STARTING, ProcessState.RUNNING):
            return current

        self._acquire("start", wait)
        try:
            if self.state in (ProcessState.STARTING, ProcessState.RUNNING):
                return self.status()
            self._start_locked()
        finally:
            self._release()
        return self.status()

    def stop(self, wait: Optional[float] = None) -> ProcessStatus:
        """停止进程；Stopped/Stopping 时为无操作。Crashed 时清理残留子进程后置为 Stopped"""
        current = self.status()
        if current.state == ProcessState.STOPPING:
            return current
        if current.state == ProcessState.STOPPED and current.pid is None:
            return current

        self._acquire("stop", wait)
        try:
            self._stop_locked()
        finally:
            self._release()
        return self.status()

    def restart(self, wait: Optional[float] = None) -> ProcessStatus:
        """stop 后 start；不是原子操作，会经过 Stopping/Starting"""
        self._acquire("restart", wait)
        try:
            self._restart_locked()
        finally:
            self._release()
        return self.status()

    def reload(self, wait: Optional[float] = None) -> ProcessStatus:
        """Running 时发送 SIGHUP 热重载；平台不支持信号时退化为 restart；未运行时不做任何事"""
        self._acquire("reload", wait)
        try:
            if self.state != ProcessState.RUNNING:
                logger.info("sing-box is not running, reload skipped")
            elif not hasattr(signal, "SIGHUP"):
                logger.info("SIGHUP unavailable, reload degrades to restart")
                self._restart_locked()
            else:
                self._proc.send_signal(signal.SIGHUP)
                with self._state_lock:
                    self._loaded_digest = _file_digest(self.config_path)
                logger.info(f"Sent SIGHUP to sing-box (PID: {self._proc.pid})")
        finally:
            self._release()
        return self.status()

    def apply(self, config: Dict[str, Any], wait: Optional[float] = None) -> ApplyResult:
        """写入配置；进程 Running 时再 restart

        写入失败抛出 ConfigWriteError，不会尝试重启；
        重启失败只记录在结果中，已写入的配置不回滚。
        """
        self._acquire("apply", wait)
        try:
            self._write_config(config)
            restarted = False
            restart_error = None
            if self.state == ProcessState.RUNNING:
                try:
                    self._restart_locked()
                    restarted = True
                except (ProcessStartError, ProcessTimeoutError) as exc:
                    restart_error = exc.message
                    logger.error(f"Config written but restart failed: {exc.message}")
            return ApplyResult(
                written=True,
                restarted=restarted,
                state=self.state,
                config_path=str(self.config_path),
                restart_error=restart_error,
            )
        finally:
            self._release()

    def write_config(self, config: Dict[str, Any], wait: Optional[float] = None) -> Path:
        """只写入配置，不触碰进程"""
        self._acquire("write", wait)
        try:
            self._write_config(config)
        finally:
            self._release()
        return self.config_path

    def shutdown(self) -> None:
        """管理器退出时停止由本进程启动的 sing-box"""
        with self._state_lock:
            proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        try:
            self.stop(wait=self.settings.start_timeout + self.settings.stop_timeout)
        except (OperationInProgressError, ProcessTimeoutError) as exc:
            logger.error(f"Failed to stop sing-box on shutdown: {exc.message}")

    # ============ 内部实现（调用方持有操作锁） ============

    def _restart_locked(self) -> None:
        self._stop_locked()
        self._start_locked()

    def _start_locked(self) -> None:
        config_path = self.config_path
        if not config_path.exists():
            raise ProcessStartError(f"配置文件不存在: {config_path}，请先生成配置")

        self._kill_leftover()
        self._set_state(ProcessState.STARTING)

        log_file = self.settings.singbox_log_file
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(log_file, "ab") as log:
                proc = subprocess.Popen(
                    [self.settings.singbox_path, "run", "-c", str(config_path)],
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as exc:
            message = f"启动 sing-box 失败: {exc}"
            self._set_state(ProcessState.CRASHED, message)
            raise ProcessStartError(message) from exc

        with self._state_lock:
            self._proc = proc
            self._expected_exit = False
            self._loaded_digest = _file_digest(config_path)
        logger.info(f"sing-box launched (PID: {proc.pid}, config: {config_path})")
        threading.Thread(target=self._watch, args=(proc,), name="singbox-watcher", daemon=True).start()

        deadline = time.monotonic() + self.settings.start_timeout
        while time.monotonic() < deadline:
            code = proc.poll()
            if code is not None:
                message = f"sing-box 启动后立即退出 (exit code {code})"
                self._set_state(ProcessState.CRASHED, message)
                raise ProcessStartError(message)
            try:
                healthy = self._health_check()
            except Exception as exc:
                logger.debug(f"Health check not ready: {exc}")
                healthy = False
            if healthy:
                version = self._detect_version()
                with self._state_lock:
                    self._version = version
                self._set_state(ProcessState.RUNNING)
                return
            time.sleep(HEALTH_POLL_INTERVAL)

        self._set_state(ProcessState.CRASHED, f"启动超时（{self.settings.start_timeout:g}s）")
        raise ProcessTimeoutError("start", self.settings.start_timeout)

    def _stop_locked(self) -> None:
        with self._state_lock:
            proc = self._proc
        if proc is None or proc.poll() is not None:
            self._clear_process()
            self._set_state(ProcessState.STOPPED)
            return

        with self._state_lock:
            self._expected_exit = True
        self._set_state(ProcessState.STOPPING)

        proc.terminate()
        try:
            proc.wait(timeout=self.settings.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"sing-box did not exit within {self.settings.stop_timeout:g}s, sending SIGKILL")
            proc.kill()
            try:
                proc.wait(timeout=KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                self._set_state(ProcessState.CRASHED, f"停止超时（{self.settings.stop_timeout:g}s）")
                raise ProcessTimeoutError("stop", self.settings.stop_timeout) from None

        self._clear_process()
        self._set_state(ProcessState.STOPPED)

    def _clear_process(self) -> None:
        with self._state_lock:
            self._proc = None
            self._loaded_digest = None
            self._version = None

    def _kill_leftover(self) -> None:
        """Crashed（例如启动超时）后可能残留的子进程"""
        with self._state_lock:
            proc = self._proc
            self._expected_exit = True
        if proc is None or proc.poll() is not None:
            return
        logger.warning(f"Killing leftover sing-box process (PID: {proc.pid})")
        proc.kill()
        try:
            proc.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            raise ProcessTimeoutError("kill", KILL_GRACE_SECONDS) from None
        self._clear_process()

    def _watch(self, proc: subprocess.Popen) -> None:
        """等待子进程退出；非预期退出转为 Crashed"""
        code = proc.wait()
        with self._state_lock:
            unexpected = self._proc is proc and not self._expected_exit
        if unexpected:
            self._set_state(ProcessState.CRASHED, f"sing-box 意外退出 (exit code {code})")

    # ============ 配置写入 ============

    def _write_config(self, config: Dict[str, Any]) -> None:
        """原子写入配置文件（临时文件 + rename），可选先执行 sing-box check"""
        path = self.config_path
        tmp_path = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".config-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(config, f, indent=2, ensure_ascii=False)
            if self.settings.check_config:
                self._check_config(tmp_path)
            os.replace(tmp_path, path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as exc:
            logger.error(f"Failed to write config {path}: {exc}")
            raise ConfigWriteError(f"写入配置失败: {exc}") from exc
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
        logger.info(f"Config written: {path}")

    def _check_config(self, path: str) -> None:
        try:
            result = subprocess.run(
                [self.settings.singbox_path, "check", "-c", path],
                capture_output=True, text=True, timeout=CHECK_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ConfigWriteError(f"sing-box check 执行失败: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise ConfigWriteError(f"sing-box check 未通过: {detail}")

    # ============ 健康检查 ============

    def _clash_api_url(self, path: str) -> Optional[str]:
        if self.settings.clash_api_port <= 0:
            return None
        return f"http://127.0.0.1:{self.settings.clash_api_port}{path}"

    def _default_health_check(self) -> bool:
        """进程存活；启用 clash API 时还要求 GET /version 返回 200"""
        with self._state_lock:
            proc = self._proc
        if proc is None or proc.poll() is not None:
            return False
        url = self._clash_api_url("/version")
        if url is None:
            return True
        try:
            return requests.get(url, timeout=CLASH_API_TIMEOUT).status_code == 200
        except requests.RequestException:
            return False

    def _detect_version(self) -> Optional[str]:
        url = self._clash_api_url("/version")
        if url is not None:
            try:
                resp = requests.get(url, timeout=CLASH_API_TIMEOUT)
                if resp.ok:
                    return str(resp.json().get("version") or "") or None
            except (requests.RequestException, ValueError):
                logger.debug("Failed to read version from clash API")
        try:
            result = subprocess.run(
                [self.settings.singbox_path, "version"],
                capture_output=True, text=True, timeout=VERSION_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug(f"Failed to run sing-box version: {exc}")
            return None
        lines = result.stdout.strip().splitlines()
        if result.returncode != 0 or not lines:
            return None
        # "sing-box version 1.10.0"
        return lines[0].split()[-1]
