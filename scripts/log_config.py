#!/usr/bin/env python3
"""
统一日志配置模块

通过环境变量控制全局日志级别：
- LOG_LEVEL: Python 日志级别 (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- DEBUG: 未设置 LOG_LEVEL 时，"1"/"true" 表示 DEBUG

使用方式：
    from log_config import setup_logging, get_logger

    # 在进程入口处调用一次（可选地写入数据目录下的日志文件）
    setup_logging(log_file=data_dir / "logs" / "manager.log")

    logger = get_logger(__name__)
    logger.info("Hello")
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DETAILED = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 日志文件轮转参数
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

# 噪音较大的第三方库
NOISY_LOGGERS = ("urllib3", "requests", "httpx", "uvicorn.access")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
    "FATAL": logging.CRITICAL,
}

_logging_configured = False


def get_log_level() -> int:
    """从环境变量获取日志级别（LOG_LEVEL 优先，其次 DEBUG 标志）"""
    level_str = os.environ.get("LOG_LEVEL", "").upper().strip()

    if not level_str:
        debug_flag = os.environ.get("DEBUG", "").lower().strip()
        level_str = "DEBUG" if debug_flag in ("1", "true", "yes", "on") else DEFAULT_LOG_LEVEL

    return _LEVELS.get(level_str, logging.INFO)


def setup_logging(
    level: Optional[int] = None,
    detailed: bool = False,
    log_file: Optional[Path] = None,
    force: bool = False,
) -> logging.Logger:
    """配置 root logger

    Args:
        level: 日志级别，None 表示从环境变量获取
        detailed: 是否使用详细格式（包含文件名和行号）
        log_file: 额外写入的日志文件（按大小轮转），None 表示只输出到 stderr
        force: 是否强制重新配置

    Returns:
        root logger
    """
    global _logging_configured

    if _logging_configured and not force:
        return logging.getLogger()

    if level is None:
        level = get_log_level()

    formatter = logging.Formatter(LOG_FORMAT_DETAILED if detailed else LOG_FORMAT, DATE_FORMAT)
    handlers = [logging.StreamHandler(sys.stderr)]

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        ))

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _logging_configured = True

    root = logging.getLogger()
    root.debug(f"Logging configured: level={logging.getLevelName(level)}, file={log_file}")
    return root


def get_logger(name: str) -> logging.Logger:
    """获取命名 logger；全局日志尚未配置时先以默认参数配置"""
    if not _logging_configured:
        setup_logging()
    return logging.getLogger(name)
