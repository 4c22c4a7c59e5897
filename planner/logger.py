"""
Daily planner 日志配置模块。

配置日志策略：
- logs/system.log: 常规操作日志 (INFO+)
- logs/error.log: 异常堆栈 (ERROR/CRITICAL)
- console: 仅用户有用的提示 (WARNING+)

使用 RotatingFileHandler 防止日志文件过大。
日志目录可通过 LIFE_PLANNER_LOG_DIR 覆盖。
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from planner.paths import get_logs_dir

ROOT_LOGGER_NAME = "life_planner"

# 日志配置常量 (经验值，可根据需要调整)
MAX_BYTES = 5 * 1024 * 1024  # 5MB
BACKUP_COUNT = 3  # 保留 3 个备份


def setup_logging(
    log_level: int = logging.INFO,
    console_level: int = logging.WARNING,
    logs_dir: Optional[Path] = None
) -> logging.Logger:
    """
    初始化日志系统。

    Args:
        log_level: 文件日志级别 (默认 INFO)
        console_level: 控制台日志级别 (默认 WARNING)
        logs_dir: 日志目录 (默认 get_logs_dir())

    Returns:
        配置好的 root logger
    """
    logs_dir = logs_dir or get_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)  # 捕获所有级别，由 handler 过滤

    # 清除现有 handlers (避免重复添加)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    file_format = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_format = logging.Formatter(
        "[%(levelname)s] %(message)s"
    )

    # 1. 系统日志 (INFO+)
    system_handler = RotatingFileHandler(
        logs_dir / "system.log",
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8"
    )
    system_handler.setLevel(log_level)
    system_handler.setFormatter(file_format)
    logger.addHandler(system_handler)

    # 2. 错误日志 (ERROR+)
    error_handler = RotatingFileHandler(
        logs_dir / "error.log",
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8"
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_format)
    logger.addHandler(error_handler)

    # 3. 控制台输出 (WARNING+)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取模块专用的 logger。

    Args:
        name: 模块名称，如 "chain_generator", "plan_builder"

    Returns:
        配置好的 logger 实例
    """
    if name:
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
    return logging.getLogger(ROOT_LOGGER_NAME)
