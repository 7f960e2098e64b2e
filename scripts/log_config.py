#!/usr/bin/env python3
"""
日志配置

各模块只写 logger = logging.getLogger(__name__)，进程入口（CLI / API 服务）调用一次
setup_logging()。级别由环境变量决定：
- LOG_LEVEL: DEBUG / INFO / WARNING / ERROR / CRITICAL（WARN、FATAL 为别名）
- DEBUG: 未设置 LOG_LEVEL 时，1/true/yes/on 表示 DEBUG

API 服务用 uvicorn_log_config() 让 uvicorn 的访问日志与其它模块同一格式。
"""

import logging
import os
import sys
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DETAILED = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 订阅下载和 API 测试客户端的库日志只保留 WARNING 以上
NOISY_LOGGERS = ("urllib3", "requests", "httpx", "uvicorn.access")

_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}
_TRUTHY = ("1", "true", "yes", "on")

_configured = False


def resolve_log_level(value: Optional[str] = None) -> int:
    """日志级别名 → logging 常量

    value 为空时读 LOG_LEVEL，再退回 DEBUG 开关；无法识别的名称按 INFO 处理。
    """
    name = (value if value is not None else os.environ.get("LOG_LEVEL", "")).strip().upper()
    if not name:
        name = "DEBUG" if os.environ.get("DEBUG", "").strip().lower() in _TRUTHY else "INFO"
    name = _LEVEL_ALIASES.get(name, name)
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def quiet_noisy_loggers(level: int) -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def setup_logging(level: Optional[int] = None, detailed: bool = False, force: bool = False) -> logging.Logger:
    """配置 root logger，重复调用不生效（force=True 时重新配置）"""
    global _configured

    root = logging.getLogger()
    if _configured and not force:
        return root

    if level is None:
        level = resolve_log_level()
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT_DETAILED if detailed else LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    quiet_noisy_loggers(level)
    _configured = True

    root.debug(f"[log] level={logging.getLevelName(level)}")
    return root


def uvicorn_log_config(level: Optional[int] = None) -> Dict[str, Any]:
    """uvicorn.run(log_config=...) 使用的 dictConfig，格式与 setup_logging 一致"""
    level_name = logging.getLevelName(resolve_log_level() if level is None else level)
    formatter = {"format": LOG_FORMAT, "datefmt": DATE_FORMAT}
    handler = {"class": "logging.StreamHandler", "formatter": "default", "stream": "ext://sys.stderr"}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {"default": handler},
        "loggers": {
            "uvicorn": {"handlers": ["default"], "level": level_name, "propagate": False},
            "uvicorn.error": {"level": level_name},
            "uvicorn.access": {"handlers": ["default"], "level": "WARNING", "propagate": False},
        },
    }
