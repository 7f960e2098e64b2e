#!/usr/bin/env python3
"""sing-box 配置文件读写

- 原子写入（临时文件 + os.replace）
- 保存成功后整文件复制为 <path>.bak，回滚时用备份覆盖当前配置
- 当前生效配置路径的解析：外部解析器（当前订阅）→ 显式设置 → 默认 config.json
"""

import json
import logging
import os
import re
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(os.environ.get("SING_BOX_CONFIG_DIR", "/etc/sing-box"))
DEFAULT_CONFIG_NAME = "config.json"
SUBSCRIPTION_CONFIG_DIR_NAME = "subscriptions"
BACKUP_SUFFIX = ".bak"

PathLike = Union[str, Path]


def write_json_atomic(path: Path, data: Any) -> None:
    """原子写入 JSON 文件，失败时清理临时文件并向上抛出 OSError"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_path, str(path))
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def sanitize_name(name: str) -> str:
    """订阅名 → 文件名片段（小写、非 [a-z0-9-_] 替换为 -）"""
    safe = (name or "").lower()
    safe = re.sub(r"[^a-z0-9\-_]+", "-", safe)
    safe = re.sub(r"-+", "-", safe).strip("-")
    return safe or "subscription"


def generate_config_file_name(name: str) -> str:
    """<sanitized-name>-<epoch-ms>.json"""
    return f"{sanitize_name(name)}-{int(time.time() * 1000)}.json"


def backup_path_for(path: PathLike) -> Path:
    return Path(f"{path}{BACKUP_SUFFIX}")


class ConfigRepository:
    """配置文档仓库"""

    def __init__(
        self,
        config_dir: Optional[PathLike] = None,
        active_path_resolver: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.config_dir = Path(config_dir) if config_dir else CONFIG_DIR
        self._active_path_resolver = active_path_resolver
        self._active_path: Optional[Path] = None

    @property
    def default_config_path(self) -> Path:
        return self.config_dir / DEFAULT_CONFIG_NAME

    @property
    def subscription_config_dir(self) -> Path:
        return self.config_dir / SUBSCRIPTION_CONFIG_DIR_NAME

    def set_active_path_resolver(self, resolver: Optional[Callable[[], Optional[str]]]) -> None:
        self._active_path_resolver = resolver

    def set_active_config_path(self, path: Optional[PathLike]) -> None:
        self._active_path = Path(path) if path else None

    def get_active_config_path(self) -> Optional[Path]:
        """当前生效配置路径；都没有时返回 None"""
        if self._active_path_resolver is not None:
            resolved = self._active_path_resolver()
            if resolved:
                return Path(resolved)
        if self._active_path is not None:
            return self._active_path
        if self.default_config_path.exists():
            return self.default_config_path
        return None

    def new_subscription_config_path(self, name: str) -> Path:
        return self.subscription_config_dir / generate_config_file_name(name)

    def read_config(self, path: PathLike) -> Tuple[Optional[Dict[str, Any]], str]:
        """读取配置

        Returns:
            (配置, 错误信息)；文件不可读、不是 JSON 或根不是对象时配置为 None
        """
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"[config] 读取配置失败 {path}: {e}")
            return None, str(e)
        if not isinstance(data, dict):
            logger.warning(f"[config] 配置根节点不是对象: {path}")
            return None, "root is not a JSON object"
        return data, ""

    def load_config(self, path: PathLike) -> Optional[Dict[str, Any]]:
        config, _ = self.read_config(path)
        return config

    def save_config(self, path: PathLike, config: Dict[str, Any], backup: bool = True) -> Tuple[bool, str]:
        """原子写入配置；写入成功后复制一份 .bak

        备份复制失败只记录警告，不影响保存结果。
        """
        path = Path(path)
        try:
            write_json_atomic(path, config)
        except OSError as e:
            logger.error(f"[config] 写入配置失败 {path}: {e}")
            return False, str(e)
        logger.info(f"[config] 已保存配置: {path}")

        if backup:
            try:
                shutil.copyfile(str(path), str(backup_path_for(path)))
            except OSError as e:
                logger.warning(f"[config] 备份配置失败 {path}: {e}")
        return True, ""

    def rollback_config(self, path: PathLike) -> Tuple[bool, str]:
        """用 .bak 覆盖当前配置"""
        path = Path(path)
        backup = backup_path_for(path)
        if not path.exists():
            return False, f"Config not found: {path}"
        if not backup.exists():
            return False, f"Backup not found: {backup}"
        try:
            path.unlink()
            shutil.copyfile(str(backup), str(path))
        except OSError as e:
            logger.error(f"[config] 回滚失败 {path}: {e}")
            return False, str(e)
        logger.info(f"[config] 已回滚配置: {path}")
        return True, ""

    def delete_config(self, path: Optional[PathLike]) -> bool:
        """删除配置及其 .bak"""
        if not path:
            return False
        path = Path(path)
        for target in (path, backup_path_for(path)):
            try:
                if target.exists():
                    target.unlink()
            except OSError as e:
                logger.warning(f"[config] 删除失败 {target}: {e}")
        return True
