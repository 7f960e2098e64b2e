#!/usr/bin/env python3
"""
数据库访问辅助模块

user-config.db 保存两类用户数据：
- settings: 键值对设置（端口、DNS、TUN 等），读取时组装为 ProxySettings
- subscriptions: 订阅列表及其元数据
"""
import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from init_user_db import USER_DB_SCHEMA

logger = logging.getLogger(__name__)

DEFAULT_USER_DB_PATH = os.environ.get("USER_DB_PATH", "/etc/sing-box/user-config.db")

DEFAULT_SYSTEM_PROXY_BYPASS = [
    "localhost", "127.*", "10.*", "172.16.*", "172.17.*", "172.18.*", "172.19.*",
    "172.2*", "172.30.*", "172.31.*", "192.168.*", "<local>",
]


def validate_string_list(data: Any, field_name: str = "field") -> Optional[List[str]]:
    """验证字符串列表

    Args:
        data: 解析后的 JSON 数据
        field_name: 字段名（用于日志）

    Returns:
        验证通过返回原数据，否则返回 None
    """
    if data is None:
        return None
    if not isinstance(data, list):
        logger.warning(f"{field_name} should be a list, got {type(data).__name__}")
        return None
    for i, val in enumerate(data):
        if not isinstance(val, str):
            logger.warning(f"{field_name}[{i}] should be string, got {type(val).__name__}")
            return None
    return data


@dataclass
class ProxySettings:
    """代理相关的用户设置（配置生成时的覆盖项来源）"""
    mixed_port: int = 7890
    api_port: int = 9090
    # DNS
    dns_proxy: str = "1.1.1.1"
    dns_cn: str = "223.5.5.5"
    dns_resolver: str = "223.5.5.5"
    dns_strategy: str = "prefer_ipv4"
    dns_hijack: bool = True
    # TUN
    tun_enabled: bool = False
    tun_ipv4: str = "172.19.0.1/30"
    tun_ipv6: str = "fdfe:dcba:9876::1/126"
    tun_enable_ipv6: bool = False
    tun_stack: str = "mixed"
    tun_mtu: int = 1500
    tun_auto_route: bool = True
    tun_strict_route: bool = True
    # 系统代理
    system_proxy_enabled: bool = False
    system_proxy_bypass: List[str] = field(default_factory=lambda: list(DEFAULT_SYSTEM_PROXY_BYPASS))
    # 路由
    block_ads: bool = False
    enable_app_groups: bool = False
    urltest_url: str = "http://cp.cloudflare.com/generate_204"
    default_outbound: str = "manual"
    download_detour: str = "direct"

    @property
    def normalized_default_outbound(self) -> str:
        """默认出站组 tag（auto 或 manual）"""
        return "auto" if self.default_outbound == "auto" else "manual"

    @property
    def normalized_download_detour(self) -> str:
        """远程规则集下载出站（manual 或 direct）"""
        return "manual" if self.download_detour == "manual" else "direct"

    @classmethod
    def from_settings(cls, values: Dict[str, str]) -> "ProxySettings":
        """从 settings 表的字符串键值构造，无法解析的值使用默认值"""
        settings = cls()
        for f in fields(cls):
            raw = values.get(f.name)
            if raw is None:
                continue
            current = getattr(settings, f.name)
            try:
                if isinstance(current, bool):
                    value: Any = str(raw).strip().lower() in ("1", "true", "yes", "on")
                elif isinstance(current, int):
                    value = int(raw)
                elif isinstance(current, list):
                    value = validate_string_list(json.loads(raw), f.name)
                    if value is None:
                        continue
                else:
                    value = str(raw)
            except (TypeError, ValueError) as e:
                logger.warning(f"Invalid setting {f.name}={raw!r}, using default: {e}")
                continue
            setattr(settings, f.name, value)
        return settings

    def to_settings(self) -> Dict[str, str]:
        """转换为 settings 表的字符串键值"""
        values = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool):
                values[f.name] = "1" if value else "0"
            elif isinstance(value, list):
                values[f.name] = json.dumps(value, ensure_ascii=False)
            else:
                values[f.name] = str(value)
        return values


# 订阅表中需要 JSON 编解码 / 布尔转换的列
SUBSCRIPTION_JSON_FIELDS = ("rule_sets",)
SUBSCRIPTION_BOOL_FIELDS = ("is_manual", "use_original_config", "enable_shared_rules", "enabled", "is_active")
SUBSCRIPTION_FIELDS = {
    "name", "url", "is_manual", "manual_content", "use_original_config",
    "config_path", "backup_path", "auto_update_minutes", "enable_shared_rules",
    "rule_sets", "node_count", "upload", "download", "total", "expire",
    "last_update", "enabled", "is_active", "sort_order",
}


class UserDatabase:
    """用户配置数据库（读写）

    使用线程本地存储缓存连接，API 服务的工作线程各自持有独立连接。
    """

    def __init__(self, db_path: str):
        """
        初始化用户数据库

        Args:
            db_path: 数据库文件路径
        """
        self.db_path = db_path
        self._local = threading.local()

    def _get_cached_conn(self):
        """获取当前线程的缓存连接"""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30.0
            )
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            logger.debug(f"Created new database connection for thread {threading.current_thread().name}")
        return self._local.conn

    @contextmanager
    def _get_conn(self):
        """获取数据库连接（上下文管理器，退出时不关闭以便复用）"""
        yield self._get_cached_conn()

    def close_connection(self):
        """关闭当前线程的缓存连接"""
        if hasattr(self._local, 'conn') and self._local.conn is not None:
            try:
                self._local.conn.close()
                logger.debug(f"Closed database connection for thread {threading.current_thread().name}")
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection: {e}")
            finally:
                self._local.conn = None

    @contextmanager
    def _transaction(self):
        """事务上下文管理器：成功提交，异常回滚

        Usage:
            with db._transaction() as (conn, cursor):
                cursor.execute("UPDATE ...")
        """
        conn = self._get_cached_conn()
        cursor = conn.cursor()
        try:
            yield conn, cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def ensure_schema(self) -> None:
        """创建缺失的表（幂等）"""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._get_conn() as conn:
            conn.executescript(USER_DB_SCHEMA)
            conn.commit()

    def get_statistics(self) -> Dict[str, int]:
        """获取用户数据库统计信息"""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            return {
                "settings_count": cursor.execute("SELECT COUNT(*) FROM settings").fetchone()[0],
                "subscriptions_count": cursor.execute("SELECT COUNT(*) FROM subscriptions").fetchone()[0],
                "active_subscriptions_count": cursor.execute(
                    "SELECT COUNT(*) FROM subscriptions WHERE is_active = 1").fetchone()[0],
            }

    # ============ 设置管理 ============

    def get_setting(self, key: str, default: str = None) -> Optional[str]:
        """获取设置值"""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            row = cursor.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
            return row[0] if row else default

    def set_setting(self, key: str, value: str) -> bool:
        """设置或更新设置值"""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT OR REPLACE INTO settings (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
            """, (key, value))
            conn.commit()
            return True

    def delete_setting(self, key: str) -> bool:
        """删除设置项"""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM settings WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount > 0

    def get_all_settings(self) -> Dict[str, str]:
        """获取所有设置"""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            rows = cursor.execute("SELECT key, value FROM settings").fetchall()
            return {row[0]: row[1] for row in rows}

    def get_proxy_settings(self) -> ProxySettings:
        """读取代理设置（缺失项使用默认值）"""
        return ProxySettings.from_settings(self.get_all_settings())

    def save_proxy_settings(self, settings: ProxySettings) -> bool:
        """保存全部代理设置"""
        with self._transaction() as (conn, cursor):
            cursor.executemany("""
                INSERT OR REPLACE INTO settings (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
            """, list(settings.to_settings().items()))
        return True

    # ============ 订阅管理 ============

    def _row_to_subscription(self, columns: List[str], row) -> Dict[str, Any]:
        item = dict(zip(columns, row))
        for json_field in SUBSCRIPTION_JSON_FIELDS:
            raw = item.get(json_field)
            parsed = None
            if raw:
                try:
                    parsed = validate_string_list(json.loads(raw), json_field)
                except (json.JSONDecodeError, TypeError) as e:
                    logger.debug(f"Failed to parse {json_field} JSON for {item.get('id', 'unknown')}: {e}")
            item[json_field] = parsed if parsed is not None else ["default"]
        for bool_field in SUBSCRIPTION_BOOL_FIELDS:
            if bool_field in item:
                item[bool_field] = bool(item[bool_field])
        return item

    def get_subscriptions(self, enabled_only: bool = False) -> List[Dict]:
        """获取订阅列表（按 sort_order、创建时间排序）"""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            query = "SELECT * FROM subscriptions"
            if enabled_only:
                query += " WHERE enabled = 1"
            query += " ORDER BY sort_order, created_at, id"
            rows = cursor.execute(query).fetchall()
            columns = [desc[0] for desc in cursor.description]
            return [self._row_to_subscription(columns, row) for row in rows]

    def get_subscription(self, sub_id: str) -> Optional[Dict]:
        """根据 ID 获取订阅"""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            row = cursor.execute(
                "SELECT * FROM subscriptions WHERE id = ?", (sub_id,)
            ).fetchone()
            if not row:
                return None
            columns = [desc[0] for desc in cursor.description]
            return self._row_to_subscription(columns, row)

    def get_active_subscription(self) -> Optional[Dict]:
        """获取当前激活的订阅"""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            row = cursor.execute(
                "SELECT * FROM subscriptions WHERE is_active = 1 LIMIT 1"
            ).fetchone()
            if not row:
                return None
            columns = [desc[0] for desc in cursor.description]
            return self._row_to_subscription(columns, row)

    def add_subscription(self, sub_id: str, name: str, **kwargs) -> bool:
        """添加订阅

        Args:
            sub_id: 订阅 ID
            name: 订阅名称
            **kwargs: subscriptions 表的其他列

        Returns:
            是否插入成功（ID 重复返回 False）
        """
        columns = ["id", "name"]
        values: List[Any] = [sub_id, name]
        for key, value in kwargs.items():
            if key not in SUBSCRIPTION_FIELDS or key == "name":
                continue
            columns.append(key)
            values.append(self._encode_value(key, value))

        placeholders = ", ".join("?" for _ in columns)
        try:
            with self._get_conn() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"INSERT INTO subscriptions ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
                conn.commit()
                return True
        except sqlite3.IntegrityError as e:
            logger.warning(f"Subscription {sub_id} already exists: {e}")
            return False

    def update_subscription(self, sub_id: str, **kwargs) -> bool:
        """更新订阅字段"""
        updates = []
        values = []
        for key, value in kwargs.items():
            if key in SUBSCRIPTION_FIELDS:
                updates.append(f"{key} = ?")
                values.append(self._encode_value(key, value))
        if not updates:
            return False
        updates.append("updated_at = CURRENT_TIMESTAMP")
        values.append(sub_id)
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(f"""
                UPDATE subscriptions SET {", ".join(updates)} WHERE id = ?
            """, values)
            conn.commit()
            return cursor.rowcount > 0

    def delete_subscription(self, sub_id: str) -> bool:
        """删除订阅"""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM subscriptions WHERE id = ?", (sub_id,))
            conn.commit()
            return cursor.rowcount > 0

    def set_active_subscription(self, sub_id: Optional[str]) -> bool:
        """设置唯一的激活订阅，sub_id 为 None 时全部取消激活"""
        if sub_id is not None and self.get_subscription(sub_id) is None:
            return False
        with self._transaction() as (conn, cursor):
            cursor.execute("UPDATE subscriptions SET is_active = 0 WHERE is_active = 1")
            if sub_id is not None:
                cursor.execute(
                    "UPDATE subscriptions SET is_active = 1, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (sub_id,),
                )
        return True

    @staticmethod
    def _encode_value(key: str, value: Any) -> Any:
        if key in SUBSCRIPTION_JSON_FIELDS:
            return json.dumps(list(value or []), ensure_ascii=False)
        if key in SUBSCRIPTION_BOOL_FIELDS:
            return 1 if value else 0
        return value


# 全局数据库实例
_db_manager: Optional[UserDatabase] = None


def get_db(user_path: Optional[str] = None) -> UserDatabase:
    """获取用户数据库（单例模式）

    Args:
        user_path: 数据库文件路径，默认取 USER_DB_PATH 环境变量

    注意: 首次调用的参数会被缓存，后续调用如果使用不同路径会记录警告。
    """
    global _db_manager
    user_path = str(user_path or DEFAULT_USER_DB_PATH)
    if _db_manager is None:
        _db_manager = UserDatabase(user_path)
        _db_manager.ensure_schema()
    elif _db_manager.db_path != user_path:
        logger.warning(f"[db] get_db called with different path, using cached database. "
                       f"Requested: {user_path}, cached: {_db_manager.db_path}")
    return _db_manager
