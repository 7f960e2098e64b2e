#!/usr/bin/env python3
"""初始化用户配置数据库（设置项与订阅列表）"""
import argparse
import os
import sqlite3
from pathlib import Path
from typing import List


# 用户数据库结构
USER_DB_SCHEMA = """
-- 设置表（键值对，ProxySettings 的持久化形式）
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- 订阅表
CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    url TEXT DEFAULT '',                  -- 订阅地址（手动订阅为空）
    is_manual INTEGER DEFAULT 0,          -- 1 = 手动填写的内容
    manual_content TEXT DEFAULT '',       -- 手动订阅原文（节点 JSON 或分享链接）
    use_original_config INTEGER DEFAULT 0,-- 1 = 直接使用订阅提供的完整配置
    config_path TEXT DEFAULT '',          -- 生成的配置文件路径
    backup_path TEXT DEFAULT '',          -- 配置备份路径（config_path + .bak）
    auto_update_minutes INTEGER DEFAULT 0,-- 自动更新间隔（分钟），0 = 不自动更新
    enable_shared_rules INTEGER DEFAULT 1,
    rule_sets TEXT DEFAULT '["default"]', -- JSON 数组：注入的规则集名称
    node_count INTEGER DEFAULT 0,
    upload INTEGER,                       -- subscription-userinfo 流量统计（字节）
    download INTEGER,
    total INTEGER,
    expire INTEGER,                       -- 到期时间（Unix 秒）
    last_update INTEGER DEFAULT 0,        -- 上次更新时间（Unix 毫秒）
    enabled INTEGER DEFAULT 1,
    is_active INTEGER DEFAULT 0,
    sort_order INTEGER DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_subscriptions_active ON subscriptions(is_active);
CREATE INDEX IF NOT EXISTS idx_subscriptions_enabled ON subscriptions(enabled, sort_order);
"""


def init_user_db(db_path: Path) -> sqlite3.Connection:
    """初始化用户数据库结构

    Args:
        db_path: 数据库文件路径

    Returns:
        数据库连接
    """
    print(f"初始化用户数据库: {db_path}")
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.executescript(USER_DB_SCHEMA)
    conn.commit()
    return conn


def migrate_subscriptions_shared_rules(conn: sqlite3.Connection) -> List[str]:
    """为旧版 subscriptions 表补充 enable_shared_rules / rule_sets 列"""
    cursor = conn.cursor()
    columns = {row[1] for row in cursor.execute("PRAGMA table_info(subscriptions)").fetchall()}

    added = []
    if "enable_shared_rules" not in columns:
        cursor.execute("ALTER TABLE subscriptions ADD COLUMN enable_shared_rules INTEGER DEFAULT 1")
        added.append("enable_shared_rules")
    if "rule_sets" not in columns:
        cursor.execute("""ALTER TABLE subscriptions ADD COLUMN rule_sets TEXT DEFAULT '["default"]'""")
        added.append("rule_sets")

    if added:
        conn.commit()
        print(f"✓ subscriptions 表新增列: {', '.join(added)}")
    return added


def init_default_settings(conn: sqlite3.Connection) -> int:
    """写入 ProxySettings 的默认值（已有的键保持不变），返回新写入的键数"""
    from db_helper import ProxySettings

    cursor = conn.cursor()
    before = conn.total_changes
    cursor.executemany(
        "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
        list(ProxySettings().to_settings().items()),
    )
    conn.commit()
    written = conn.total_changes - before
    print(f"✓ 默认设置: 新增 {written} 项")
    return written


def main():
    parser = argparse.ArgumentParser(description="初始化用户配置数据库")
    parser.add_argument("config_dir", help="配置目录路径")
    parser.add_argument("--db", help="数据库路径（默认 <config_dir>/user-config.db 或 USER_DB_PATH）")
    args = parser.parse_args()

    user_db_path = Path(args.db or os.environ.get("USER_DB_PATH") or Path(args.config_dir) / "user-config.db")
    print(f"配置目录: {args.config_dir}")

    conn = init_user_db(user_db_path)
    try:
        migrate_subscriptions_shared_rules(conn)
        init_default_settings(conn)
        settings_count = conn.execute("SELECT COUNT(*) FROM settings").fetchone()[0]
        subscriptions_count = conn.execute("SELECT COUNT(*) FROM subscriptions").fetchone()[0]
    finally:
        conn.close()

    print("-" * 40)
    print(f"✅ 用户数据库就绪: {user_db_path}")
    print(f"   设置项 {settings_count}，订阅 {subscriptions_count}")


if __name__ == "__main__":
    main()
