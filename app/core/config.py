"""
app.core.config
~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")

OverflowPolicy = Literal["drop_oldest", "drop_new"]


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Room Relay", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=3000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── 传输层（透传给 uvicorn / CORS）────────────────────────────────
    WS_PING_INTERVAL: float = Field(default=5.0, description="WebSocket 心跳间隔（秒）")
    WS_PING_TIMEOUT: float = Field(default=5.0, description="WebSocket 心跳超时（秒）")
    CORS_ORIGINS: list[str] = Field(
        default=["*"],
        description="允许的跨域来源，``*`` 表示全部放行",
    )

    # ── 房间中继 ──────────────────────────────────────────────────────
    DEFAULT_ROOM: str = Field(
        default="_general",
        description="连接未加入任何房间时，断开事件落到的默认房间",
    )
    REPLAY_MAX_ENTRIES: int = Field(
        default=50,
        ge=0,
        description="加入房间时回放日志的最大行数上限",
    )

    # ── 事件日志 ──────────────────────────────────────────────────────
    LOG_DIR: str = Field(default="logs", description="房间事件日志目录")
    EVENT_LOG_QUEUE_MAX: int = Field(
        default=10000,
        ge=1,
        description="待写入日志队列的最大长度",
    )
    EVENT_LOG_OVERFLOW_POLICY: OverflowPolicy = Field(
        default="drop_oldest",
        description="日志队列溢出策略：drop_oldest / drop_new",
    )

    # ── 下行发送 ──────────────────────────────────────────────────────
    WS_SEND_QUEUE_MAX: int = Field(
        default=256,
        ge=1,
        description="每个连接的下行发送队列长度",
    )
    WS_SEND_OVERFLOW_POLICY: Literal["drop_oldest", "drop_new", "disconnect"] = Field(
        default="drop_oldest",
        description="下行队列溢出策略：drop_oldest / drop_new / disconnect",
    )

    # ── 限流 ──────────────────────────────────────────────────────────
    WS_RATE_LIMIT_INTERVAL: float = Field(
        default=0.0,
        ge=0.0,
        description="同一连接两次广播之间的最小间隔（秒），0 表示不限流",
    )
    API_RATE_LIMIT: str = Field(
        default="10/second",
        description="REST 接口限流规则（slowapi 语法）",
    )

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果 .env 中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有跨域来源。"""
        return "*" in self.CORS_ORIGINS


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
