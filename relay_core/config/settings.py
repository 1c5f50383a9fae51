"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("RELAY_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class RelaySettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 推理后端 ----
    default_provider: str = Field(
        default="workers_ai",
        description="默认使用的推理后端名称",
    )
    default_model: str = Field(
        default="chat",
        description="逻辑模型名，由 registry 映射为具体后端模型",
    )

    # Cloudflare Workers AI
    workers_ai_account_id: Optional[str] = Field(default=None, description="Cloudflare 账户 ID")
    workers_ai_api_token: Optional[str] = Field(default=None, description="Workers AI API Token")
    workers_ai_base_url: str = Field(
        default="https://api.cloudflare.com/client/v4",
        description="Workers AI REST 基础URL",
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_idle_timeout: float = Field(
        default=60.0,
        gt=0,
        description="流式响应在无数据、无结束信号时的最长等待（秒）",
    )

    # ---- 会话存储 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    max_stored_messages: int = Field(default=50, ge=1, le=1000, description="每个身份保留的最大消息数")
    max_context_messages: int = Field(default=15, ge=1, le=100, description="发送给模型的最大上下文消息数")
    history_cache_size: int = Field(default=256, ge=1, description="进程内缓存的会话数量上限")
    system_prompt: Optional[str] = Field(
        default=None,
        description="覆盖内置的系统提示词；为空时读取 prompts 目录中的文件",
    )

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 服务端 ----
    host: str = Field(default="127.0.0.1", description="服务监听地址")
    port: int = Field(default=8787, ge=1, le=65535, description="服务监听端口")

    # ---- 客户端重连 ----
    relay_url: str = Field(default="http://127.0.0.1:8787", description="中继服务地址（客户端使用）")
    reconnect_max_attempts: int = Field(default=5, ge=0, le=50, description="断线后最大重连次数")
    reconnect_base_delay: float = Field(default=1.0, gt=0, description="重连基础延迟（秒），按次数线性递增")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("workers_ai_api_token")
    @classmethod
    def validate_api_token(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API token seems too short")
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> "RelaySettings":
        # 保留窗口必须覆盖上下文窗口
        if self.max_stored_messages < self.max_context_messages:
            raise ValueError("max_stored_messages must be >= max_context_messages")
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = RelaySettings()
