"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
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
        except Exception as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 接口相关配置 ----
    api_url: str = Field(
        default="https://api.openai.com/v1/chat/completions",
        description="流式 chat/completions 端点",
    )
    model: str = Field(default="gpt-3.5-turbo", description="请求体中的 model 字段")
    system_prompt: str = Field(
        default="你是 AI 人工智能助手。",
        description="发送前置于会话之前的 system 消息，不写入历史",
    )
    thinking_type: str = Field(default="disabled", description="请求体 thinking.type 字段")
    api_key: Optional[str] = Field(
        default=None,
        description="可选的初始 API Key，仅在本地凭据为空时导入",
    )
    http_timeout: Optional[float] = Field(
        default=60.0,
        ge=1.0,
        description="HTTP 超时时间（秒），None 表示不限制",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    credential_key: str = Field(default="api_key", description="凭据记录的键名")
    history_key: str = Field(default="chat_history", description="历史记录的键名")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip() or None
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("credential_key", "history_key")
    @classmethod
    def validate_record_key(cls, v: str) -> str:
        if not v or any(sep in v for sep in ("/", "\\")) or v in {".", ".."}:
            raise ValueError(f"Invalid storage key: {v!r}")
        return v

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


settings = Settings()
