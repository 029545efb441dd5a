"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CORE_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
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


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 网络 ----
    http_timeout: float = Field(
        default=30.0,
        ge=1.0,
        description="连接超时（秒）；非流式请求的整体超时。流式主请求不设读超时",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="本地持久化根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 同步 ----
    conflict_strategy: Literal["merge", "local", "remote", "latest"] = Field(
        default="merge",
        description="冲突解决策略",
    )
    journal_key: str = Field(default="offline-changes", description="离线变更日志的存储键前缀")
    cache_key: str = Field(default="conversations", description="本地会话缓存的存储键前缀")

    # ---- 生成参数默认值 ----
    default_max_tokens: int = Field(default=2000, ge=1, description="未配置时的最大生成 token 数")
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="未配置时的生成温度")

    # ---- 标题生成 ----
    title_timeout: float = Field(default=8.0, gt=0.0, description="标题生成的软超时（秒），超时只放弃等待")
    title_max_width: int = Field(default=40, ge=4, description="标题最大显示宽度（宽字符按 2 计）")

    # ---- 翻译 ----
    translation_timeout: float = Field(default=30.0, gt=0.0, description="单次翻译请求的超时（秒）")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v!r}")
        return level

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
