"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
模型路径与上下文容量属于部署期配置，运行期不做协商。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from platformdirs import user_data_dir, user_log_dir
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


APP_NAME = "CleanLLM"


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CLEANLLM_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if path in seen:
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

    # ---- 模型与推理上下文 ----
    model_path: str = Field(
        default_factory=lambda: str(Path(user_data_dir(APP_NAME, appauthor=False)) / "models" / "model.gguf"),
        description="GGUF 模型文件路径",
    )
    model_family: str = Field(
        default="chatml",
        description="模型家族，决定 chat_format 与停止序列，见 providers.registry",
    )
    context_size: int = Field(default=4096, ge=256, description="模型上下文容量 C（token）")
    batch_size: int = Field(default=512, ge=1, description="推理批处理大小")
    gpu_layers: int = Field(default=-1, description="GPU 卸载层数，-1 表示尽可能全部卸载")

    # ---- 上下文预算 ----
    chars_per_token: float = Field(default=3.0, gt=0, description="字符/token 估算比例 R")
    history_fraction: float = Field(default=0.7, gt=0, le=1.0, description="历史可占用的上下文比例 f")
    answer_margin: int = Field(default=100, ge=0, description="回答预算的安全余量（token）")
    min_answer_tokens: int = Field(default=200, ge=1, description="回答 token 下限")

    # ---- 采样参数 ----
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_k: int = Field(default=40, ge=0)
    top_p: float = Field(default=0.9, gt=0.0, le=1.0)
    repeat_penalty: float = Field(default=1.1, ge=1.0)
    extra_stop_sequences: List[str] = Field(default_factory=list, description="额外的停止序列")

    # ---- 会话 ----
    title_max_length: int = Field(default=30, ge=4, description="会话标题最大显示长度")
    prompt_locale: str = Field(default="en", description="系统提示词语言目录")
    system_prompt: Optional[str] = Field(default=None, description="覆盖默认系统提示词")

    # ---- 存储与日志 ----
    storage_root: str = Field(
        default_factory=lambda: user_data_dir(APP_NAME, appauthor=False),
        description="存储根目录",
    )
    log_dir: str = Field(
        default_factory=lambda: user_log_dir(APP_NAME, appauthor=False),
        description="日志目录",
    )
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    shutdown_timeout: float = Field(default=5.0, gt=0, description="退出时资源释放的最长等待（秒）")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("model_family")
    @classmethod
    def normalize_family(cls, v: str) -> str:
        return v.strip().lower()

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
