"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置，优先级为
环境变量 > 配置文件 > 内置默认值。

每个数值项都有下限：低于下限或无法解析的值会被丢弃并回退到默认值，
只给出警告，不会让进程启动失败。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from recall_core.domain.exceptions import ConfigurationError
from recall_core.gate.prefetch_gate import (
    DEFAULT_FORCE_PATTERNS,
    DEFAULT_SKIP_PATTERNS,
    GateConfig,
)


# 数值项 -> 下限
NUMERIC_FLOORS: Dict[str, float] = {
    "prefetch_timeout_ms": 1,
    "commit_timeout_ms": 1,
    "prefetch_max_chars": 200,
    "prefetch_max_turns": 1,
    "prefetch_max_hits": 1,
    "gate_threshold": 1,
    "gate_ambiguity_low": 0,
    "gate_ambiguity_high": 0,
    "http_timeout": 1.0,
    "vector_top_k": 1,
    "vector_max_chars": 500,
    "vector_update_interval_seconds": 10,
}

BOOL_FIELDS = (
    "context_enabled",
    "autosync",
    "prefetch",
    "native_session",
    "native_search",
    "vector_enabled",
    "vector_semantic",
    "log_redact_content",
)

GATE_MODES = {"always", "never", "rule", "rule_then_llm"}
BACKENDS = {"context_tool", "vector"}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("RECALL_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.append(Path.cwd() / "config.yaml")

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


def coerce_number(value: Any, floor: float, kind: type) -> Any:
    """把配置值解析为 kind 类型的数字；无法解析或低于 floor 时抛出 ConfigurationError。"""

    if isinstance(value, bool):
        raise ConfigurationError(code="CONFIG_NOT_NUMBER", message=f"boolean {value!r} is not a number")
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(code="CONFIG_NOT_NUMBER", message=f"{value!r} is not a number")
    if number != number or number < floor:
        raise ConfigurationError(code="CONFIG_BELOW_FLOOR", message=f"{value!r} is below minimum {floor}")
    return int(number) if kind is int else number


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(code="CONFIG_NOT_BOOL", message=f"{value!r} is not a boolean flag")


def coerce_patterns(value: Any) -> List[str]:
    """接受 list、JSON 数组字符串或逗号分隔字符串。"""

    if value is None:
        return []
    if isinstance(value, str):
        items = [part for part in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [str(part) for part in value]
    else:
        raise ConfigurationError(code="CONFIG_NOT_LIST", message=f"{value!r} is not a pattern list")
    return [item for item in (i.strip() for i in items) if item]


class Settings(BaseSettings):
    """检索与会话同步引擎的配置（使用 Pydantic）。"""

    # ---- 总开关 ----
    context_enabled: bool = Field(default=True, description="是否启用上下文预取与会话同步")
    autosync: bool = Field(default=True, description="是否启用 legacy 会话记录写回与远端镜像")
    prefetch: bool = Field(default=True, description="是否在调用模型前预取历史上下文")
    native_session: bool = Field(default=False, description="是否使用后端原生 session 写入")
    native_search: bool = Field(default=False, description="是否使用后端原生结构化搜索")
    backend: str = Field(default="context_tool", description="检索后端：context_tool 或 vector")

    # ---- 超时与预算 ----
    prefetch_timeout_ms: int = Field(default=5000, description="预取/会话消息类调用超时（毫秒）")
    commit_timeout_ms: int = Field(default=15000, description="会话提交/镜像类调用超时（毫秒）")
    prefetch_max_chars: int = Field(default=2800, description="注入块最大字符数")
    prefetch_max_turns: int = Field(default=4, description="legacy 层最多注入的对话轮数")
    prefetch_max_hits: int = Field(default=8, description="原生搜索最多注入的命中数")
    search_score_threshold: Optional[str] = Field(default=None, description="原生搜索分数阈值，原样透传")

    # ---- 预取闸门 ----
    gate_mode: str = Field(default="rule", description="always / never / rule / rule_then_llm")
    gate_force_patterns: Union[List[str], str] = Field(default_factory=lambda: list(DEFAULT_FORCE_PATTERNS))
    gate_skip_patterns: Union[List[str], str] = Field(default_factory=lambda: list(DEFAULT_SKIP_PATTERNS))
    gate_threshold: int = Field(default=3, description="规则打分判定为 yes 的阈值")
    gate_ambiguity_low: int = Field(default=1, description="模糊区间下界")
    gate_ambiguity_high: int = Field(default=2, description="模糊区间上界")

    # ---- LLM 闸门分类器（OpenAI 兼容接口）----
    llm_gate_base_url: str = Field(default="https://api.openai.com/v1", description="分类器 API 基础URL")
    llm_gate_api_key: Optional[str] = Field(default=None, description="分类器 API 密钥")
    llm_gate_model: str = Field(default="gpt-4o-mini", description="分类器模型名")
    http_timeout: float = Field(default=30.0, description="HTTP 超时时间（秒）")

    # ---- 路径与工具 ----
    workspace_root: str = Field(
        default_factory=lambda: str(Path.cwd() / "workspace"),
        description="agent 目录所在的工作区根目录",
    )
    storage_root: str = Field(default=".storage", description="session 映射等本地状态目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    session_root: str = Field(default="/recall/sessions", description="远端会话归档根路径")
    tool_command: str = Field(default="node", description="执行检索工具脚本的解释器")
    tool_relpath: str = Field(
        default=".recall/tools/context/context-tool.js",
        description="检索工具脚本相对 agent 目录的路径",
    )

    # ---- 轻量向量检索后端 ----
    vector_enabled: bool = Field(default=False, description="是否启用向量检索后端")
    vector_command: Optional[str] = Field(default=None, description="向量检索命令，默认自动探测 qmd")
    vector_top_k: int = Field(default=4)
    vector_min_score: float = Field(default=0.0)
    vector_max_chars: int = Field(default=2500)
    vector_update_interval_seconds: int = Field(default=120)
    vector_semantic: bool = Field(default=False, description="使用 vsearch 而不是关键词 search")
    vector_channels: Union[List[str], str] = Field(
        default_factory=lambda: ["telegram", "discord", "whatsapp"],
        description="允许使用向量记忆的渠道",
    )

    model_config = SettingsConfigDict(
        env_prefix="RECALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

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

    @field_validator(*NUMERIC_FLOORS, mode="before")
    @classmethod
    def _floor_numeric(cls, value: Any, info: ValidationInfo) -> Any:
        default = cls.model_fields[info.field_name].default
        try:
            return coerce_number(value, NUMERIC_FLOORS[info.field_name], type(default))
        except ConfigurationError as exc:
            warnings.warn(f"{info.field_name}: {exc.message}, using default {default}")
            return default

    @field_validator(*BOOL_FIELDS, mode="before")
    @classmethod
    def _parse_flag(cls, value: Any, info: ValidationInfo) -> bool:
        default = cls.model_fields[info.field_name].default
        try:
            return coerce_bool(value)
        except ConfigurationError as exc:
            warnings.warn(f"{info.field_name}: {exc.message}, using default {default}")
            return default

    @field_validator("gate_force_patterns", "gate_skip_patterns", "vector_channels", mode="before")
    @classmethod
    def _parse_patterns(cls, value: Any, info: ValidationInfo) -> List[str]:
        try:
            return coerce_patterns(value)
        except ConfigurationError as exc:
            warnings.warn(f"{info.field_name}: {exc.message}, using default")
            return cls.model_fields[info.field_name].default_factory()

    @field_validator("vector_min_score", mode="before")
    @classmethod
    def _parse_min_score(cls, value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            warnings.warn(f"vector_min_score: {value!r} is not a number, using default 0.0")
            return 0.0

    @field_validator("gate_mode", mode="before")
    @classmethod
    def _parse_gate_mode(cls, value: Any) -> str:
        mode = str(value or "").strip().lower()
        if mode not in GATE_MODES:
            warnings.warn(f"gate_mode: unknown mode {value!r}, using 'rule'")
            return "rule"
        return mode

    @field_validator("backend", mode="before")
    @classmethod
    def _parse_backend(cls, value: Any) -> str:
        backend = str(value or "").strip().lower()
        if backend not in BACKENDS:
            warnings.warn(f"backend: unknown backend {value!r}, using 'context_tool'")
            return "context_tool"
        return backend

    @field_validator("search_score_threshold", "vector_command", "llm_gate_api_key", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    # ---- 派生值 ----

    @property
    def prefetch_dump_file(self) -> Path:
        return Path(self.log_dir) / "prefetch_dump_native_latest.txt"

    @property
    def session_map_file(self) -> Path:
        return Path(self.storage_root) / "session_map.json"

    @property
    def memory_root(self) -> Path:
        return Path(self.storage_root) / "memory"

    def gate_config(self) -> GateConfig:
        return GateConfig(
            force_patterns=list(self.gate_force_patterns),
            skip_patterns=list(self.gate_skip_patterns),
            threshold=self.gate_threshold,
            ambiguity_low=self.gate_ambiguity_low,
            ambiguity_high=self.gate_ambiguity_high,
        )


settings = Settings()
