"""
gitchat.config

Typed loaders for runtime configuration files.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .io_utils import read_yaml_mapping


DEFAULT_DUPLICATE_MESSAGE = (
    "Duplicate call blocked: this exact tool call already ran in this turn. "
    "Use the earlier result instead of repeating it."
)


class GitHubConfig(BaseModel):
    repo: str = ""
    branch: str = "main"
    api_base: str = "https://api.github.com"
    token_env: str = "GITHUB_TOKEN"
    timeout_sec: float = 30.0
    read_retries: int = 2

    @model_validator(mode="after")
    def _validate_repo(self) -> "GitHubConfig":
        if self.repo and self.repo.count("/") != 1:
            raise ValueError(f"github.repo must look like 'owner/name', got '{self.repo}'")
        return self

    def token(self) -> str:
        return os.environ.get(self.token_env, "").strip()


class ProviderConfig(BaseModel):
    kind: Literal["gemini", "litellm"] = "litellm"
    api_key_env: str = ""
    api_base: Optional[str] = None
    # litellm routes on a "<provider>/<model>" prefix.
    model_prefix: str = ""

    def api_key(self) -> str:
        if not self.api_key_env:
            return ""
        return os.environ.get(self.api_key_env, "").strip()


def _default_providers() -> Dict[str, ProviderConfig]:
    return {
        "google": ProviderConfig(kind="gemini", api_key_env="GEMINI_API_KEY"),
        "deepseek": ProviderConfig(
            kind="litellm",
            api_key_env="DEEPSEEK_API_KEY",
            model_prefix="deepseek/",
        ),
        "minimax": ProviderConfig(
            kind="litellm",
            api_key_env="MINIMAX_API_KEY",
            api_base="https://api.minimax.chat/v1",
            model_prefix="openai/",
        ),
    }


class ModelsConfig(BaseModel):
    default_model: str = "think-tank"
    virtual_model: str = "think-tank"
    fast_model: str = "gemini-2.5-flash"
    strong_model: str = "gemini-2.5-pro"
    title_model: str = "gemini-2.5-flash"
    providers: Dict[str, ProviderConfig] = Field(default_factory=_default_providers)
    retries: int = 3
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 30.0
    timeout_sec: float = 120.0


class LoopConfig(BaseModel):
    max_rounds: int = 25
    plan_nudge_round: int = 2
    stop_search_round: int = 4
    hard_block_streak: int = 6
    final_warning_margin: int = 2
    escalate_after_rounds: int = 5
    status_probe_tools: List[str] = Field(default_factory=lambda: ["get_build_status"])
    duplicate_message: str = DEFAULT_DUPLICATE_MESSAGE
    stream: bool = False

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "LoopConfig":
        if self.max_rounds < 1:
            raise ValueError("loop.max_rounds must be >= 1")
        if self.plan_nudge_round >= self.stop_search_round:
            raise ValueError("loop.plan_nudge_round must be below loop.stop_search_round")
        return self


class ToolsConfig(BaseModel):
    view_max_lines: int = 400
    read_max_chars: int = 60000
    grep_max_results: int = 50
    search_max_files: int = 5
    search_max_lines: int = 10
    shell_workdir: Optional[str] = None
    shell_timeout_sec: int = 120


class StorageConfig(BaseModel):
    conversations_path: Optional[str] = None
    events_path: Optional[str] = None


class SessionConfig(BaseModel):
    auto_title: bool = False
    interrupt_on_queue: bool = False


class RuntimeConfig(BaseModel):
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)


def load_runtime_config(path: str | Path) -> RuntimeConfig:
    cfg_path = Path(path)
    return RuntimeConfig.model_validate(read_yaml_mapping(cfg_path, label="runtime config"))
