"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

ENV_PREFIX = "STOREKB_"
DEFAULT_CONFIG_PATH = Path("~/.config/storekb/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("storage", "upload_dir"): "upload_dir",
    ("embeddings", "backend"): "embedding_backend",
    ("embeddings", "model"): "embedding_model",
    ("embeddings", "dim"): "embedding_dim",
    ("embeddings", "api_base"): "embedding_api_base",
    ("embeddings", "api_key"): "embedding_api_key",
    ("embeddings", "batch_size"): "embedding_batch_size",
    ("embeddings", "max_attempts"): "embedding_max_attempts",
    ("embeddings", "backoff_base"): "embedding_backoff_base",
    ("embeddings", "backoff_max"): "embedding_backoff_max",
    ("embeddings", "timeout"): "embedding_timeout",
    ("embeddings", "min_success_ratio"): "min_success_ratio",
    ("chunking", "min_chars"): "chunk_min_chars",
    ("chunking", "max_chars"): "chunk_max_chars",
    ("chunking", "overlap_chars"): "chunk_overlap_chars",
    ("crawl", "max_pages"): "crawl_max_pages",
    ("crawl", "max_depth"): "crawl_max_depth",
    ("crawl", "delay_seconds"): "crawl_delay_seconds",
    ("crawl", "render_timeout_seconds"): "render_timeout_seconds",
    ("crawl", "user_agent"): "user_agent",
    ("pdf", "max_bytes"): "max_pdf_bytes",
    ("jobs", "max_attempts"): "max_attempts",
    ("jobs", "retry_delay_seconds"): "retry_delay_seconds",
    ("jobs", "stale_after_seconds"): "stale_after_seconds",
    ("jobs", "run_worker_on_submit"): "run_worker_on_submit",
    ("retrieval", "top_k"): "top_k",
    ("retrieval", "context_max_chars"): "context_max_chars",
    ("logging", "level"): "log_level",
    ("logging", "json"): "log_json",
}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".storekb" / "kb.db")
    upload_dir: Path = Field(default=Path.home() / ".storekb" / "uploads")

    embedding_backend: Literal["hashed", "openai"] = "hashed"
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = Field(default=384, gt=0)
    embedding_api_base: str = "https://api.openai.com/v1"
    embedding_api_key: str | None = None
    embedding_batch_size: int = Field(default=16, gt=0)
    embedding_max_attempts: int = Field(default=4, gt=0)
    embedding_backoff_base: float = Field(default=1.0, ge=0)
    embedding_backoff_max: float = Field(default=30.0, ge=0)
    embedding_timeout: float = Field(default=30.0, gt=0)
    min_success_ratio: float = Field(default=0.5, ge=0, le=1)

    chunk_min_chars: int = Field(default=200, gt=0)
    chunk_max_chars: int = Field(default=1200, gt=0)
    chunk_overlap_chars: int = Field(default=150, ge=0)

    crawl_max_pages: int = Field(default=100, gt=0)
    crawl_max_depth: int = Field(default=2, ge=0)
    crawl_delay_seconds: float = Field(default=0.5, ge=0)
    render_timeout_seconds: float = Field(default=60.0, gt=0)
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )

    max_pdf_bytes: int = Field(default=5 * 1024 * 1024, gt=0)

    max_attempts: int = Field(default=3, gt=0)
    retry_delay_seconds: float = Field(default=600.0, ge=0)
    stale_after_seconds: float = Field(default=300.0, gt=0)
    run_worker_on_submit: bool = True

    top_k: int = Field(default=5, gt=0)
    context_max_chars: int = Field(default=4000, gt=0)

    log_level: str = "INFO"
    log_json: bool = True

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("db_path", "upload_dir", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("paths must be a path or string")

    @model_validator(mode="after")
    def _check_chunk_window(self) -> "Settings":
        if self.chunk_min_chars > self.chunk_max_chars:
            raise ValueError("chunk_min_chars must not exceed chunk_max_chars")
        if self.chunk_overlap_chars >= self.chunk_max_chars:
            raise ValueError("chunk_overlap_chars must be smaller than chunk_max_chars")
        return self

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with STOREKB_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for the default application."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings"]
