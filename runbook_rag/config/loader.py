"""YAML tuning loader with environment variable overrides.

Configuration is loaded in layers (later layers override earlier):

  1. Built-in defaults (``_DEFAULTS`` below)
  2. ``config/config.yaml`` -- operator tuning checked into the repo
  3. ``RAG_*`` environment variables -- per-deployment overrides

The resolved dict is turned into typed, immutable views
(:class:`IngestionLimits`, :class:`StageTimeouts`, :class:`RetrievalTuning`)
that are passed explicitly into services.
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from runbook_rag.utils.errors import ConfigurationError

_DEFAULTS: dict[str, Any] = {
    "ingestion": {
        "max_files": 10,
        "max_total_bytes": 100 * 1024 * 1024,
        "max_chars_per_file": 500_000,
        "max_chunks_per_request": 2000,
    },
    "chunking": {"max_size": 400, "overlap": 50},
    "embedding": {"batch_size": 100, "concurrency": 2},
    "timeouts": {
        "request": 280.0,
        "validate": 5.0,
        "download": 30.0,
        "schema_check": 10.0,
        "extract": 30.0,
        "chunk": 10.0,
        "embed": 120.0,
        "persist": 30.0,
        "verify": 15.0,
        "blob_store": 20.0,
        "query_embed": 15.0,
        "vector_search": 15.0,
    },
    "verification": {"enabled": True, "top_k": 3},
    "retrieval": {
        "default_top_k": 5,
        "max_top_k": 50,
        "candidate_multiplier": 5,
        "min_candidates": 25,
        "max_keywords": 8,
        "min_keyword_length": 4,
        "preview_chars": 200,
    },
}

# env var -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "RAG_MAX_FILES": ("ingestion", "max_files"),
    "RAG_MAX_TOTAL_BYTES": ("ingestion", "max_total_bytes"),
    "RAG_MAX_CHARS_PER_FILE": ("ingestion", "max_chars_per_file"),
    "RAG_MAX_CHUNKS_PER_REQUEST": ("ingestion", "max_chunks_per_request"),
    "RAG_CHUNK_MAX_SIZE": ("chunking", "max_size"),
    "RAG_CHUNK_OVERLAP": ("chunking", "overlap"),
    "RAG_EMBEDDING_BATCH_SIZE": ("embedding", "batch_size"),
    "RAG_EMBEDDING_CONCURRENCY": ("embedding", "concurrency"),
    "RAG_REQUEST_TIMEOUT": ("timeouts", "request"),
    "RAG_EXTRACT_TIMEOUT": ("timeouts", "extract"),
    "RAG_EMBED_TIMEOUT": ("timeouts", "embed"),
    "RAG_PERSIST_TIMEOUT": ("timeouts", "persist"),
    "RAG_VERIFY_TIMEOUT": ("timeouts", "verify"),
    "RAG_VERIFY_ENABLED": ("verification", "enabled"),
    "RAG_DEFAULT_TOP_K": ("retrieval", "default_top_k"),
    "RAG_MAX_TOP_K": ("retrieval", "max_top_k"),
}


def load_config(
    path: str = "config/config.yaml",
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load YAML tuning and merge environment overrides on top of defaults.

    Args:
        path: Path to the YAML configuration file.  A missing file is not an
              error; defaults apply.
        environ: Environment mapping, ``os.environ`` when omitted.

    Returns:
        Fully resolved configuration dictionary.
    """
    config = copy.deepcopy(_DEFAULTS)

    config_path = Path(path)
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}
        if not isinstance(yaml_config, dict):
            raise ConfigurationError(
                message=f"{config_path} must contain a mapping at the top level",
            )
        _deep_merge(config, yaml_config)

    env = os.environ if environ is None else environ
    env_overrides: dict[str, Any] = {}
    for var, (section, key) in _ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        # safe_load coerces "12" -> 12, "false" -> False, "2.5" -> 2.5
        env_overrides.setdefault(section, {})[key] = yaml.safe_load(raw)

    _deep_merge(config, env_overrides)
    return config


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


# ---------------------------------------------------------------------------
# Typed views
# ---------------------------------------------------------------------------


class IngestionLimits(BaseModel):
    """Per-request caps and chunking/embedding sizes for the ingestion pipeline."""

    model_config = ConfigDict(frozen=True)

    max_files: int = Field(default=10, ge=1)
    max_total_bytes: int = Field(default=100 * 1024 * 1024, ge=1)
    max_chars_per_file: int = Field(default=500_000, ge=1)
    max_chunks_per_request: int = Field(default=2000, ge=1)
    chunk_max_size: int = Field(default=400, ge=20)
    chunk_overlap: int = Field(default=50, ge=0)
    embedding_batch_size: int = Field(default=100, ge=1)
    embedding_concurrency: int = Field(default=2, ge=1)
    verification_enabled: bool = True
    verification_top_k: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _check_chunk_overlap(self) -> IngestionLimits:
        # Every chunking window has to advance.
        if self.chunk_overlap * 2 >= self.chunk_max_size:
            raise ConfigurationError(
                message=f"chunking.overlap ({self.chunk_overlap}) must be less than half "
                f"of chunking.max_size ({self.chunk_max_size})",
            )
        return self

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> IngestionLimits:
        ingestion = config.get("ingestion", {})
        chunking = config.get("chunking", {})
        embedding = config.get("embedding", {})
        verification = config.get("verification", {})
        try:
            return cls(
                max_files=ingestion.get("max_files", 10),
                max_total_bytes=ingestion.get("max_total_bytes", 100 * 1024 * 1024),
                max_chars_per_file=ingestion.get("max_chars_per_file", 500_000),
                max_chunks_per_request=ingestion.get("max_chunks_per_request", 2000),
                chunk_max_size=chunking.get("max_size", 400),
                chunk_overlap=chunking.get("overlap", 50),
                embedding_batch_size=embedding.get("batch_size", 100),
                embedding_concurrency=embedding.get("concurrency", 2),
                verification_enabled=verification.get("enabled", True),
                verification_top_k=verification.get("top_k", 3),
            )
        except ValidationError as exc:
            raise ConfigurationError(message=f"Invalid ingestion settings: {exc}") from exc


class StageTimeouts(BaseModel):
    """Timeout budget in seconds for each labelled stage."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    request: float = 280.0
    validate_: float = Field(default=5.0, alias="validate")
    download: float = 30.0
    schema_check: float = 10.0
    extract: float = 30.0
    chunk: float = 10.0
    embed: float = 120.0
    persist: float = 30.0
    verify: float = 15.0
    blob_store: float = 20.0
    query_embed: float = 15.0
    vector_search: float = 15.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> StageTimeouts:
        return cls.model_validate(config.get("timeouts", {}))

    def for_stage(self, stage: str) -> float:
        """Return the budget for *stage* by its label."""
        if stage == "validate":
            return self.validate_
        value = getattr(self, stage, None)
        if not isinstance(value, float):
            raise ConfigurationError(message=f"No timeout configured for stage '{stage}'")
        return value


class RetrievalTuning(BaseModel):
    """Knobs for candidate fetching, keyword reranking and result previews."""

    model_config = ConfigDict(frozen=True)

    default_top_k: int = Field(default=5, ge=1)
    max_top_k: int = Field(default=50, ge=1)
    candidate_multiplier: int = Field(default=5, ge=1)
    min_candidates: int = Field(default=25, ge=1)
    max_keywords: int = Field(default=8, ge=1)
    min_keyword_length: int = Field(default=4, ge=1)
    preview_chars: int = Field(default=200, ge=1)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> RetrievalTuning:
        return cls.model_validate(config.get("retrieval", {}))
