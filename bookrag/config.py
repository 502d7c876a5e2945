"""
Pipeline configuration.

Settings live in config/config.yaml; secrets (API keys, the admin token)
come from the environment or a .env file.  Every section has working
defaults, so a missing config file is not an error.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from bookrag.errors import InvalidInputError
from bookrag.schemas import DistanceMetric

DEFAULT_CONFIG_PATH = "config/config.yaml"


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ChunkingConfig(_Section):
    target_size: int = 1000
    overlap: int = 200

    @model_validator(mode="after")
    def overlap_below_target(self) -> "ChunkingConfig":
        if self.target_size <= 0:
            raise ValueError("chunking.target_size must be positive")
        if not 0 <= self.overlap < self.target_size:
            raise ValueError("chunking.overlap must be in [0, target_size)")
        return self


class EmbeddingConfig(_Section):
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 512
    timeout_s: float = 30.0
    max_attempts: int = 3


class IndexConfig(_Section):
    collection_name: str = "book"
    index_dir: str = "data/index"
    distance_metric: DistanceMetric = DistanceMetric.COSINE


class RetrievalConfig(_Section):
    limit: int = 5
    score_threshold: float = 0.3
    rerank: bool = False
    rerank_model: str = "gpt-4o-mini"
    rerank_candidates: int = 10


class GenerationConfig(_Section):
    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.1
    max_tokens: int = 1024
    timeout_s: float = 60.0
    max_attempts: int = 3


class SourceConfig(_Section):
    docs_dir: str = "docs"
    patterns: list[str] = ["**/*.md", "**/*.mdx"]


class ServerConfig(_Section):
    admin_token: Optional[str] = None


class LoggingConfig(_Section):
    level: str = "INFO"
    file: Optional[str] = "logs/bookrag.log"
    serialize: bool = False


class Settings(_Section):
    chunking: ChunkingConfig = ChunkingConfig()
    embedding: EmbeddingConfig = EmbeddingConfig()
    index: IndexConfig = IndexConfig()
    retrieval: RetrievalConfig = RetrievalConfig()
    generation: GenerationConfig = GenerationConfig()
    source: SourceConfig = SourceConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()


def load_settings(path: str | Path = DEFAULT_CONFIG_PATH) -> Settings:
    """
    Load settings from YAML, then apply environment overrides.

    Raises InvalidInputError for malformed YAML or invalid values.
    """
    load_dotenv()

    raw: dict = {}
    p = Path(path)
    if p.exists():
        try:
            with open(p, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise InvalidInputError(f"Malformed config file {p}: {exc}") from exc
        if not isinstance(raw, dict):
            raise InvalidInputError(f"Config file {p} must contain a mapping")

    token = os.getenv("BOOKRAG_ADMIN_TOKEN")
    if token:
        raw.setdefault("server", {})["admin_token"] = token
    index_dir = os.getenv("BOOKRAG_INDEX_DIR")
    if index_dir:
        raw.setdefault("index", {})["index_dir"] = index_dir

    try:
        return Settings(**raw)
    except ValidationError as exc:
        raise InvalidInputError(f"Invalid configuration in {p}: {exc}") from exc
