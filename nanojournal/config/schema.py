"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DecayConfig(Base):
    """Per-kind half-lives (days) for retrieval decay.

    Kinds missing from ``half_life_days`` fall back to the built-in table in
    ``nanojournal.memory.scoring``.
    """
    half_life_days: dict[str, float] = Field(default_factory=dict)


class ReinforcementConfig(Base):
    """Spacing-aware strength increment."""
    min_boost: float = 0.05             # Same-day repeat
    max_boost: float = 1.0              # Saturation ceiling per event
    spacing_days: float = 7.0           # Gap at which ~63% of the range is reached


class DedupConfig(Base):
    """Dedup thresholds used by the compaction pipeline."""
    merge_threshold: float = 0.82       # Approximate-match reinforce + alias
    contradiction_threshold: float = 0.6
    event_ttl_days: int = 540           # Default lifetime of event patterns


class CompactionConfig(Base):
    """When and how much of a conversation to compact."""
    enabled: bool = True
    token_threshold: int = 12_000       # Size trigger (chars / 4)
    interval_hours: float = 12.0        # Time trigger
    min_messages_for_time: int = 10
    min_messages_for_force: int = 4
    window_messages: int = 50           # Uncompacted messages considered per run
    prior_patterns: int = 20            # Existing patterns shown to the extractor
    max_new_patterns: int = 7


class RetrievalConfig(Base):
    """Prompt retrieval settings."""
    token_budget: int = 2000
    candidate_window: int = 20          # Raw-similarity candidates before rerank
    min_similarity: float = 0.4
    mmr_lambda: float = 0.5
    log_retrievals: bool = True


class EmbeddingConfig(Base):
    """Embedding provider configuration."""
    provider: str = "local"             # "local" or "none"
    local_model: str = "BAAI/bge-small-en-v1.5"
    lazy_load: bool = True              # Download models on first use


class ExtractionConfig(Base):
    """Pattern extraction (LLM) configuration."""
    model: str = "anthropic/claude-sonnet-4-5"
    max_tokens: int = 2048
    temperature: float = 0.2
    extractor_version: str = "v1"


class BackgroundConfig(Base):
    """Background maintenance configuration."""
    enabled: bool = True
    interval_seconds: int = 3600        # Expiry sweep every hour
    message_retention_days: int = 7     # Compacted messages kept before purge


class ProviderConfig(Base):
    """LLM provider configuration."""
    api_key: str = ""
    api_base: str | None = None


class LoggingConfig(Base):
    """Log sink configuration."""
    console_level: str = "WARNING"
    file_level: str = "DEBUG"
    log_file: str | None = None         # Defaults to ~/.nanojournal/nanojournal.log
    rotation: str = "10 MB"
    retention: str = "1 week"


class MemoryConfig(Base):
    """Pattern memory configuration."""
    enabled: bool = True
    db_path: str = "memory/patterns.db"  # Relative to workspace

    decay: DecayConfig = Field(default_factory=DecayConfig)
    reinforcement: ReinforcementConfig = Field(default_factory=ReinforcementConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    background: BackgroundConfig = Field(default_factory=BackgroundConfig)


class Config(BaseSettings):
    """Root configuration for nanojournal."""
    workspace: str = "~/.nanojournal/workspace"
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.workspace).expanduser()

    model_config = ConfigDict(
        env_prefix="NANOJOURNAL_",
        env_nested_delimiter="__"
    )
