"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MemoryConfig(BaseModel):
    """Conversation memory configuration."""
    data_dir: str = "~/.convmem/memory"
    summary_threshold: int = Field(default=3500, ge=1)  # Pending-tail cost that triggers compaction
    recent_window: int = Field(default=10, ge=0)  # Records kept verbatim after compaction
    auto_compact: bool = True  # If false, the log only grows
    compaction_timeout: float | None = Field(default=120.0, gt=0)  # Seconds to wait for the summarizer

    @property
    def data_path(self) -> Path:
        """Get expanded data directory path."""
        return Path(self.data_dir).expanduser()


class SummarizerConfig(BaseModel):
    """LLM used to write summaries."""
    model: str = "openai/gpt-4o-mini"
    api_key: str = ""
    api_base: str | None = None
    temperature: float = 0.3
    max_tokens: int = 1024


class Config(BaseSettings):
    """Root configuration for convmem."""

    model_config = SettingsConfigDict(
        env_prefix="CONVMEM_",
        env_nested_delimiter="__",
    )

    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
