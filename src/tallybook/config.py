"""Configuration management for tallybook."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from tallybook.tracking.types import DEFAULT_TASK_STATES

# tallybook home directory
TALLYBOOK_DIR = Path.home() / ".tallybook"
TALLYBOOK_ENV_FILE = TALLYBOOK_DIR / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TALLY_",
        # Later files override earlier ones:
        # 1. ~/.tallybook/.env (user config)
        # 2. .env in current directory (project-specific override)
        env_file=(str(TALLYBOOK_ENV_FILE), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    data_dir: Path = Field(
        default=TALLYBOOK_DIR,
        description="Directory holding projects.jsonl, tasks.jsonl and frames.jsonl",
    )
    lock_timeout: float = Field(
        default=5.0,
        ge=0,
        description="Seconds to wait for the data directory lock",
    )
    lock_retries: int = Field(
        default=3,
        ge=0,
        description="How often the CLI retries a command when the store is locked",
    )
    auto_create_projects: bool = Field(
        default=False,
        description="Create unknown projects on first reference instead of failing",
    )
    default_project: str | None = Field(
        default=None,
        description="Project used by `tally start` when none is given",
    )
    task_states: list[str] = Field(
        default=list(DEFAULT_TASK_STATES),
        description="Task workflow states; the first is given to new tasks, the last means done",
    )

    def get_data_dir(self) -> Path:
        """Get the data directory with ``~`` expanded."""
        return self.data_dir.expanduser()


# Global settings instance
settings = Settings()
