"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".gitmind" / "gitmind.db")
    generator_api_key: str | None = None
    generator_base_url: str = "https://ai.gateway.lovable.dev/v1"
    generator_model: str = "google/gemini-2.5-flash"
    generator_timeout: float = 30.0
    max_retries: int = 2
    github_token: str | None = None
    github_api_url: str = "https://api.github.com"
    max_repositories: int = 5
    execute_rate_limit: int = 10
    commit_rate_limit: int = 20
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("GITMIND_DB_PATH"):
            config.db_path = Path(db)

        config.generator_api_key = os.environ.get("GITMIND_AI_API_KEY")
        config.github_token = os.environ.get("GITHUB_TOKEN")

        if url := os.environ.get("GITMIND_AI_BASE_URL"):
            config.generator_base_url = url.rstrip("/")

        if model := os.environ.get("GITMIND_AI_MODEL"):
            config.generator_model = model

        if timeout := os.environ.get("GITMIND_AI_TIMEOUT"):
            config.generator_timeout = float(timeout)

        if retries := os.environ.get("GITMIND_MAX_RETRIES"):
            config.max_retries = int(retries)

        if api_url := os.environ.get("GITMIND_GITHUB_API_URL"):
            config.github_api_url = api_url.rstrip("/")

        if max_repos := os.environ.get("GITMIND_MAX_REPOSITORIES"):
            config.max_repositories = int(max_repos)

        if execute_limit := os.environ.get("GITMIND_EXECUTE_RATE_LIMIT"):
            config.execute_rate_limit = int(execute_limit)

        if commit_limit := os.environ.get("GITMIND_COMMIT_RATE_LIMIT"):
            config.commit_rate_limit = int(commit_limit)

        if level := os.environ.get("GITMIND_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
