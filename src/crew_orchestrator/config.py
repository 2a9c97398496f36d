"""Configuration loading from environment variables."""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

PROVIDER_COMMAND_PREFIX = "CREW_PROVIDER_COMMAND_"


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".crew_orchestrator" / "crew.db")
    logs_dir: Path = field(default_factory=lambda: Path.home() / ".crew_orchestrator" / "logs")
    default_project_path: Path = field(default_factory=lambda: Path.cwd())
    worktree_dir: str = ".crew-worktrees"
    branch_prefix: str = "task-"
    stop_grace_seconds: float = 5.0
    diff_max_bytes: int = 50000
    event_queue_size: int = 1000
    host: str = "127.0.0.1"
    port: int = 8790
    log_level: str = "INFO"
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    hosted_base_url: str | None = None
    hosted_api_key: str | None = None
    hosted_model: str | None = None
    commit_author_name: str = "Crew Orchestrator"
    commit_author_email: str = "crew@localhost"
    # provider name -> argv override, e.g. CREW_PROVIDER_COMMAND_CLAUDE="claude --print"
    provider_commands: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("CREW_DB_PATH"):
            config.db_path = Path(db)

        if logs := os.environ.get("CREW_LOGS_DIR"):
            config.logs_dir = Path(logs)

        if project := os.environ.get("CREW_PROJECT_PATH"):
            config.default_project_path = Path(project)

        if wt_dir := os.environ.get("CREW_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if prefix := os.environ.get("CREW_BRANCH_PREFIX"):
            config.branch_prefix = prefix

        if grace := os.environ.get("CREW_STOP_GRACE_SECONDS"):
            config.stop_grace_seconds = float(grace)

        if max_bytes := os.environ.get("CREW_DIFF_MAX_BYTES"):
            config.diff_max_bytes = int(max_bytes)

        if queue_size := os.environ.get("CREW_EVENT_QUEUE_SIZE"):
            config.event_queue_size = int(queue_size)

        if host := os.environ.get("CREW_HOST"):
            config.host = host

        if port := os.environ.get("CREW_PORT"):
            config.port = int(port)

        if level := os.environ.get("CREW_LOG_LEVEL"):
            config.log_level = level.upper()

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("CREW_SLACK_CHANNEL")

        config.hosted_base_url = os.environ.get("CREW_HOSTED_BASE_URL")
        config.hosted_api_key = os.environ.get("CREW_HOSTED_API_KEY")
        config.hosted_model = os.environ.get("CREW_HOSTED_MODEL")

        if author := os.environ.get("CREW_COMMIT_AUTHOR_NAME"):
            config.commit_author_name = author

        if email := os.environ.get("CREW_COMMIT_AUTHOR_EMAIL"):
            config.commit_author_email = email

        for key, value in os.environ.items():
            if key.startswith(PROVIDER_COMMAND_PREFIX) and value.strip():
                provider = key[len(PROVIDER_COMMAND_PREFIX):].lower()
                config.provider_commands[provider] = shlex.split(value)

        return config


def get_config() -> Config:
    return Config.from_env()
