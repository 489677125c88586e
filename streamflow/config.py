"""Configuration helpers for the streaming orchestrator."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class OAuthConfig:
    client_id: str
    client_secret: str
    refresh_token: str


@dataclass
class NotifierConfig:
    webhook_url: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: Optional[str] = None
    email_to: Optional[str] = None


@dataclass
class OrchestratorConfig:
    ffmpeg_path: str = "ffmpeg"
    scheduler_interval: float = 5.0
    rotation_interval: float = 5.0
    stop_grace_period: float = 5.0
    log_buffer_lines: int = 200
    retained_logs: int = 20
    schedule_retry_window: float = 300.0
    status_write_attempts: int = 3
    work_dir: str = "/tmp/streamflow"


@dataclass
class AppConfig:
    project_name: str = "StreamFlow"
    database_url: str = "sqlite:///streamflow.db"
    encryption_key: Optional[str] = None
    log_level: str = "INFO"
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    oauth: OAuthConfig | None = None
    notifier: NotifierConfig | None = None


def _load_oauth() -> OAuthConfig | None:
    client_id = os.getenv("YOUTUBE_OAUTH_CLIENT_ID")
    if not client_id:
        return None
    return OAuthConfig(
        client_id=client_id,
        client_secret=os.environ["YOUTUBE_OAUTH_CLIENT_SECRET"],
        refresh_token=os.environ["YOUTUBE_OAUTH_REFRESH_TOKEN"],
    )


def load_config() -> AppConfig:
    """Load configuration from environment variables."""
    orchestrator = OrchestratorConfig(
        ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),
        scheduler_interval=float(os.getenv("SCHEDULER_INTERVAL", "5")),
        rotation_interval=float(os.getenv("ROTATION_INTERVAL", "5")),
        stop_grace_period=float(os.getenv("STOP_GRACE_PERIOD", "5")),
        log_buffer_lines=int(os.getenv("LOG_BUFFER_LINES", "200")),
        retained_logs=int(os.getenv("RETAINED_LOGS", "20")),
        schedule_retry_window=float(os.getenv("SCHEDULE_RETRY_WINDOW", "300")),
        status_write_attempts=int(os.getenv("STATUS_WRITE_ATTEMPTS", "3")),
        work_dir=os.getenv("STREAMFLOW_WORK_DIR", "/tmp/streamflow"),
    )

    notifier = NotifierConfig(
        webhook_url=os.getenv("NOTIFY_WEBHOOK_URL"),
        smtp_host=os.getenv("SMTP_HOST"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_username=os.getenv("SMTP_USERNAME"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        email_from=os.getenv("NOTIFY_EMAIL_FROM"),
        email_to=os.getenv("NOTIFY_EMAIL_TO"),
    )

    return AppConfig(
        project_name=os.getenv("PROJECT_NAME", "StreamFlow"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///streamflow.db"),
        encryption_key=os.getenv("ENCRYPTION_KEY"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        orchestrator=orchestrator,
        oauth=_load_oauth(),
        notifier=notifier,
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
