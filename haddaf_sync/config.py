"""
Configuration loading and validation.

Loads the sync core configuration from a YAML file. Every section has
defaults, so an empty file yields a usable configuration.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field


class StoreConfig(BaseModel):
    db_path: str = "./data/haddaf_store.db"


class FeedConfig(BaseModel):
    collection: str = "videoPosts"
    owner_field: str = "authorId"
    order_field: str = "uploadDateTime"
    enrichment_concurrency: int = Field(default=8, ge=1)


class NotificationConfig(BaseModel):
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = Field(default=3600, ge=1)
    admin_reminder_day: int = Field(default=25, ge=1, le=28)
    fanout_concurrency: int = Field(default=16, ge=1)


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090


class SyncConfig(BaseModel):
    store: StoreConfig = Field(default_factory=StoreConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> SyncConfig:
    """Load and validate sync configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return SyncConfig.model_validate(raw)
