from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_OVERRIDE_ROLES, DEFAULT_REJECTION_REASON_MIN_LENGTH


class PolicyConfig(BaseModel):
    """Who may bypass gates and how strict reviews are."""

    override_roles: list[str] = Field(default_factory=lambda: list(DEFAULT_OVERRIDE_ROLES))
    rejection_reason_min_length: int = DEFAULT_REJECTION_REASON_MIN_LENGTH


class DossierflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    policy: PolicyConfig = PolicyConfig()


def load_config(path: Optional[str] = None) -> DossierflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DOSSIERFLOW_CONFIG
            env variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DOSSIERFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DossierflowConfig(**data)
    else:
        config = DossierflowConfig()

    env_db_url = os.getenv("DOSSIERFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_log_level = os.getenv("DOSSIERFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level
    return config
