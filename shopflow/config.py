from __future__ import annotations

import os
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field


class PoolConfig(BaseModel):
    """Concurrency limits for the three priority pools."""

    high: int = Field(default=10, ge=1)
    default: int = Field(default=5, ge=1)
    low: int = Field(default=3, ge=1)


class RetryConfig(BaseModel):
    """Retry policy applied to steps that do not declare their own."""

    max_attempts: int = Field(default=1, ge=1)
    initial_backoff_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)


class AIConfig(BaseModel):
    model: str = "google-gla:gemini-2.5-flash"
    photo_timeout_s: float = 10.0


class EmailConfig(BaseModel):
    from_address: str = "no-reply@detailingpro.local"


class AuthConfig(BaseModel):
    jwt_secret: Optional[str] = None
    algorithms: List[str] = Field(default_factory=lambda: ["HS256"])


class ShopflowConfig(BaseModel):
    """Top-level configuration model."""

    pools: PoolConfig = PoolConfig()
    retry: RetryConfig = RetryConfig()
    journal_url: Optional[str] = None
    store_url: str = "sqlite+aiosqlite:///shopflow.db"
    ai: AIConfig = AIConfig()
    email: EmailConfig = EmailConfig()
    auth: AuthConfig = AuthConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> ShopflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to the SHOPFLOW_CONFIG
            env variable or 'shopflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("SHOPFLOW_CONFIG", "shopflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ShopflowConfig(**data)
    else:
        config = ShopflowConfig()

    if os.getenv("SHOPFLOW_JOURNAL_URL"):
        config.journal_url = os.environ["SHOPFLOW_JOURNAL_URL"]
    if os.getenv("SHOPFLOW_STORE_URL"):
        config.store_url = os.environ["SHOPFLOW_STORE_URL"]
    if os.getenv("SHOPFLOW_JWT_SECRET"):
        config.auth.jwt_secret = os.environ["SHOPFLOW_JWT_SECRET"]
    if os.getenv("SHOPFLOW_AI_MODEL"):
        config.ai.model = os.environ["SHOPFLOW_AI_MODEL"]
    return config
