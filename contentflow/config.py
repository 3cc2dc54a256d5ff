"""
Engine configuration using environment variables.
"""
import os
from functools import lru_cache
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Application
    app_name: str = "ContentFlow"
    environment: str = "development"

    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./contentflow.db")

    # Routing defaults
    default_response_time_hours: float = 24.0
    default_approval_rate: float = 0.85
    fallback_estimate_hours: float = 48.0
    default_max_workload: int = 10
    high_workload_threshold: int = 5
    default_approver_roles: List[str] = ["reviewer", "approver"]
    escalation_roles: List[str] = ["admin"]
    load_default_routing_rules: bool = True

    # Links embedded in notifications
    approval_url_template: str = "/approvals/{request_id}"
    content_url_template: str = "/content/{target_id}"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
