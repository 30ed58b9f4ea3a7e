"""Configuration for the Voice Learning Pipeline."""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


class PipelineSettings(BaseSettings):
    """Pipeline settings.

    Built once at process start and passed to every component. Instances are
    frozen so a cycle can never observe a threshold changing under it.
    """

    # Target agents. A pinned agent_id skips discovery.
    agent_id: str = ""
    agent_name: str = ""
    agent_include_patterns: List[str] = []
    agent_exclude_patterns: List[str] = ["test", "demo", "sandbox", "dev", "staging"]
    agent_require_llm: bool = True

    # External services
    platform_url: str = "https://api.retellai.com"
    platform_api_key: str = ""
    knowledge_store_url: str = "https://api.retellai.com"
    platform_timeout: float = 30.0
    knowledge_store_timeout: float = 60.0

    # Windowing
    default_lookback_hours: float = 24.0
    min_lookback_hours: float = 1.0
    max_lookback_hours: float = 7 * 24.0
    harvest_limit: int = 100
    min_interactions: int = 1

    # Adversarial filter
    profanity_threshold: int = 2

    # Anomaly detection
    anomaly_window_minutes: int = 60
    anomaly_min_interactions: int = 10
    anomaly_prefix_chars: int = 100
    anomaly_share_threshold: float = 0.30

    # Improvement synthesis
    improvement_model: str = "gpt-4o"
    improvement_temperature: float = 0.7

    # Validation and approval
    core_behavior_tokens: List[str] = ["The Meatery"]
    require_approval: bool = True
    approval_max_priority_fixes: int = 3
    approval_max_new_sections: int = 2

    # Effectiveness tracking
    regression_threshold_percent: float = -5.0

    # Scheduling
    schedule_cron: str = "0 2 * * *"
    schedule_timezone: str = "America/Los_Angeles"

    # Local state
    state_dir: str = "./improvement-logs"
    log_level: str = "INFO"

    class Config:
        env_prefix = "VOICE_LEARNING_"
        env_file = ".env"
        frozen = True


@lru_cache
def get_settings() -> PipelineSettings:
    """Get cached settings instance."""
    return PipelineSettings()
