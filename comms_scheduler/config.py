from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
import os

class Settings(BaseSettings):
    # Database - DATABASE_URL in deployed environments, fallback to SQLite for local
    database_url: Optional[str] = None

    # App Settings
    app_name: str = "CommsScheduler"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # Scheduler loop
    scheduler_poll_interval: float = 30.0
    scheduler_max_idle_interval: float = 120.0
    scheduler_batch_size: int = 5
    max_concurrent_jobs: int = 1
    scheduler_trigger_token: str = ""

    # Job lifecycle
    backoff_base_minutes: int = 1
    job_default_max_retries: int = 3
    job_default_priority: int = 5
    job_retention_days: int = 90
    job_lease_minutes: Optional[int] = None  # None disables the stale-claim reaper

    # Recurring campaigns
    campaign_instance_batch: int = 10
    program_name: str = "Rise as One Basketball Program"

    # Delivery collaborator (draft/send service)
    delivery_service_url: str = ""
    delivery_api_key: str = ""
    delivery_timeout_seconds: float = 20.0
    delivery_test_mode: bool = False

    # AI insight collaborator
    insights_service_url: str = ""
    insights_timeout_seconds: float = 60.0

    # Stripe webhook replay
    webhook_replay_batch: int = 20
    webhook_max_retries: int = 3

    class Config:
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.database_url is None:
            platform_db = os.getenv("DATABASE_URL")
            if platform_db:
                # SQLAlchemy async needs the asyncpg driver in the scheme
                if platform_db.startswith("postgres://"):
                    self.database_url = platform_db.replace("postgres://", "postgresql+asyncpg://", 1)
                elif platform_db.startswith("postgresql://"):
                    self.database_url = platform_db.replace("postgresql://", "postgresql+asyncpg://", 1)
                else:
                    self.database_url = platform_db
            else:
                self.database_url = "sqlite+aiosqlite:///./comms_scheduler.db"

@lru_cache()
def get_settings() -> Settings:
    return Settings()
