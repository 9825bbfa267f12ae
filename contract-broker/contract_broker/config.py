from __future__ import annotations

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="")

    SERVICE_NAME: str = "contract-broker"
    LOG_LEVEL: str = "INFO"

    # Storage
    DATABASE_URL: str = "sqlite://"
    DATABASE_ECHO: bool = False

    # Deployment policy
    ALLOW_EMPTY_DEPLOYMENTS: bool = True
    REQUIRED_ENVIRONMENTS: str = ""
    REJECT_STALE_VERIFICATIONS: bool = False

    # Write protection for publish/record/tag endpoints
    BROKER_WRITE_TOKEN: Optional[str] = None

    # Redis verdict cache
    REDIS_ENABLED: bool = False
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_SOCKET_TIMEOUT: int = 5
    VERDICT_CACHE_TTL: int = 300  # 5 minutes

    # Webhooks
    WEBHOOK_URLS: str = ""
    WEBHOOK_TIMEOUT: int = 10
    WEBHOOK_RETRIES: int = 3

    def required_environments(self) -> frozenset[str]:
        return frozenset(t.strip() for t in self.REQUIRED_ENVIRONMENTS.split(",") if t.strip())

    def webhook_urls(self) -> list[str]:
        return [u.strip() for u in self.WEBHOOK_URLS.split(",") if u.strip()]


def get_settings() -> Settings:
    return Settings()
