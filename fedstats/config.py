from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class CollectorConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FEDSTATS_COLLECTOR__",
        env_file=".env",
        extra="ignore",
    )

    site_timeout_s: float = 10.0
    max_concurrency: int = 8
    # Collection proceeds only while excluded/total stays below this
    max_excluded_fraction: float = 0.5
    retries: int = 1


class QueryConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FEDSTATS_QUERY__",
        env_file=".env",
        extra="ignore",
    )

    timeout_s: float = 120.0
    max_page_size: int = 200
    sync_wait_s: float = 30.0


class StoreConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FEDSTATS_STORE__",
        env_file=".env",
        extra="ignore",
    )

    backend: Literal["memory", "postgres"] = "memory"
    dsn: str = "host=localhost port=5432 dbname=fedstats"
    min_size: int = 1
    max_size: int = 5

    @property
    def conninfo(self) -> str:
        if "connect_timeout" in self.dsn:
            return self.dsn
        return self.dsn + " connect_timeout=10"


class RegistryConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FEDSTATS_REGISTRY__",
        env_file=".env",
        extra="ignore",
    )

    path: Path = Path(__file__).resolve().parent.parent / "federations.json"
    keyring_service: str = "fedstats"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    collector: CollectorConfig = CollectorConfig()
    query: QueryConfig = QueryConfig()
    store: StoreConfig = StoreConfig()
    registry: RegistryConfig = RegistryConfig()


settings = Settings()
