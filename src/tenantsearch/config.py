from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseModel):
    """Application-specific configuration values."""

    # Server name advertised to MCP clients
    name: str = "TenantSearch MCP Server"
    port: int = 8000
    log_level: str = "INFO"
    # Transport settings for FastMCP: "stdio" (default), "http", or "sse"
    transport: Literal["stdio", "http", "sse"] = "stdio"
    host: str = "127.0.0.1"


class SearchConfig(BaseModel):
    """Tenancy, paging and batching configuration shared by all backends."""

    backend: Literal["whoosh", "elasticsearch"] = "whoosh"
    # App id used when a call does not name a tenant; unset means such calls fail
    default_app_id: Optional[str] = None
    namespace_prefix: str = Field(default="tenantsearch", pattern=r"^[a-z][a-z0-9]*$")
    default_page_size: int = Field(default=30, ge=1)
    max_page_size: int = Field(default=1000, ge=1)
    batch_size: int = Field(default=500, ge=1)
    batch_workers: int = Field(default=4, ge=1)
    # Name of the GeoPoint field queried by find_nearby
    geo_field: str = "latlng"


class WhooshConfig(BaseModel):
    """Embedded Whoosh backend configuration values."""

    # Directory holding one index per tenant; None keeps everything in RAM
    index_dir: Optional[str] = None


class ElasticsearchConfig(BaseModel):
    """Elasticsearch backend configuration values."""

    url: str = "http://localhost:9200"
    username: Optional[str] = None
    password: Optional[str] = None
    timeout: float = 30.0
    verify_ssl: bool = True
    # Refresh policy passed to write requests
    refresh: Literal["false", "true", "wait_for"] = "false"
    shards: int = 1
    replicas: int = 0
    # Minimum number of seconds between expiry purges of a namespace
    purge_interval: float = 60.0


class Settings(BaseSettings):
    """Top-level settings loaded from environment variables and .env only."""

    model_config = SettingsConfigDict(
        env_prefix="TENANTSEARCH_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    app: AppConfig = AppConfig()
    search: SearchConfig = SearchConfig()
    whoosh: WhooshConfig = WhooshConfig()
    elasticsearch: ElasticsearchConfig = ElasticsearchConfig()


def load_settings() -> Settings:
    """Load settings from environment variables and .env only."""
    return Settings()  # type: ignore[call-arg]
