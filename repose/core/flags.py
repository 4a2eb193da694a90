"""
Central feature flags. One file controls every external dependency.

Set via environment variables (prefix FF_) or .env file.
When a flag is OFF, the system uses a local fallback. Nothing crashes.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Auth ─────────────────────────────────────────────────────────
    use_auth0: bool = Field(default=True, alias="FF_USE_AUTH0")
    # ON  → JWT validated via Auth0 JWKS. Needs AUTH0_DOMAIN, AUTH0_AUDIENCE.
    # OFF → Dev user injected. No token needed.

    # ── Storage ──────────────────────────────────────────────────────
    use_s3: bool = Field(default=True, alias="FF_USE_S3")
    # ON  → Images go to AWS S3. Needs AWS creds + S3_BUCKET_NAME.
    # OFF → Images saved under LOCAL_STORAGE_PATH, served by /v1/files.

    # ── Realtime ─────────────────────────────────────────────────────
    use_redis: bool = Field(default=True, alias="FF_USE_REDIS")
    # ON  → Row change events published to Redis. Needs REDIS_URL.
    # OFF → Events silently skipped. Clients fall back to polling.

    # ── Scraping ─────────────────────────────────────────────────────
    use_firecrawl: bool = Field(default=True, alias="FF_USE_FIRECRAWL")
    # ON  → Brand scrape maps + scrapes via Firecrawl. Needs FIRECRAWL_API_KEY.
    # OFF → Scrape endpoint refuses. Poses are uploaded manually.


@lru_cache
def get_flags() -> FeatureFlags:
    return FeatureFlags()
