"""estatefeed — Central Configuration via Pydantic Settings."""

import os
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    feed_collect_hour: int = 3  # Daily collect + inspect at 3 AM
    feed_sync_hour: int = 4  # Daily sync at 4 AM

    # ── Feed endpoints ──
    feed_endpoints: str = ""  # comma-separated

    # ── Feed HTTP client ──
    feed_http_timeout: int = 120  # seconds
    feed_http_retry_times: int = 3
    feed_http_retry_sleep_ms: int = 2000
    feed_http_verify_ssl: bool = True

    # ── Feed auth ──
    feed_auth_mode: Literal["none", "bearer", "basic", "query"] = "none"
    feed_auth_token: Optional[str] = None
    feed_auth_user: Optional[str] = None
    feed_auth_pass: Optional[str] = None
    feed_auth_param: str = "token"

    # ── Schema inspector ──
    feed_schema_max_depth: int = 10
    feed_schema_array_sample: int = 5
    feed_schema_example_len: int = 200
    feed_schema_reset: bool = False
    feed_schema_all_null_type: Literal["null", "mixed"] = "null"
    feed_schema_enum_threshold: int = 20  # max distinct values for an enum candidate

    # ── Snapshot storage ──
    feed_keep_snapshots: int = 10  # 0 = keep all
    feed_save_payload: bool = True

    # ── Structural hints (root keys) ──
    feed_hint_projects: str = ""
    feed_hint_buildings: str = ""
    feed_hint_apartments: str = ""

    # ── Sync ──
    feed_stale_threshold_minutes: int = 5

    # ── Job locks ──
    feed_job_lock_ttl_minutes: int = 360  # a lease older than this is taken over

    @property
    def effective_database_url(self) -> str:
        """Return the configured URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/estatefeed.db"
        return "sqlite:///./estatefeed.db"

    @property
    def endpoint_list(self) -> list[str]:
        """Configured feed endpoints, blanks dropped."""
        return [u.strip() for u in self.feed_endpoints.split(",") if u.strip()]

    @property
    def structural_hints(self) -> dict[str, str]:
        return {
            "projects": self.feed_hint_projects,
            "buildings": self.feed_hint_buildings,
            "apartments": self.feed_hint_apartments,
        }

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
