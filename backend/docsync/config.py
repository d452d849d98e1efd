from pydantic_settings import BaseSettings
from typing import List, Optional
import os
from dotenv import load_dotenv

load_dotenv()


DATACENTER_URLS = {
    "us": "https://www.workato.com/api",
    "eu": "https://app.eu.workato.com/api",
    "jp": "https://app.jp.workato.com/api",
    "sg": "https://app.sg.workato.com/api",
    "au": "https://app.au.workato.com/api",
    "il": "https://app.il.workato.com/api",
}


class Settings(BaseSettings):
    # Workato developer API token with access to managed users (Embedded/OEM).
    WORKATO_API_TOKEN: str = ""
    # Explicit base URL wins over the datacenter lookup when both are set.
    WORKATO_BASE_URL: Optional[str] = None
    WORKATO_DATACENTER: str = "us"

    # Comma-separated list of managed user ids or external ids. When empty,
    # every managed user visible to the token is synced.
    WORKATO_CUSTOMERS: Optional[str] = None
    # Single account used for smoke runs; takes precedence over WORKATO_CUSTOMERS.
    WORKATO_TEST_ACCOUNT_ID: Optional[str] = None

    WORKATO_TIMEOUT_SECONDS: float = 40.0
    WORKATO_PAGE_SIZE: int = 100
    # Safety limit to prevent infinite pagination loops on API defects.
    WORKATO_MAX_PAGES: int = 200
    WORKATO_MAX_RETRIES: int = 3
    WORKATO_BACKOFF_BASE_SECONDS: float = 1.0
    WORKATO_BACKOFF_MAX_SECONDS: float = 10.0
    WORKATO_RETRY_AFTER_MAX_SECONDS: float = 60.0

    # Only recipes whose name starts with this marker are documented.
    ACTIVE_RECIPE_PREFIX: str = "[active]"

    # OpenAI-compatible chat completions endpoint used for documentation,
    # semantic change analysis and run summaries.
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_API_BASE_URL: str = os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com")
    OPENAI_DOC_MODEL: str = os.getenv("OPENAI_DOC_MODEL", "gpt-4o-mini")
    OPENAI_SUMMARY_MODEL: str = os.getenv("OPENAI_SUMMARY_MODEL", "gpt-4o-mini")
    OPENAI_QUALITY_MODEL: str = os.getenv("OPENAI_QUALITY_MODEL", "gpt-4o-mini")
    OPENAI_TIMEOUT_SECONDS: float = 120.0

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///docsync.db")

    OUTPUT_DIR: str = "output"

    RESOLVE_LOOKUP_TABLES: bool = True
    # Score each generated document 1-5 and store the score with it.
    ASSESS_DOCUMENTATION_QUALITY: bool = False

    # Which timestamp of the last clean run becomes the next "updated_after"
    # filter. started_at never misses updates that land while a run is in
    # flight; finished_at re-scans less.
    WATERMARK_SOURCE: str = "started_at"
    WATERMARK_OVERLAP_MINUTES: int = 5

    # A running run without heartbeat for this long no longer holds the lease.
    RUN_STALE_MINUTES: int = 60

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def workato_api_base_url(self) -> str:
        if self.WORKATO_BASE_URL:
            return self.WORKATO_BASE_URL.rstrip("/")
        return DATACENTER_URLS.get((self.WORKATO_DATACENTER or "us").lower(), DATACENTER_URLS["us"])

    @property
    def tenant_filter(self) -> Optional[List[str]]:
        """Tenant ids/external ids to restrict a sync to, or None for all."""
        if self.WORKATO_TEST_ACCOUNT_ID and self.WORKATO_TEST_ACCOUNT_ID.strip():
            return [self.WORKATO_TEST_ACCOUNT_ID.strip()]
        if self.WORKATO_CUSTOMERS:
            ids = [part.strip() for part in self.WORKATO_CUSTOMERS.split(",")]
            ids = [i for i in ids if i]
            return ids or None
        return None


settings = Settings()
