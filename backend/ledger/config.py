import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.db_url = (
            os.getenv("APP_DATABASE_URL")
            or os.getenv("DATABASE_URL")
            or "postgresql://localhost/fundledger"
        )
        self.db_pool_min_size = _env_int("DB_POOL_MIN_SIZE", 1)
        self.db_pool_max_size = _env_int("DB_POOL_MAX_SIZE", 10)
        # Comma-separated list of allowed CORS origins for browser clients.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Catalog schema inspected when resolving column aliases.
        self.db_schema = os.getenv("LEDGER_DB_SCHEMA", "public").strip() or "public"
        self.import_max_rows = _env_int("LEDGER_IMPORT_MAX_ROWS", 5000)
        self.import_job_ttl_seconds = _env_int("LEDGER_IMPORT_JOB_TTL_SECONDS", 3600)
        # Payments files often carry "ENTITY GL FUND" without a restriction part.
        self.default_restriction = os.getenv("LEDGER_DEFAULT_RESTRICTION", "00").strip() or "00"

    @property
    def expose_errors(self) -> bool:
        return self.env in {"local", "dev"}


settings = Settings()
