"""
Runtime settings, read from the environment.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict


@dataclass
class Settings:
    """Configuration for the row store, token verification and the worker"""

    store_backend: str = "postgrest"
    supabase_url: str = ""
    supabase_service_key: str = ""
    supabase_jwt_secret: str = ""
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "spendlens"
    db_user: str = "spendlens"
    db_password: str = ""
    http_timeout: float = 10.0
    daily_run_at: str = "08:05"
    lookback_days: int = 30
    log_level: str = "INFO"

    @classmethod
    def from_environment(cls) -> "Settings":
        return cls(
            store_backend=os.getenv("SPENDLENS_STORE", "postgrest").lower(),
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_service_key=os.getenv("SUPABASE_SERVICE_KEY", ""),
            supabase_jwt_secret=os.getenv("SUPABASE_JWT_SECRET", ""),
            db_host=os.getenv("DB_HOST", "localhost"),
            db_port=int(os.getenv("DB_PORT", 5432)),
            db_name=os.getenv("DB_NAME", "spendlens"),
            db_user=os.getenv("DB_USER", "spendlens"),
            db_password=os.getenv("DB_PASSWORD", ""),
            http_timeout=float(os.getenv("SPENDLENS_HTTP_TIMEOUT", 10)),
            daily_run_at=os.getenv("SPENDLENS_DAILY_RUN_AT", "08:05"),
            lookback_days=int(os.getenv("SPENDLENS_LOOKBACK_DAYS", 30)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def db_config(self) -> Dict[str, Any]:
        """psycopg2 connection arguments"""
        return {
            "host": self.db_host,
            "port": self.db_port,
            "database": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
        }
