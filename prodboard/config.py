from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class Settings:
    store_backend: str = "memory"  # memory|sql
    database_url: str = "sqlite:///./prodboard.db"
    api_prefix: str = "/production-board"
    tx_max_attempts: int = 5
    tx_backoff_base: float = 0.02
    tx_backoff_max: float = 1.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            store_backend=os.getenv("STORE_BACKEND", cls.store_backend).lower(),
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            api_prefix=os.getenv("API_PREFIX", cls.api_prefix).rstrip("/"),
            tx_max_attempts=int(os.getenv("TX_MAX_ATTEMPTS", str(cls.tx_max_attempts))),
            tx_backoff_base=float(os.getenv("TX_BACKOFF_BASE", str(cls.tx_backoff_base))),
            tx_backoff_max=float(os.getenv("TX_BACKOFF_MAX", str(cls.tx_backoff_max))),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
