from __future__ import annotations

import os

from pydantic import BaseModel, Field

from field_sync_client.backoff import RetryPolicy

ENV_PREFIX = "FIELD_SYNC_"


class ClientSettings(BaseModel):
    api_url: str = "http://localhost:8000"
    db_path: str = ".field_sync.db"
    auth_token: str | None = None
    sync_interval: float = Field(default=300.0, gt=0)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base: float = Field(default=2.0, gt=0)
    backoff_max: float = Field(default=300.0, gt=0)
    lease_seconds: float = Field(default=120.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    probe_interval: float = Field(default=15.0, gt=0)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "ClientSettings":
        env = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=max(self.backoff_max, self.backoff_base),
        )
