"""
Runtime settings for PlaySync
"""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from .models import EndpointRole

ENV_PREFIX = "PLAYSYNC_"

RECONNECT_DELAY = 3.0
DRIFT_INTERVAL = 3.0


class Settings(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(8080, ge=1, le=65535)
    log_dir: str = "~/.local/log/playsync"
    log_level: str = "INFO"

    role: EndpointRole = EndpointRole.CLIENT
    relay_url: str = "ws://localhost:8080"
    reconnect_delay: float = Field(RECONNECT_DELAY, gt=0)
    drift_interval: float = Field(DRIFT_INTERVAL, gt=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from PLAYSYNC_* environment variables"""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            key = f"{ENV_PREFIX}{name.upper()}"
            if key in environ:
                values[name] = environ[key]
        return cls(**values)
