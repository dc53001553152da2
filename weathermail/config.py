"""
Environment-driven settings shared by the API and scheduler processes.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_DB_PATH = Path(__file__).parent.parent / "weather.db"
DEFAULT_REDIS_ADDR = "redis:6379"


class ConfigError(Exception):
    """Raised when a required setting is missing or malformed."""
    pass


@dataclass(frozen=True)
class Config:
    database_path: str

    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_pass: str
    smtp_from: str

    weatherapi_com_key: str
    openweathermap_org_key: str

    redis_password: str
    redis_addr: str

    base_url: str

    @property
    def redis_host(self) -> str:
        host, _, _ = self.redis_addr.rpartition(":")
        return host or self.redis_addr

    @property
    def redis_port(self) -> int:
        host, _, port = self.redis_addr.rpartition(":")
        if not host:
            return 6379
        try:
            return int(port)
        except ValueError:
            raise ConfigError(f"invalid REDIS_ADDR {self.redis_addr!r}")

    @classmethod
    def from_env(cls, env: Optional[dict] = None) -> "Config":
        """Read and validate settings, applying defaults where appropriate.

        When ``env`` is omitted, a ``.env`` file in the working directory is
        loaded first (without overriding variables already set).
        """
        if env is None:
            load_dotenv()
            env = os.environ

        def required(name: str) -> str:
            value = env.get(name, "")
            if not value:
                raise ConfigError(f"{name} is required")
            return value

        smtp_port_raw = required("SMTP_PORT")
        try:
            smtp_port = int(smtp_port_raw)
        except ValueError:
            raise ConfigError(f"invalid SMTP_PORT {smtp_port_raw!r}")

        smtp_user = required("SMTP_USER")

        return cls(
            database_path=env.get("DATABASE_PATH") or str(DEFAULT_DB_PATH),
            smtp_host=required("SMTP_HOST"),
            smtp_port=smtp_port,
            smtp_user=smtp_user,
            smtp_pass=required("SMTP_PASS"),
            smtp_from=env.get("SMTP_FROM") or smtp_user,
            # Only one of the provider keys may be present
            weatherapi_com_key=env.get("WEATHERAPI_COM_API_KEY", ""),
            openweathermap_org_key=env.get("OPENWEATHERMAP_ORG_API_KEY", ""),
            redis_password=required("REDIS_PASSWORD"),
            redis_addr=env.get("REDIS_ADDR") or DEFAULT_REDIS_ADDR,
            base_url=required("BASE_URL").rstrip("/"),
        )
