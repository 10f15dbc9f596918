from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CLAMAV_", env_file=".env", env_ignore_empty=True, extra="ignore")

    hostname: str = "localhost"
    port: int = 3310
    timeout: float = 10
    max_size_mb: int = 25

    addr: str = "0.0.0.0:8080"
    prefix: str = ""
    tls: bool = False
    pem_file: str | None = None
    key_file: str | None = None
    p12_file: str | None = None
    # Read from P12_PASSWORD, without the CLAMAV_ prefix.
    p12_password: SecretStr | None = Field(default=None, validation_alias="P12_PASSWORD")

    log_level: str = "info"
    log_format: str = "json"

    @property
    def max_size_bytes(self) -> int:
        return self.max_size_mb * 1024 * 1024

    @property
    def listen_host(self) -> str:
        host, _, _ = self.addr.rpartition(":")
        return host or "0.0.0.0"

    @property
    def listen_port(self) -> int:
        _, _, port = self.addr.rpartition(":")
        return int(port)
