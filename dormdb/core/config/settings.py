# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application configuration settings using Pydantic Settings.

Settings are loaded from environment variables with sensible defaults.
The Settings class is the main entry point and aggregates all subsettings.
A singleton instance is provided via get_settings() for dependency injection.

Example:
    >>> from dormdb.core.config.settings import get_settings
    >>> settings = get_settings()
    >>> print(settings.backend_db.allowed_host)
    'localhost'
"""

import ipaddress
import re
from functools import lru_cache
from typing import Literal, Self
from urllib.parse import quote

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

WILDCARD_HOST = "%"

_HOSTNAME_RE = re.compile(r"\A[A-Za-z0-9](?:[A-Za-z0-9.-]{0,251}[A-Za-z0-9])?\Z")


def is_valid_account_host(host: str) -> bool:
    """Check whether a value is safe to use as the host part of an account.

    Accepts ``localhost``, IPv4/IPv6 addresses, the ``%`` wildcard and plain
    host names. Quotes, spaces and anything else that could break out of a
    quoted account identifier are rejected.

    Args:
        host: Host pattern to check.

    Returns:
        True if the host pattern is acceptable.
    """
    if not host or len(host) > 255:
        return False
    if host in ("localhost", WILDCARD_HOST):
        return True
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        pass
    return bool(_HOSTNAME_RE.match(host)) and ".." not in host


class LedgerDatabaseSettings(BaseSettings):
    """Ledger database configuration.

    The ledger stores the identity whitelist and one record per
    successfully provisioned identity.

    Attributes:
        url: SQLAlchemy async connection URL.
        echo: Echo SQL statements (debugging only).
    """

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_DB_",
        extra="ignore",
    )

    url: str = "sqlite+aiosqlite:///./dormdb_state.db"
    echo: bool = False


class BackendDatabaseSettings(BaseSettings):
    """Backing MySQL server configuration.

    The configured account must be allowed to create databases and
    accounts and to grant privileges on them.

    Attributes:
        host: MySQL server host used for the admin connection.
        port: MySQL server port.
        username: Admin account name.
        password: Admin account password.
        database: Schema the admin connection opens.
        allowed_host: Host pattern attached to provisioned accounts.
        public_host: Host reported to end users (defaults to host).
        pool_size: Admin connection pool size.
        connect_timeout: Connect timeout in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="MYSQL_",
        extra="ignore",
    )

    host: str = "localhost"
    port: int = Field(default=3306, ge=1, le=65535)
    username: str = "root"
    password: SecretStr = SecretStr("")
    database: str = "mysql"
    allowed_host: str = "localhost"
    public_host: str | None = None
    pool_size: int = 5
    connect_timeout: int = 10

    @field_validator("allowed_host")
    @classmethod
    def validate_allowed_host(cls, value: str) -> str:
        """Reject host patterns that cannot be safely quoted."""
        if not is_valid_account_host(value):
            raise ValueError(f"Invalid MYSQL_ALLOWED_HOST: {value!r}")
        return value

    @property
    def url(self) -> str:
        """Build the async admin connection URL."""
        pwd = quote(self.password.get_secret_value(), safe="")
        user = quote(self.username, safe="")
        return (
            f"mysql+aiomysql://{user}:{pwd}@{self.host}:{self.port}/{self.database}"
            "?charset=utf8mb4"
        )

    @property
    def advertised_host(self) -> str:
        """Host end users should connect to."""
        return self.public_host or self.host


class ProvisioningSettings(BaseSettings):
    """Provisioning engine and auditor configuration.

    Attributes:
        secret_length: Length of generated account secrets.
        audit_page_size: Ledger page size used while auditing.
        repair_on_audit: Apply repairs during an audit (False = dry run).
    """

    model_config = SettingsConfigDict(
        env_prefix="PROVISIONING_",
        extra="ignore",
    )

    secret_length: int = Field(default=16, ge=16, le=128)
    audit_page_size: int = Field(default=100, ge=1, le=500)
    repair_on_audit: bool = True


class Settings(BaseSettings):
    """Main application settings aggregating all subsettings.

    Use get_settings() to obtain a cached singleton instance.

    Attributes:
        environment: Current environment (development, staging, production).
        debug: Enable debug mode.
        log_level: Logging level.
        ledger_db: Ledger database settings.
        backend_db: Backing MySQL server settings.
        provisioning: Engine and auditor settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    ledger_db: LedgerDatabaseSettings = Field(default_factory=LedgerDatabaseSettings)
    backend_db: BackendDatabaseSettings = Field(default_factory=BackendDatabaseSettings)
    provisioning: ProvisioningSettings = Field(default_factory=ProvisioningSettings)

    @model_validator(mode="after")
    def validate_backend_security(self) -> Self:
        """Refuse insecure backend settings outside development.

        Raises:
            ValueError: If the wildcard host is used outside development,
                or production runs without a backend password.
        """
        if self.backend_db.allowed_host == WILDCARD_HOST and not self.is_development:
            raise ValueError(
                "MYSQL_ALLOWED_HOST may only be the wildcard '%' in the "
                "development environment. Use a concrete host or IP address."
            )
        if self.is_production and not self.backend_db.password.get_secret_value():
            raise ValueError(
                "MYSQL_PASSWORD must be set in production."
            )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Cached Settings instance.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Call this if you need to reload settings from environment.
    Useful for testing.
    """
    get_settings.cache_clear()
