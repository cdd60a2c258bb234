"""
Configuration Module for the Anchor core

This module defines the configuration consumed by the Anchor session and
publishing core, using Pydantic settings for validation.

The configuration follows these principles:
1. Environment-based configuration with sensible defaults
2. Strong validation and typing through Pydantic
3. Values are supplied by the composition root; components never read the
   environment themselves
4. Secure handling of cryptographic materials

Key configuration areas include:
- Service endpoints (token endpoint, entryway, PLC directory)
- Session lifetime and refresh policy
- Request timeouts and identification
- Credential storage
- Monitoring and error reporting
"""

import base64
import logging
from datetime import timedelta
from typing import Optional

from cryptography.fernet import Fernet
from pydantic import AliasChoices, Field, RedisDsn, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Settings for the Anchor core.

    Loaded from environment variables (``BASE_URL``, ``REFRESH_THRESHOLD`` and so
    on) with defaults suitable for the public Bluesky network. Durations are in
    seconds; the ``*_delta`` properties expose them as timedeltas.
    """

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug logging.
    Set with DEBUG=true environment variable.
    """

    # Service endpoints
    base_url: str = "https://bsky.social"
    """
    Base URL of the authorization server hosting the OAuth token endpoint.
    Set with BASE_URL environment variable.
    """

    token_path: str = "/oauth/token"
    """
    Path of the OAuth token endpoint, relative to base_url.
    Set with TOKEN_PATH environment variable.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    place_base_url: str = "https://www.openstreetmap.org"
    """
    Base URL used to build canonical place links in crossposts.
    Set with PLACE_BASE_URL environment variable.
    """

    # Session lifetime and refresh policy
    session_duration: int = 4 * 60 * 60
    """
    Access token lifetime in seconds, used when the token endpoint does not
    report expires_in and the token carries no exp claim.
    Set with SESSION_DURATION environment variable.
    Default: 14400 (4 hours)
    """

    refresh_threshold: int = 60 * 60
    """
    Refresh the access token once less than this many seconds of lifetime remain.
    Set with REFRESH_THRESHOLD environment variable.
    Default: 3600 (1 hour)
    """

    max_retry_attempts: int = Field(default=3, ge=0)
    """
    Maximum number of retries for a refresh that failed transiently.
    Set with MAX_RETRY_ATTEMPTS environment variable.
    Default: 3
    """

    retry_base_delay: float = Field(default=2.0, gt=0)
    """
    Base delay in seconds for refresh retries (exponential backoff).
    Actual delay = min(max_retry_delay, retry_base_delay * (2 ^ retry_attempt))
    Set with RETRY_BASE_DELAY environment variable.
    Default: 2.0
    """

    max_retry_delay: float = Field(default=8.0, gt=0)
    """
    Ceiling in seconds for a single refresh retry delay.
    Set with MAX_RETRY_DELAY environment variable.
    Default: 8.0
    """

    proactive_refresh: bool = True
    """
    Refresh the session in the background before its token enters the refresh
    window. The command line turns this off for its one-shot runs.
    Set with PROACTIVE_REFRESH environment variable.
    """

    # Requests
    request_timeout: float = Field(default=30.0, gt=0)
    """
    Total timeout in seconds for every network call.
    Set with REQUEST_TIMEOUT environment variable.
    """

    user_agent: str = "Anchor/1.0"
    """
    User-Agent header sent with every request.
    Set with USER_AGENT environment variable.
    """

    # Publishing
    default_checkin_message: str = "Dropped anchor here!"
    """
    Message used for crossposts when the user did not write one.
    Set with DEFAULT_CHECKIN_MESSAGE environment variable.
    """

    crosspost_embed_checkin: bool = True
    """
    Embed a record reference to the check-in in crossposts.
    Set with CROSSPOST_EMBED_CHECKIN environment variable.
    """

    # Credential storage
    credentials_file: str = "~/.config/anchor/credentials"
    """
    Path of the encrypted credentials file used by the command line.
    Set with CREDENTIALS_FILE environment variable.
    """

    encryption_key: Optional[Fernet] = None
    """
    Fernet symmetric encryption key for the credentials file.
    Can be set to a Fernet object or base64-encoded key string.
    When unset, a key is generated once and kept next to the credentials file
    ({credentials_file}.key, mode 0600).
    Set with ENCRYPTION_KEY environment variable.
    """

    redis_dsn: Optional[RedisDsn] = Field(
        None,
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )
    """
    Redis connection string. When set, credentials are stored in Redis instead
    of the encrypted file.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_enabled: bool = False
    """
    Send metrics to Telegraf/StatsD.
    Set with METRICS_ENABLED environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    statsd_prefix: str = "anchor"
    """
    Prefix for all StatsD metrics.
    Set with STATSD_PREFIX environment variable.
    """

    model_config = SettingsConfigDict(populate_by_name=True)

    @field_validator("base_url", "place_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Optional[Fernet]:
        """
        Validate and process the encryption_key setting.

        This validator accepts:
        - None, leaving key generation to the credentials file store
        - An existing Fernet object (for programmatic configuration)
        - A base64-encoded string containing a Fernet key

        Raises:
            ValueError: If the input is neither None, a Fernet object nor a valid base64 key
        """
        if v is None or isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )

    @model_validator(mode="after")
    def check_refresh_window(self) -> "Settings":
        if self.refresh_threshold >= self.session_duration:
            raise ValueError("refresh_threshold must be shorter than session_duration")
        if self.max_retry_delay < self.retry_base_delay:
            raise ValueError("max_retry_delay must not be shorter than retry_base_delay")
        return self

    @property
    def token_endpoint(self) -> str:
        return f"{self.base_url}{self.token_path}"

    @property
    def session_duration_delta(self) -> timedelta:
        return timedelta(seconds=self.session_duration)

    @property
    def refresh_threshold_delta(self) -> timedelta:
        return timedelta(seconds=self.refresh_threshold)
