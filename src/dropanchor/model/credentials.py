"""Session credentials for an authenticated AT Protocol account.

Credentials are owned by the session manager and persisted through a credential
store. They are replaced wholesale on login and refresh, never edited in place.
"""

from datetime import datetime, timedelta
from pydantic import BaseModel, ConfigDict, field_validator


class Credentials(BaseModel):
    """Access and refresh tokens plus the identity they were issued for."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    handle: str
    did: str
    pds_base_url: str
    expires_at: datetime
    issued_at: datetime

    @field_validator("expires_at", "issued_at")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("credential timestamps must be timezone-aware")
        return v

    @field_validator("pds_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def refresh_at(self, refresh_threshold: timedelta) -> datetime:
        """The moment after which the access token should no longer be handed out."""
        return self.expires_at - refresh_threshold

    def needs_refresh(self, now: datetime, refresh_threshold: timedelta) -> bool:
        return now >= self.refresh_at(refresh_threshold)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def __repr__(self) -> str:
        # Tokens stay out of logs.
        return (
            f"Credentials(handle={self.handle!r}, did={self.did!r}, "
            f"pds_base_url={self.pds_base_url!r}, expires_at={self.expires_at.isoformat()})"
        )

    __str__ = __repr__
