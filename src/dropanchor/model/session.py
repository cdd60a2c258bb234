"""Session state values shared by the session manager and its observers."""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SessionState(str, Enum):
    unauthenticated = "unauthenticated"
    authenticating = "authenticating"
    authenticated = "authenticated"
    refreshing = "refreshing"
    expired = "expired"


class SessionSnapshot(BaseModel):
    """Immutable view of a session, handed to state-change listeners."""

    model_config = ConfigDict(frozen=True)

    state: SessionState
    handle: Optional[str] = None
    did: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_authenticated(self) -> bool:
        return self.state in (SessionState.authenticated, SessionState.refreshing)
