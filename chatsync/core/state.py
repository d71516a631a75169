# chatsync/core/state.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from chatsync.services.realtime import Connection


@dataclass
class Session:
    """
    Process-wide session state.

    Created once at app start. ``connection`` is set and cleared only by the
    ConnectionManager, on authentication transitions.
    """
    authenticated: bool = False
    user_id: Optional[str] = None
    username: Optional[str] = None
    connection: Optional["Connection"] = None
    started_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.started_at is None:
            self.started_at = datetime.now(timezone.utc)

    def sign_in(self, user_id: str, username: Optional[str] = None) -> None:
        self.authenticated = True
        self.user_id = user_id
        self.username = username

    def sign_out(self) -> None:
        self.authenticated = False
        self.user_id = None
        self.username = None
