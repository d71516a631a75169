# chatsync/services/presence.py

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple

from chatsync.core.errors import ApiError
from chatsync.models.models import RoomMember

logger = logging.getLogger(__name__)

MemberFetcher = Callable[[str], Awaitable[List[RoomMember]]]
MembersListener = Callable[[Tuple[RoomMember, ...]], None]


class PresenceSynchronizer:
    """
    Keeps a room's member list in step with membership and presence events.

    Events are treated as hints that something changed, never as deltas: each
    one triggers a fresh fetch of the whole member list, which then replaces
    the current list. A burst of events can be coalesced with ``debounce``
    (seconds); the end state is the same either way.

    When fetches overlap, only the most recently issued one may write: a
    slow response to an older fetch is discarded.
    """

    def __init__(
        self,
        room_id: str,
        fetch_members: MemberFetcher,
        debounce: float = 0.0,
        on_change: Optional[MembersListener] = None,
    ) -> None:
        self.room_id = room_id
        self._fetch = fetch_members
        self.debounce = debounce
        self._on_change = on_change

        self._members: List[RoomMember] = []
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()
        self._debounced: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def members(self) -> Tuple[RoomMember, ...]:
        return tuple(self._members)

    def replace(self, members: List[RoomMember]) -> None:
        """Install an authoritative member list wholesale."""
        if self._closed:
            return
        self._members = list(members)
        if self._on_change is not None:
            self._on_change(self.members)

    def handle_event(self, payload: Any = None) -> None:
        """React to user_joined / user_left / presence_update by scheduling a refresh."""
        if self._closed:
            return
        logger.debug(f"Membership hint for room {self.room_id}: {payload}")

        if self.debounce > 0:
            if self._debounced is not None and not self._debounced.done():
                self._debounced.cancel()
            self._debounced = self._spawn(self._refresh_later())
        else:
            self._spawn(self.refresh())

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _refresh_later(self) -> None:
        await asyncio.sleep(self.debounce)
        await self.refresh()

    async def refresh(self) -> Optional[Tuple[RoomMember, ...]]:
        """
        Fetch the member list and replace the current one.

        Returns:
            The new member list, or None when the fetch failed, was
            superseded by a newer fetch, or the room closed meanwhile.
        """
        if self._closed:
            return None

        self._generation += 1
        generation = self._generation

        try:
            members = await self._fetch(self.room_id)
        except (ApiError, ValueError) as e:
            # ValueError: a member row the model rejects
            logger.warning(f"Failed to refresh members for room {self.room_id}: {e}")
            return None

        if self._closed or generation != self._generation:
            logger.debug(f"Discarded stale member list for room {self.room_id}")
            return None

        self.replace(members)
        return self.members

    async def wait_idle(self) -> None:
        """Wait until every scheduled refresh has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Cancel scheduled refreshes; late results are ignored."""
        self._closed = True
        self._on_change = None
        for task in list(self._tasks):
            task.cancel()
