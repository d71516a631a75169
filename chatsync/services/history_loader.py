# chatsync/services/history_loader.py

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from chatsync.core.config import settings
from chatsync.core.errors import ApiError, LoadError
from chatsync.models.models import Message, RoomMember, RoomSnapshot
from chatsync.services.api_client import ApiClient

logger = logging.getLogger(__name__)


class HistoryLoader:
    """
    Fetches the authoritative state of a room over REST.

    A load is all-or-nothing: the room details, the latest message page and
    the member list are requested concurrently, and a snapshot is returned
    only when all three succeed. Loading only reads, so it is safe to call
    again after a failure.
    """

    def __init__(self, api: ApiClient, page_size: Optional[int] = None) -> None:
        self.api = api
        self.page_size = page_size or settings.MESSAGE_PAGE_SIZE

    async def load(self, room_id: str) -> RoomSnapshot:
        """
        Load room details, the most recent message page and the member list.

        Raises:
            LoadError: one or more of the three requests failed
        """
        results = await asyncio.gather(
            self.api.get_group_details(room_id),
            self.api.get_messages(room_id, limit=self.page_size, offset=0),
            self.api.get_group_members(room_id),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            for error in errors:
                if not isinstance(error, (ApiError, ValueError)):
                    # Not a request failure: a bug, let it surface as-is
                    raise error
            logger.error(f"Load failed for room {room_id} ({len(errors)} of 3 requests)")
            raise LoadError(room_id, errors)

        room, messages, members = results
        logger.info(f"✓ Loaded room {room_id}: {len(messages)} messages, {len(members)} members")
        return RoomSnapshot(room=room, messages=messages, members=members)

    async def fetch_members(self, room_id: str) -> List[RoomMember]:
        return await self.api.get_group_members(room_id)

    async def load_page(self, room_id: str, offset: int) -> List[Message]:
        """Fetch an older page of history, ``offset`` messages back from the newest."""
        return await self.api.get_messages(room_id, limit=self.page_size, offset=offset)
