# chatsync/main.py

from __future__ import annotations

import argparse
import asyncio
from typing import Tuple

from chatsync.client import ChatClient
from chatsync.core.errors import ApiError, ChatSyncError, LoadError, SendError
from chatsync.core.logging import get_logger, setup_logging
from chatsync.models.models import Message, Presence, RoomMember

# Configure logging first
setup_logging()
logger = get_logger(__name__)


def print_messages(messages: Tuple[Message, ...]) -> None:
    if not messages:
        return
    last = messages[-1]
    marker = " (sending...)" if last.is_optimistic else ""
    print(f"\n[{last.created_at:%H:%M}] {last.author_name}: {last.content}{marker}")
    print("> ", end="", flush=True)


def print_members(members: Tuple[RoomMember, ...]) -> None:
    online = [m.username for m in members if m.presence == Presence.ONLINE]
    print(f"\n[*] Online: {', '.join(online) or 'nobody'}")
    print("> ", end="", flush=True)


async def chat(email: str, password: str, room_id: str) -> None:
    client = ChatClient()
    try:
        user = await client.auth.restore()
        if user is None:
            user = await client.auth.login(email, password)
        print(f"[*] Signed in as {user.username or user.id}")

        room = client.room(room_id, on_messages=print_messages, on_members=print_members)
        try:
            await room.open()
        except LoadError as e:
            print(f"[!] {e}")
            return

        print(f"[*] {room.room.name}: {len(room.messages)} messages. /quit to leave.\n")
        for message in room.messages:
            print(f"[{message.created_at:%H:%M}] {message.author_name}: {message.content}")

        try:
            while True:
                line = (await asyncio.to_thread(input, "> ")).strip()
                if not line:
                    continue
                if line == "/quit":
                    break
                if line == "/earlier":
                    older = await room.load_earlier()
                    print(f"[*] Loaded {len(older)} earlier messages")
                    continue
                try:
                    await room.send(line)
                except SendError as e:
                    print(f"[!] {e} - try again")
        finally:
            await room.close()

        await client.auth.logout()
    except ApiError as e:
        print(f"[!] {e}")
    finally:
        await client.aclose()


def run() -> None:
    parser = argparse.ArgumentParser(description="Terminal chat client")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--room", required=True, help="Room (group) id")
    args = parser.parse_args()

    try:
        asyncio.run(chat(args.email, args.password, args.room))
    except KeyboardInterrupt:
        pass
    except ChatSyncError as e:
        logger.error(f"Exiting: {e}")


if __name__ == "__main__":
    run()
