# chatsync/core/config.py
import os
from typing import Literal
from dotenv import load_dotenv


class Settings:
    """
    Setup environment variables.
        - API_BASE_URL the REST API root (".../api")
        - SOCKET_URL the Socket.IO server the real-time channel connects to
        - REALTIME_TRANSPORT the real-time channel to use: "socketio" or "redis"
        - MESSAGE_PAGE_SIZE how many messages a room load fetches
        - MEMBER_REFRESH_DEBOUNCE seconds to coalesce member-list refreshes (0 = off)
        - CREDENTIALS_FILE where the bearer token is kept ("" = memory only)
    """

    def __init__(self) -> None:
        # Load environment variables from the .env file
        load_dotenv()

        self.API_BASE_URL: str = os.getenv("CHATSYNC_API_BASE_URL", "http://localhost:5000/api")

        self.REALTIME_TRANSPORT: Literal["socketio", "redis"] = (
            os.getenv("CHATSYNC_REALTIME_TRANSPORT", "socketio")
        )
        self.SOCKET_URL: str = os.getenv("CHATSYNC_SOCKET_URL", "http://localhost:5000")
        self.SOCKETIO_PATH: str = os.getenv("CHATSYNC_SOCKETIO_PATH", "socket.io")
        self.REDIS_URL: str = os.getenv("CHATSYNC_REDIS_URL", "redis://localhost:6379/0")

        self.REQUEST_TIMEOUT: float = float(os.getenv("CHATSYNC_REQUEST_TIMEOUT", "10"))
        self.CONNECT_TIMEOUT: float = float(os.getenv("CHATSYNC_CONNECT_TIMEOUT", "5"))

        self.MESSAGE_PAGE_SIZE: int = int(os.getenv("CHATSYNC_MESSAGE_PAGE_SIZE", "50"))
        self.MEMBER_REFRESH_DEBOUNCE: float = float(
            os.getenv("CHATSYNC_MEMBER_REFRESH_DEBOUNCE", "0")
        )

        self.CREDENTIALS_FILE: str = os.getenv("CHATSYNC_CREDENTIALS_FILE", "")

settings = Settings()
