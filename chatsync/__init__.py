"""chatsync - group chat client with a real-time room synchronization engine."""

__version__ = "0.1.0"
