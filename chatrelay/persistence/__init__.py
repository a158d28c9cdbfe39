from .message_log import JsonlMessageLog, MessageStore

__all__ = ["JsonlMessageLog", "MessageStore"]
