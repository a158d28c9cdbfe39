from __future__ import annotations


class ChatRelayError(Exception):
    """Base class for everything raised by chatrelay."""


class TransportError(ChatRelayError):
    """Connection-level I/O failure. Terminal for that connection only."""


class MalformedEnvelope(ChatRelayError):
    """A single inbound frame failed to parse or validate."""

    def __init__(self, code: str, detail: str = ""):
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code
        self.detail = detail


class PersistenceFailure(ChatRelayError):
    """The message store could not append a record."""


class DuplicateConnection(ChatRelayError):
    pass


class UnknownConnection(ChatRelayError):
    pass
