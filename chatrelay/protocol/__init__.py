from .envelope import (
    Envelope,
    MessageEnvelope,
    RegisterEnvelope,
    error_frame,
    parse_envelope,
    registered_frame,
)

__all__ = [
    "Envelope",
    "MessageEnvelope",
    "RegisterEnvelope",
    "error_frame",
    "parse_envelope",
    "registered_frame",
]
