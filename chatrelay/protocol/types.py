# chatrelay/protocol/types.py
from __future__ import annotations

# ---- Commands (client -> server) ----
CMD_REGISTER = "register"
CMD_MESSAGE = "message"

KNOWN_COMMANDS = frozenset({CMD_REGISTER, CMD_MESSAGE})

# ---- Commands (server -> client) ----
CMD_REGISTERED = "registered"
CMD_ERROR = "error"

# ---- Error codes ----
ERR_BAD_JSON = "BAD_JSON"
ERR_INVALID_ENVELOPE = "INVALID_ENVELOPE"
ERR_IDENTITY_MISMATCH = "IDENTITY_MISMATCH"

# ---- Close codes ----
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008     # auth failure, backpressure
CLOSE_INTERNAL_ERROR = 1011       # write timeout

# Minimal shape docs (for human readers)
# In:  {"command": "register", "userId": "<id>"}
#      {"command": "message", "from": "<id>", "to": "<id>", "message": "<text>"}
# Out: relayed "message" envelopes verbatim, plus
#      {"command": "registered", "userId": "<id>"}
#      {"command": "error", "code": "<ERR_*>", "detail": "<text>"}
