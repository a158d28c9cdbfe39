from __future__ import annotations

import asyncio
import fcntl
import json
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from chatrelay.errors import PersistenceFailure


class MessageStore(Protocol):
    """Append-only chat log the Router writes to."""

    async def append_message(self, sender_id: str, receiver_id: str, body: str,
                             timestamp: datetime) -> None: ...


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


# JSON-lines "DB"

class JsonlMessageLog:
    """One JSON record per line; appends serialised through a lock file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lockfile = self.path.with_suffix(self.path.suffix + ".lock")
        self.path.touch(exist_ok=True)

    async def append_message(self, sender_id: str, receiver_id: str, body: str,
                             timestamp: datetime) -> None:
        record = {
            "id": uuid.uuid4().hex,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "message": body,
            "created_at": _iso(timestamp),
        }
        try:
            await asyncio.to_thread(self._append, record)
        except OSError as e:
            raise PersistenceFailure(f"append to {self.path} failed: {e}") from e

    def _append(self, record: dict) -> None:
        line = json.dumps(record, separators=(",", ":"), sort_keys=True) + "\n"
        with open(self.lockfile, "a") as lf:
            fcntl.flock(lf, fcntl.LOCK_EX)
            try:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
            finally:
                fcntl.flock(lf, fcntl.LOCK_UN)

    def read_all(self) -> List[Dict]:
        rows = []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        rows.append(json.loads(line))
                    except ValueError:
                        # torn tail from a crash mid-write
                        continue
        except FileNotFoundError:
            return []
        return rows

    def history(self, user_a: str, user_b: str, limit: Optional[int] = None) -> List[Dict]:
        """Messages exchanged between two users, oldest first. ``limit`` keeps the newest N."""
        pair = {(user_a, user_b), (user_b, user_a)}
        rows = [r for r in self.read_all() if (r.get("sender_id"), r.get("receiver_id")) in pair]
        rows.sort(key=lambda r: r.get("created_at", ""))
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return rows

    async def fetch_history(self, user_a: str, user_b: str, limit: Optional[int] = None) -> List[Dict]:
        return await asyncio.to_thread(self.history, user_a, user_b, limit)
