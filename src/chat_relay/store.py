"""Append-only message stores keyed by participant id.

Every backend exposes the same two coroutines:
    - append(message) -> None
    - list_by_user(user_id) -> List[Message]

There is no update or delete path. Backend failures surface as
:class:`StoreWriteError` / :class:`StoreReadError`; nothing is retried here.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import StoreReadError, StoreWriteError
from .models import Message

logger = logging.getLogger(__name__)


class MessageStore(ABC):
    """Narrow persistence boundary for conversation turns."""

    @abstractmethod
    async def append(self, message: Message) -> None:
        """Write a new immutable record."""

    @abstractmethod
    async def list_by_user(self, user_id: str) -> List[Message]:
        """Return every message for ``user_id`` in storage order."""


# -----------------------------
# In-memory
# -----------------------------
class InMemoryMessageStore(MessageStore):
    """Keeps messages in a per-user dict of lists. Useful for tests and local runs."""

    def __init__(self) -> None:
        self._rows: Dict[str, List[Message]] = defaultdict(list)

    async def append(self, message: Message) -> None:
        self._rows[message.user_id].append(message)

    async def list_by_user(self, user_id: str) -> List[Message]:
        return list(self._rows.get(user_id, []))


# -----------------------------
# Disk (JSONL per user)
# -----------------------------
def _safe_identity(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    return s[:128]


class DiskMessageStore(MessageStore):
    """JSONL-backed store, one append-only file per participant.

    Layout:
        data_dir/
          <user_id>.jsonl    # one serialized Message per line
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OSError(f"Failed to create directory {self.root}: {e}") from e
        self._lock = threading.RLock()

    def _path(self, user_id: str) -> Path:
        return self.root / f"{_safe_identity(user_id)}.jsonl"

    def _append_sync(self, message: Message) -> None:
        line = json.dumps(message.to_item(), ensure_ascii=False)
        with self._lock:
            try:
                with self._path(message.user_id).open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                raise StoreWriteError(f"Failed to write message {message.id}: {e}") from e

    def _load_sync(self, user_id: str) -> List[Message]:
        path = self._path(user_id)
        if not path.exists():
            return []
        out: List[Message] = []
        with self._lock:
            try:
                with path.open("r", encoding="utf-8") as f:
                    for line_no, line in enumerate(f, 1):
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            item = Message.from_item(json.loads(line))
                        except (json.JSONDecodeError, ValidationError) as e:
                            raise StoreReadError(f"Corrupt record at {path}:{line_no}: {e}") from e
                        # Sanitized file names can collide; filter on the real id.
                        if item.user_id == user_id:
                            out.append(item)
            except OSError as e:
                raise StoreReadError(f"Failed to read {path}: {e}") from e
        return out

    async def append(self, message: Message) -> None:
        await asyncio.to_thread(self._append_sync, message)

    async def list_by_user(self, user_id: str) -> List[Message]:
        return await asyncio.to_thread(self._load_sync, user_id)


# -----------------------------
# DynamoDB
# -----------------------------
class DynamoMessageStore(MessageStore):
    """DynamoDB table with a secondary index on ``userId``.

    ``table`` may be injected (anything with ``put_item`` / ``query``);
    otherwise a boto3 resource is created for ``table_name`` in ``region``.
    """

    def __init__(
        self,
        table_name: str = "messages",
        *,
        index_name: str = "userIdIndex",
        region: Optional[str] = None,
        table: Any = None,
    ) -> None:
        self.table_name = table_name
        self.index_name = index_name
        if table is None:
            import boto3

            table = boto3.resource("dynamodb", region_name=region).Table(table_name)
        self._table = table

    def _put_sync(self, message: Message) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._table.put_item(Item=message.to_item())
        except (BotoCoreError, ClientError) as e:
            raise StoreWriteError(f"put_item failed on {self.table_name}: {e}") from e

    def _query_sync(self, user_id: str) -> List[Message]:
        from boto3.dynamodb.conditions import Key
        from botocore.exceptions import BotoCoreError, ClientError

        kwargs: Dict[str, Any] = dict(
            IndexName=self.index_name,
            KeyConditionExpression=Key("userId").eq(user_id),
        )
        items: List[Dict[str, Any]] = []
        try:
            while True:
                page = self._table.query(**kwargs)
                items.extend(page.get("Items", []))
                last_key = page.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except (BotoCoreError, ClientError) as e:
            raise StoreReadError(f"query failed on {self.table_name}/{self.index_name}: {e}") from e

        try:
            return [Message.from_item(item) for item in items]
        except ValidationError as e:
            raise StoreReadError(f"Malformed item in {self.table_name}: {e}") from e

    async def append(self, message: Message) -> None:
        await asyncio.to_thread(self._put_sync, message)

    async def list_by_user(self, user_id: str) -> List[Message]:
        return await asyncio.to_thread(self._query_sync, user_id)


# -----------------------------
# Convenience factory
# -----------------------------
def create_from_config(cfg: Dict[str, Any]) -> MessageStore:
    """Create a store from the ``store`` section of a config dict."""
    store_cfg = (cfg or {}).get("store", {}) if isinstance(cfg, dict) else {}
    backend = str(store_cfg.get("backend", "dynamodb")).lower()

    if backend == "memory":
        return InMemoryMessageStore()
    if backend == "disk":
        return DiskMessageStore(store_cfg.get("data_dir") or "data")
    if backend == "dynamodb":
        return DynamoMessageStore(
            store_cfg.get("table_name", "messages"),
            index_name=store_cfg.get("index_name", "userIdIndex"),
            region=store_cfg.get("region"),
        )
    raise ValueError(f"Unknown store backend: {backend!r}")
