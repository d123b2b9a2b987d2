"""Document store backends.

The evaluation pipeline talks to a small async document-store interface:
append-only collections for the prediction history and keyed collections for
benchmark partitions. Two backends are provided, in-memory and file-based.
"""

from __future__ import annotations

import asyncio
import copy
import threading
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import orjson


def server_timestamp() -> str:
    """Timestamp assigned by the store to appended documents."""
    return datetime.now(UTC).isoformat()


class DocumentStore(ABC):
    """Async document store with append-only and keyed collections."""

    @abstractmethod
    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Append a document and return its generated id.

        A ``created_at`` field is assigned when the document has none.
        """

    @abstractmethod
    async def set(self, collection: str, key: str, data: dict[str, Any]) -> None:
        """Create or fully replace the document stored under ``key``."""

    @abstractmethod
    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        """Return the document stored under ``key``, if any."""

    @abstractmethod
    async def list(self, collection: str) -> dict[str, dict[str, Any]]:
        """Return every document in a collection, keyed by document id."""

    async def query(self, collection: str, field: str, value: Any) -> list[dict[str, Any]]:
        """Return documents whose ``field`` equals ``value``."""
        documents = await self.list(collection)
        return [doc for doc in documents.values() if doc.get(field) == value]


def _stamp(data: dict[str, Any]) -> dict[str, Any]:
    document = copy.deepcopy(data)
    if not document.get("created_at"):
        document["created_at"] = server_timestamp()
    return document


class InMemoryDocumentStore(DocumentStore):
    """Process-local store, mainly for tests and simulation runs."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        self._collections[collection][doc_id] = _stamp(data)
        return doc_id

    async def set(self, collection: str, key: str, data: dict[str, Any]) -> None:
        self._collections[collection][key] = copy.deepcopy(data)

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        document = self._collections.get(collection, {}).get(key)
        return copy.deepcopy(document) if document is not None else None

    async def list(self, collection: str) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._collections.get(collection, {}))


class JsonFileDocumentStore(DocumentStore):
    """File-backed store rooted at a directory.

    Appended documents go to ``<collection>.jsonl``, one JSON object per line,
    with the generated id under ``_id``. Keyed documents live in
    ``<collection>.json`` as a single object mapping key to document.

    Writes to one collection file are serialized so that concurrent upserts
    for different keys cannot overwrite each other.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._locks: dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _log_path(self, collection: str) -> Path:
        return self.directory / f"{collection}.jsonl"

    def _keyed_path(self, collection: str) -> Path:
        return self.directory / f"{collection}.json"

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        document = {**_stamp(data), "_id": doc_id}
        await asyncio.to_thread(self._append_line, self._log_path(collection), document)
        return doc_id

    async def set(self, collection: str, key: str, data: dict[str, Any]) -> None:
        await asyncio.to_thread(
            self._upsert, self._keyed_path(collection), key, copy.deepcopy(data)
        )

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        documents = await self.list(collection)
        return documents.get(key)

    async def list(self, collection: str) -> dict[str, dict[str, Any]]:
        keyed_path = self._keyed_path(collection)
        if keyed_path.exists():
            return await asyncio.to_thread(self._read_keyed, keyed_path)
        return await asyncio.to_thread(self._read_log, self._log_path(collection))

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(path, threading.Lock())

    def _append_line(self, path: Path, document: dict[str, Any]) -> None:
        with self._lock_for(path):
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "ab") as f:
                f.write(orjson.dumps(document) + b"\n")

    def _upsert(self, path: Path, key: str, document: dict[str, Any]) -> None:
        with self._lock_for(path):
            documents = self._read_keyed(path)
            documents[key] = document
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_bytes(orjson.dumps(documents, option=orjson.OPT_INDENT_2))
            tmp_path.replace(path)

    @staticmethod
    def _read_log(path: Path) -> dict[str, dict[str, Any]]:
        if not path.exists():
            return {}
        documents: dict[str, dict[str, Any]] = {}
        with open(path, "rb") as f:
            for index, line in enumerate(f):
                if not line.strip():
                    continue
                try:
                    data = orjson.loads(line)
                except orjson.JSONDecodeError:
                    continue
                if isinstance(data, dict):
                    documents[str(data.pop("_id", index))] = data
        return documents

    @staticmethod
    def _read_keyed(path: Path) -> dict[str, dict[str, Any]]:
        if not path.exists():
            return {}
        data = orjson.loads(path.read_bytes())
        return data if isinstance(data, dict) else {}
