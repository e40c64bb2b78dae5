"""Document collections — keyed JSON documents, in memory, optionally mirrored to disk.

Each collection is a dict of id -> document. With a data_dir, every written
document is marked dirty and lands as <data_dir>/<collection>/<quoted id>.json
on the next flush(), which does the file I/O off the event loop. The
collection is reloaded from there on startup.
"""

import asyncio
import json
import os
import copy
from pathlib import Path
from typing import Callable, TypeVar
from urllib.parse import quote, unquote

from loguru import logger

from services.errors import AppError, external_service_error

T = TypeVar("T")

SERVICE = "document-store"


class DocumentNotFound(KeyError):
    pass


class DocumentCollection:
    def __init__(self, name: str, data_dir: str | Path | None = None):
        self.name = name
        self._docs: dict[str, dict] = {}
        self._dirty: set[str] = set()
        self._flush_lock = asyncio.Lock()
        self._dir = Path(data_dir) / name if data_dir else None
        if self._dir:
            self._dir.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self) -> None:
        for path in self._dir.glob("*.json"):
            try:
                self._docs[unquote(path.stem)] = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable document {path}: {e}")
        logger.info(f"Loaded {len(self._docs)} documents into '{self.name}'")

    def _mark_dirty(self, doc_id: str) -> None:
        if self._dir:
            self._dirty.add(doc_id)

    def _write(self, snapshots: dict[str, dict]) -> None:
        for doc_id, doc in snapshots.items():
            path = self._dir / f"{quote(doc_id, safe='')}.json"
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(doc, ensure_ascii=False, default=str), encoding="utf-8")
            os.replace(tmp, path)

    async def flush(self) -> None:
        """Write dirty documents to disk in a worker thread. No-op without a data_dir."""
        if not self._dirty:
            return
        async with self._flush_lock:
            snapshots = {doc_id: copy.deepcopy(self._docs[doc_id]) for doc_id in self._dirty}
            self._dirty.clear()
            try:
                await asyncio.to_thread(self._write, snapshots)
            except OSError:
                self._dirty.update(snapshots)
                raise

    def get(self, doc_id: str) -> dict | None:
        doc = self._docs.get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def exists(self, doc_id: str) -> bool:
        return doc_id in self._docs

    def set(self, doc_id: str, doc: dict, merge: bool = False) -> None:
        if merge and doc_id in self._docs:
            self._docs[doc_id] = {**self._docs[doc_id], **copy.deepcopy(doc)}
        else:
            self._docs[doc_id] = copy.deepcopy(doc)
        self._mark_dirty(doc_id)

    def update(self, doc_id: str, fields: dict) -> dict:
        """Merge fields into an existing document. Missing document raises DocumentNotFound."""
        if doc_id not in self._docs:
            raise DocumentNotFound(f"{self.name}/{doc_id}")
        self._docs[doc_id].update(copy.deepcopy(fields))
        self._mark_dirty(doc_id)
        return copy.deepcopy(self._docs[doc_id])

    def where(self, **equals) -> list[dict]:
        return [
            copy.deepcopy(doc) for doc in self._docs.values()
            if all(doc.get(k) == v for k, v in equals.items())
        ]

    def all(self) -> list[dict]:
        return [copy.deepcopy(doc) for doc in self._docs.values()]

    def __len__(self) -> int:
        return len(self._docs)


async def store_operation(operation: str, fn: Callable[[], T], flush: DocumentCollection | None = None) -> T:
    """Run a store operation; failures surface as one EXTERNAL_SERVICE AppError.

    AppErrors raised inside are passed through unchanged. Writes pass the
    collection they touched as `flush` so the change reaches disk before returning.
    """
    try:
        result = fn()
        if flush is not None:
            await flush.flush()
        return result
    except AppError:
        raise
    except Exception as e:
        logger.error(f"{operation} failed: {e}")
        raise external_service_error(SERVICE, f"{operation} failed: {e}", cause=e, operation=operation)
