"""
LMDB-backed store for domain posture documents.

One key per domain name (zname), JSON document values. The store owns the
`id` field: it is assigned when a document is first inserted and is never
taken from the caller on update.
"""
from __future__ import annotations

import json
import os
import uuid
from typing import Optional, Dict, Any, Iterator

import lmdb

from .logger import get_child_logger

log = get_child_logger("posture_store")

DEFAULT_MAP_SIZE = 1024 * 1024 * 1024  # 1GB


class StoreError(Exception):
    """The store could not be opened, read or written."""


class RecordNotFound(StoreError):
    """update() was called for a domain with no stored document."""


def _key(name: str) -> bytes:
    return name.encode("utf-8")


class PostureStore:
    def __init__(self, path: str, map_size: int = DEFAULT_MAP_SIZE):
        self.path = path
        try:
            os.makedirs(path, exist_ok=True)
            self._env = lmdb.open(path, map_size=map_size, max_dbs=0, subdir=True)
        except (lmdb.Error, OSError) as e:
            raise StoreError(f"cannot open posture store at {path}: {e}") from e
        log.info("Opened posture store at {} (map_size={})", path, map_size)

    def close(self) -> None:
        self._env.close()

    def __enter__(self) -> "PostureStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def find_by_domain_name(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            with self._env.begin() as txn:
                data = txn.get(_key(name))
        except lmdb.Error as e:
            raise StoreError(f"cannot read {name}: {e}") from e
        if data is None:
            return None
        try:
            return json.loads(bytes(data).decode("utf-8"))
        except ValueError as e:
            raise StoreError(f"corrupt document for {name}: {e}") from e

    def _put(self, txn, name: str, doc: Dict[str, Any]) -> None:
        txn.put(_key(name), json.dumps(doc, sort_keys=True).encode("utf-8"))

    def upsert(self, record: Dict[str, Any]) -> str:
        """Insert or replace the document for record["zname"]; returns its id."""
        name = record["zname"]
        try:
            with self._env.begin(write=True) as txn:
                current = txn.get(_key(name))
                doc = dict(record)
                if current is not None:
                    doc["id"] = json.loads(bytes(current).decode("utf-8")).get("id") or uuid.uuid4().hex
                else:
                    doc["id"] = uuid.uuid4().hex
                self._put(txn, name, doc)
        except (lmdb.Error, ValueError) as e:
            raise StoreError(f"cannot upsert {name}: {e}") from e
        return doc["id"]

    def update(self, key: str, record: Dict[str, Any]) -> None:
        """Replace the document stored under `key`, keeping its id."""
        try:
            with self._env.begin(write=True) as txn:
                current = txn.get(_key(key))
                if current is None:
                    raise RecordNotFound(f"no posture document for {key}")
                doc = {k: v for k, v in record.items() if k != "id"}
                doc["id"] = json.loads(bytes(current).decode("utf-8")).get("id")
                self._put(txn, key, doc)
        except (lmdb.Error, ValueError) as e:
            raise StoreError(f"cannot update {key}: {e}") from e

    def items(self) -> Iterator[Dict[str, Any]]:
        with self._env.begin() as txn:
            for _k, v in txn.cursor():
                yield json.loads(bytes(v).decode("utf-8"))

    def __len__(self) -> int:
        return self._env.stat()["entries"]
