"""CouchDB dump/restore over the HTTP API; the database artifact of a backup."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import httpx

from healthguard.errors import HealthguardError

logger = logging.getLogger(__name__)

DUMP_FORMAT_VERSION = 1


class DatabaseError(HealthguardError):
    """The document store rejected a dump or restore request."""


class CouchDatabase:
    """
    Dumps every user database (names not starting with "_") as
    {"format": 1, "databases": {name: [doc, ...]}} and restores by deleting,
    recreating and bulk-loading each database with new_edits=false so
    revision ids survive the round trip.
    """

    def __init__(
        self,
        url: str = "http://localhost:5984",
        user: str = "",
        password: str = "",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.auth = (user, password) if user else None
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.url,
            auth=self.auth,
            timeout=self.timeout,
            transport=self.transport,
        )

    def available(self) -> bool:
        try:
            with self._client() as client:
                return client.get("/_up").is_success
        except httpx.HTTPError as e:
            logger.debug("CouchDB not reachable: %s", e)
            return False

    def databases(self, client: httpx.Client) -> list[str]:
        r = client.get("/_all_dbs")
        r.raise_for_status()
        return [name for name in r.json() if not name.startswith("_")]

    def dump(self) -> dict:
        dump: dict = {"format": DUMP_FORMAT_VERSION, "databases": {}}
        try:
            with self._client() as client:
                for name in self.databases(client):
                    r = client.get(f"/{name}/_all_docs", params={"include_docs": "true", "attachments": "true"})
                    r.raise_for_status()
                    docs = [row["doc"] for row in r.json().get("rows", []) if row.get("doc")]
                    dump["databases"][name] = docs
                    logger.info("Dumped database %s", name, extra={"documents": len(docs)})
        except httpx.HTTPError as e:
            raise DatabaseError(f"CouchDB dump failed: {e}") from e
        return dump

    def dump_to(self, path: Path) -> int:
        """Write the dump to path; returns the number of databases dumped."""
        dump = self.dump()
        path.write_text(json.dumps(dump), encoding="utf-8")
        return len(dump["databases"])

    def restore(self, dump: dict) -> int:
        """Replace each dumped database with its dumped documents. Safe to repeat."""
        databases = dump.get("databases") or {}
        try:
            with self._client() as client:
                for name, docs in databases.items():
                    r = client.delete(f"/{name}")
                    if r.status_code not in (200, 202, 404):
                        r.raise_for_status()
                    r = client.put(f"/{name}")
                    r.raise_for_status()
                    if docs:
                        r = client.post(f"/{name}/_bulk_docs", json={"docs": docs, "new_edits": False})
                        r.raise_for_status()
                    logger.info("Restored database %s", name, extra={"documents": len(docs)})
        except httpx.HTTPError as e:
            raise DatabaseError(f"CouchDB restore failed: {e}") from e
        return len(databases)

    def restore_from(self, path: Path) -> int:
        dump = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(dump, dict) or not dump.get("databases"):
            logger.info("Database dump %s is empty, nothing to restore", path)
            return 0
        return self.restore(dump)
