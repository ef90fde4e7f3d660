from __future__ import annotations

"""Minimal CouchDB data-access client used by the settings backend."""

import time
from typing import Any

import httpx

from .errors import SettingsWriteConflict


class CouchDBClient:
    """Thin wrapper around CouchDB HTTP APIs for single-document records."""

    def __init__(self, url: str, db_name: str) -> None:
        """Initialize a persistent HTTP client and DB base URL."""

        self.url = url.rstrip("/")
        self.db_name = db_name
        self.base_db_url = f"{self.url}/{self.db_name}"
        self._client = httpx.Client(timeout=30.0)

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""

        self._client.close()

    def ensure_db(self, retries: int = 30, delay_seconds: float = 1.0) -> None:
        """Create the target DB if needed, retrying during startup races."""

        last_error: Exception | None = None
        for _ in range(retries):
            try:
                response = self._client.put(self.base_db_url)
                if response.status_code in (201, 202, 412):
                    return
                response.raise_for_status()
            except Exception as exc:
                last_error = exc
                time.sleep(delay_seconds)
                continue
        if last_error is not None:
            raise last_error

    def get_doc(self, doc_id: str) -> dict[str, Any] | None:
        """Fetch a single document by id, or ``None`` when it does not exist."""

        response = self._client.get(f"{self.base_db_url}/{doc_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def put_doc(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Write a document by ``_id``; ``_rev`` must match the stored revision.

        A stale or missing ``_rev`` for an existing document is reported by
        CouchDB as 409 and surfaced as ``SettingsWriteConflict``.
        """

        doc_id = doc.get("_id")
        if not doc_id:
            raise ValueError("Document requires _id for updates")

        response = self._client.put(f"{self.base_db_url}/{doc_id}", json=doc)
        if response.status_code == 409:
            raise SettingsWriteConflict(
                f"Document {doc_id} was modified by another writer; reload and retry."
            )
        response.raise_for_status()
        payload = response.json()
        stored = dict(doc)
        stored["_rev"] = payload["rev"]
        return stored

    def delete_doc(self, doc_id: str, rev: str | None = None) -> None:
        """Delete a document by id/rev (fetch rev when omitted)."""

        if not doc_id:
            raise ValueError("Document id is required for delete")

        resolved_rev = rev
        if not resolved_rev:
            existing = self.get_doc(doc_id)
            if existing is None:
                return
            resolved_rev = existing.get("_rev")
            if not resolved_rev:
                raise ValueError(f"Document {doc_id} is missing _rev and cannot be deleted")

        response = self._client.delete(
            f"{self.base_db_url}/{doc_id}",
            params={"rev": resolved_rev},
        )
        if response.status_code == 404:
            return
        response.raise_for_status()
