from __future__ import annotations

"""Durable, read-your-writes settings store.

The store owns the single settings record. Readers get an immutable snapshot;
writers go through ``replace`` or ``update``, which validate the full record,
persist it and only then publish it, all inside one lock. There is no second
copy of the settings anywhere else in the process, so two readers at the same
point in time always agree. The record and its version are published
together as one ``SettingsSnapshot``, so a reader never pairs a record with
another write's version.
"""

from collections.abc import Callable, Mapping
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Any, NamedTuple, Protocol

from pydantic import ValidationError

from .couchdb import CouchDBClient
from .errors import DecryptionError, SettingsValidationError
from .models import Provider, SettingsRecord
from .secret_codec import SecretCodec, fingerprint_secret

logger = logging.getLogger(__name__)

UNREADABLE_MASK = "<unreadable>"

SettingsListener = Callable[[SettingsRecord, SettingsRecord], None]


class SettingsSnapshot(NamedTuple):
    """A published record paired with the version it was written under."""

    record: SettingsRecord
    version: int


class SettingsBackend(Protocol):
    """Persistence for the settings envelope ``{"version", "settings"}``."""

    def load(self) -> dict[str, Any] | None: ...

    def save(self, envelope: dict[str, Any]) -> None: ...

    def delete(self) -> None: ...


class JsonFileSettingsBackend:
    """Stores the envelope as one JSON file, replaced atomically on save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Settings file {self.path} must contain a JSON object")
        return payload

    def save(self, envelope: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            dir=self.path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(envelope, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)


class CouchDBSettingsBackend:
    """Stores the envelope as a single CouchDB document.

    The last seen ``_rev`` is sent with every write, so a concurrent write
    from another process surfaces as ``SettingsWriteConflict`` instead of
    being silently overwritten.
    """

    def __init__(self, client: CouchDBClient, doc_id: str) -> None:
        self.client = client
        self.doc_id = doc_id
        self._rev: str | None = None

    def load(self) -> dict[str, Any] | None:
        doc = self.client.get_doc(self.doc_id)
        if doc is None:
            self._rev = None
            return None
        self._rev = doc.get("_rev")
        return {
            "version": doc.get("version", 0),
            "settings": doc.get("settings") or {},
        }

    def save(self, envelope: dict[str, Any]) -> None:
        doc: dict[str, Any] = {
            "_id": self.doc_id,
            "type": "settings",
            "version": envelope["version"],
            "settings": envelope["settings"],
        }
        if self._rev:
            doc["_rev"] = self._rev
        stored = self.client.put_doc(doc)
        self._rev = stored["_rev"]

    def delete(self) -> None:
        self.client.delete_doc(self.doc_id, rev=self._rev)
        self._rev = None


def _envelope(version: int, record: SettingsRecord) -> dict[str, Any]:
    return {"version": version, "settings": record.model_dump(mode="json")}


def _field_from_validation_error(exc: ValidationError) -> tuple[str, str]:
    """Return the top-level field name and message of the first error."""

    first = exc.errors()[0]
    location = first.get("loc") or ("settings",)
    return str(location[0]), str(first.get("msg", "invalid value"))


class SettingsStore:
    """Single source of truth for the settings record."""

    def __init__(self, backend: SettingsBackend, codec: SecretCodec) -> None:
        """Load the persisted record, creating defaults on first activation."""

        self._backend = backend
        self._codec = codec
        self._lock = threading.RLock()
        self._listeners: list[SettingsListener] = []
        self._state = self._activate()

    def _activate(self) -> SettingsSnapshot:
        envelope = self._backend.load()
        if envelope is None:
            record = SettingsRecord()
            self._backend.save(_envelope(1, record))
            logger.info("Created default settings record")
            return SettingsSnapshot(record, 1)

        record = self._validate(envelope.get("settings") or {}, check_credentials=False)
        return SettingsSnapshot(record, int(envelope.get("version") or 0))

    @property
    def version(self) -> int:
        """Version of the currently published record."""

        return self._state.version

    def get(self) -> SettingsRecord:
        """Return the current snapshot (credentials as opaque references)."""

        return self._state.record.model_copy(deep=True)

    def snapshot(self) -> SettingsSnapshot:
        """Return the current record and its version as one consistent pair."""

        state = self._state
        return SettingsSnapshot(state.record.model_copy(deep=True), state.version)

    def replace(self, new_settings: SettingsRecord | Mapping[str, Any]) -> SettingsRecord:
        """Validate and atomically persist a full settings record."""

        with self._lock:
            return self._write(new_settings).record

    def update(
        self,
        mutator: Callable[[SettingsRecord], SettingsRecord | Mapping[str, Any]],
    ) -> SettingsRecord:
        """Atomic read-modify-write: ``mutator`` maps the current record to a new one."""

        return self.commit(mutator).record

    def commit(
        self,
        mutator: Callable[[SettingsRecord], SettingsRecord | Mapping[str, Any]],
    ) -> SettingsSnapshot:
        """Like ``update`` but also returns the version the record was written under."""

        with self._lock:
            return self._write(mutator(self.get()))

    def reload(self) -> SettingsRecord:
        """Re-read the backend, publishing any record written by another process."""

        with self._lock:
            previous = self._state.record
            self._state = self._activate()
            self._notify(previous, self._state.record)
            return self.get()

    def teardown(self) -> None:
        """Delete the persisted record and fall back to defaults in memory."""

        with self._lock:
            previous = self._state.record
            self._backend.delete()
            self._state = SettingsSnapshot(SettingsRecord(), 0)
            logger.warning("Settings record deleted")
            self._notify(previous, self._state.record)

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        """Register a listener run synchronously after every published write."""

        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def seal(self, secret: str | None) -> str:
        """Encrypt a raw credential into an opaque reference for ``replace``."""

        return self._codec.store(secret)

    def reveal_for_call(self, provider: Provider, record: SettingsRecord | None = None) -> str | None:
        """Return the raw credential for an outbound provider call.

        ``record`` is the snapshot the caller resolved the request against;
        without one the current record is used. ``None`` means the provider
        is not configured. A corrupted reference raises ``DecryptionError``;
        it is never reported as "no credential".
        """

        source = record if record is not None else self._state.record
        reference = source.provider_credentials.get(Provider(provider))
        if not reference:
            return None
        return self._codec.reveal(reference)

    def configured_providers(self) -> list[Provider]:
        """Providers with a stored credential, in fallback order."""

        return self._state.record.configured_providers()

    def masked_credentials(self, record: SettingsRecord | None = None) -> dict[Provider, str]:
        """Display-safe credential forms of ``record`` (default: the current one).

        Providers that are unset map to ``""``.
        """

        source = record if record is not None else self._state.record
        masked: dict[Provider, str] = {}
        for provider in Provider:
            reference = source.provider_credentials.get(provider)
            if not reference:
                masked[provider] = ""
                continue
            try:
                masked[provider] = self._codec.mask(self._codec.reveal(reference))
            except DecryptionError:
                logger.error("Stored %s credential is unreadable", provider.value)
                masked[provider] = UNREADABLE_MASK
        return masked

    def _validate(
        self,
        candidate: SettingsRecord | Mapping[str, Any],
        *,
        check_credentials: bool = True,
    ) -> SettingsRecord:
        if isinstance(candidate, SettingsRecord):
            data: Any = candidate.model_dump()
        elif isinstance(candidate, Mapping):
            data = dict(candidate)
        else:
            raise SettingsValidationError("settings", "expected a settings record or mapping")

        try:
            record = SettingsRecord.model_validate(data)
        except ValidationError as exc:
            field, message = _field_from_validation_error(exc)
            raise SettingsValidationError(field, message) from exc

        if check_credentials:
            for provider, reference in record.provider_credentials.items():
                try:
                    self._codec.reveal(reference)
                except DecryptionError as exc:
                    raise SettingsValidationError(
                        "provider_credentials",
                        f"credential for {provider.value} is not a valid sealed reference",
                    ) from exc
        return record

    def _write(self, candidate: SettingsRecord | Mapping[str, Any]) -> SettingsSnapshot:
        record = self._validate(candidate)
        previous = self._state.record
        version = self._state.version + 1

        self._backend.save(_envelope(version, record))
        self._state = SettingsSnapshot(record, version)

        logger.info(
            "Settings saved: version=%s default_provider=%s configured=%s cache_enabled=%s rpm=%s",
            version,
            record.default_provider.value,
            [provider.value for provider in record.configured_providers()],
            record.cache_enabled,
            record.requests_per_minute,
        )
        self._log_credential_changes(previous, record)
        self._notify(previous, record)
        return SettingsSnapshot(record.model_copy(deep=True), version)

    def _log_credential_changes(self, previous: SettingsRecord, current: SettingsRecord) -> None:
        for provider in Provider:
            before = previous.provider_credentials.get(provider, "")
            after = current.provider_credentials.get(provider, "")
            if before == after:
                continue
            if not after:
                logger.info("Credential cleared for %s", provider.value)
                continue
            try:
                marker = fingerprint_secret(self._codec.reveal(after))
            except DecryptionError:
                marker = "?"
            logger.info("Credential updated for %s (id=%s)", provider.value, marker)

    def _notify(self, previous: SettingsRecord, current: SettingsRecord) -> None:
        for listener in list(self._listeners):
            listener(previous, current)
