"""In-memory client registry guarded by a single lock.

Every read and write of the mapping happens under `_lock`. Durable writes
happen outside it, under `_save_lock`, so relay lookups are never blocked
behind disk I/O. Each mutation takes a version number and a snapshot while
still holding `_lock`; a save whose version is older than the last one
attempted is dropped, so the file never moves back to an older state.
"""

import threading

from central_api.logging.audit import get_audit_logger
from central_api.registry.models import ClientRecord
from central_api.registry.store import RegistryStore, RegistryStoreError


class ClientRegistry:
    """Directory of registered clients keyed by id."""

    def __init__(self, store: RegistryStore | None = None, validate: bool = True):
        self._store = store
        self._validate = validate
        self._clients: dict[str, ClientRecord] = {}
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._version = 0
        self._saved_version = 0

    @property
    def store(self) -> RegistryStore | None:
        return self._store

    def register(self, record: ClientRecord) -> None:
        """Insert or fully replace the record stored under `record.id`.

        Raises InvalidClientError (before touching state) when validation
        is enabled and the record is rejected.
        """
        if self._validate:
            record.validate()

        with self._lock:
            self._clients[record.id] = record
            version, snapshot = self._next_version()
        self._persist(version, snapshot)

    def unregister(self, client_id: str) -> None:
        """Remove `client_id`. Unknown ids are a no-op."""
        with self._lock:
            self._clients.pop(client_id, None)
            version, snapshot = self._next_version()
        self._persist(version, snapshot)

    def list(self) -> dict[str, ClientRecord]:
        with self._lock:
            return dict(self._clients)

    def lookup(self, client_id: str) -> ClientRecord | None:
        with self._lock:
            return self._clients.get(client_id)

    def load(self) -> int:
        """Replace the mapping with the store's contents.

        A missing file yields an empty registry. An unreadable or malformed
        file is logged and the current mapping is kept. Returns the number
        of clients held afterwards.
        """
        logger = get_audit_logger()
        if self._store is None:
            return len(self)

        try:
            records = self._store.load()
        except RegistryStoreError as e:
            logger.warning("Failed to load clients", extra={"audit_data": {"error": str(e)}})
            return len(self)

        with self._lock:
            self._clients = dict(records)
            count = len(self._clients)
        logger.info("Loaded clients", extra={"audit_data": {"client_count": count}})
        return count

    def save(self) -> None:
        """Write the current mapping to the store (best-effort)."""
        with self._lock:
            version, snapshot = self._next_version()
        self._persist(version, snapshot)

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def __contains__(self, client_id: object) -> bool:
        with self._lock:
            return client_id in self._clients

    def _next_version(self) -> tuple[int, dict[str, ClientRecord]]:
        # Caller holds self._lock
        self._version += 1
        return self._version, dict(self._clients)

    def _persist(self, version: int, snapshot: dict[str, ClientRecord]) -> None:
        if self._store is None:
            return

        with self._save_lock:
            if version <= self._saved_version:
                return
            # Recorded even on failure: the next mutation re-syncs the file
            self._saved_version = version
            try:
                self._store.save(snapshot)
            except (OSError, TypeError, ValueError) as e:
                get_audit_logger().warning(
                    "Failed to persist clients",
                    extra={"audit_data": {"error": str(e), "client_count": len(snapshot)}},
                )
