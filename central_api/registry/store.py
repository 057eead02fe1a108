"""Registry persistence abstraction + JSON file implementation."""

import json
import os
import tempfile
from abc import ABC, abstractmethod

from central_api.config.settings import Settings
from central_api.registry.models import ClientRecord, InvalidClientError

FILE_MODE = 0o600  # file holds plaintext credentials


class RegistryStoreError(Exception):
    """Raised when the durable copy cannot be read or written."""


class RegistryStore(ABC):
    """Abstract base for durable registry snapshots."""

    @abstractmethod
    def load(self) -> dict[str, ClientRecord]:
        """Return the persisted records. Empty dict if nothing was saved yet."""
        ...

    @abstractmethod
    def save(self, records: dict[str, ClientRecord]) -> None:
        """Replace the durable copy with `records`."""
        ...


class JSONRegistryStore(RegistryStore):
    """Single JSON object mapping client id to its record."""

    def __init__(self, path: str):
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> dict[str, ClientRecord]:
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise RegistryStoreError(f"cannot read {self._path}: {e}") from e

        if not isinstance(data, dict):
            raise RegistryStoreError(f"{self._path}: expected a JSON object")

        records: dict[str, ClientRecord] = {}
        for key, entry in data.items():
            try:
                record = ClientRecord.from_payload(entry)
            except InvalidClientError as e:
                raise RegistryStoreError(f"{self._path}: entry {key!r}: {e}") from e
            records[key] = record
        return records

    def save(self, records: dict[str, ClientRecord]) -> None:
        payload = {key: record.to_dict() for key, record in records.items()}
        directory = os.path.dirname(os.path.abspath(self._path))

        # Write to a sibling temp file, then rename over the target
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".clients-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.chmod(tmp_path, FILE_MODE)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise


def build_registry_store(settings: Settings) -> RegistryStore | None:
    """Return the configured store, or None when persistence is disabled."""
    if not settings.persistence_file:
        return None
    return JSONRegistryStore(settings.persistence_file)
