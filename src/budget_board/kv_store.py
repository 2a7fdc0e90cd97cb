"""Persistent key-value store for dashboard indices and payloads.

Values are JSON-compatible blobs keyed by short identifiers. The file-backed
store keeps one ``<key>.json`` per key and writes through a temp file +
rename so a crash never leaves a half-written blob behind. There is no
locking: the last writer wins.
"""

import copy
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Protocol

KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def validate_key(key: str) -> str:
    """Reject keys that cannot be used as a file name.

    Raises:
        ValueError: If key is empty or contains path separators
    """
    if not KEY_PATTERN.match(key) or key in (".", ".."):
        raise ValueError(f"Invalid store key: {key!r}")
    return key


class KeyValueStore(Protocol):
    """Generic get/set of JSON blobs keyed by string."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryStore:
    """In-process store; values are deep-copied on the way in and out."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def get(self, key: str) -> Any | None:
        validate_key(key)
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        validate_key(key)
        # Round-trip through JSON so non-serializable values fail like they would on disk
        self._data[key] = json.loads(json.dumps(value))

    def delete(self, key: str) -> None:
        self._data.pop(validate_key(key), None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileStore:
    """Directory of JSON files, one per key.

    Attributes:
        directory: Folder holding the ``<key>.json`` files
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{validate_key(key)}.json"

    def get(self, key: str) -> Any | None:
        """Read a value.

        Returns:
            Parsed JSON value, or None if the key has never been written

        Raises:
            ValueError: If the stored file is not valid JSON
        """
        path = self.path_for(key)
        if not path.exists():
            return None

        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in store file {path}: {e}") from e

    def set(self, key: str, value: Any) -> None:
        """Write a value atomically.

        Uses temp file + rename pattern:
        1. Write to temporary file in the store directory
        2. Rename temp file to target (atomic operation)
        3. Clean up temp file on any failure

        Raises:
            OSError: If write or rename fails
            TypeError: If value is not JSON-serializable
        """
        target_path = self.path_for(key)
        self.directory.mkdir(parents=True, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(dir=self.directory, prefix=".tmp_", suffix=".json")

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2, ensure_ascii=False)
                f.write("\n")

            os.chmod(temp_path, 0o644)
            os.replace(temp_path, target_path)

        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass  # Temp file may already be renamed or never created
            raise

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def keys(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(
            p.stem for p in self.directory.glob("*.json") if not p.name.startswith(".tmp_")
        )
