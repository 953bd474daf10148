import asyncio
import json
import os
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from truphotos.config import CREDENTIALS_FILE


class CredentialStore(Protocol):
    """
    Durable key -> string store used for session data.
    Every method raises on failure; `get` returns None for a missing key.
    """

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...


class FileCredentialStore:
    """
    Keeps credentials in a single JSON map on disk, readable only by the
    owner. A stand-in for a platform keychain. File access runs in a worker
    thread; a lock serializes the read-modify-write of concurrent calls.
    """

    def __init__(self, path: Path = None):
        self.path = Path(path) if path is not None else CREDENTIALS_FILE
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        """
        Load the credentials map. Return empty if the file doesn't exist.
        """
        if self.path.exists():
            with open(self.path, "r") as f:
                return json.load(f)
        return {}

    def _save(self, data: Dict[str, str]):
        if not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)

    def _read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def _update(self, key: str, value: Optional[str]):
        with self._lock:
            data = self._load()
            if value is not None:
                data[key] = value
            elif key in data:
                del data[key]
            else:
                return
            self._save(data)

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._update, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._update, key, None)
