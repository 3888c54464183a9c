"""
environment.py — the host environment as the pipeline sees it.

The SDK core never reads browser globals or the process environment directly. Everything
it needs comes through an EnvironmentProvider (URL, referrer, screen size, user agent,
locale hints) and a KeyValueStorage (durable string key/value, e.g. localStorage).

Implementations here:
  - StaticEnvironment   fixed values; used by server-side hosts and tests
  - InMemoryStorage     process-lifetime dict storage
  - JsonFileStorage     one JSON file on disk; survives process restarts (offline queue)
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Protocol, runtime_checkable
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)

UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

@runtime_checkable
class KeyValueStorage(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryStorage:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """
    All keys in a single JSON object on disk.
    File I/O runs in a worker thread so the event loop is never blocked.
    Writes go to a temp file first and are renamed into place.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read_all(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        return json.loads(self.path.read_text(encoding="utf-8") or "{}")

    def _write_all(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(self.path)

    async def get(self, key: str) -> Optional[str]:
        data = await asyncio.to_thread(self._read_all)
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            data[key] = value
            await asyncio.to_thread(self._write_all, data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            if data.pop(key, None) is not None:
                await asyncio.to_thread(self._write_all, data)


# ---------------------------------------------------------------------------
# Environment provider
# ---------------------------------------------------------------------------

@runtime_checkable
class EnvironmentProvider(Protocol):
    url: str
    referrer: Optional[str]
    title: Optional[str]
    user_agent: str
    screen_width: int
    screen_height: int
    pixel_ratio: float
    language: Optional[str]
    timezone: Optional[str]
    do_not_track: bool
    storage: KeyValueStorage


@dataclass
class StaticEnvironment:
    """EnvironmentProvider with fixed values. Mutate fields to simulate navigation."""
    url: str = "https://app.cvplus.io/"
    referrer: Optional[str] = None
    title: Optional[str] = None
    user_agent: str = ""
    screen_width: int = 0
    screen_height: int = 0
    pixel_ratio: float = 1.0
    language: Optional[str] = None
    timezone: Optional[str] = None
    do_not_track: bool = False
    storage: KeyValueStorage = field(default_factory=InMemoryStorage)


def url_path(url: str) -> str:
    return urlparse(url).path or "/"


def url_search(url: str) -> str:
    query = urlparse(url).query
    return f"?{query}" if query else ""


def utm_params(url: str) -> Dict[str, str]:
    """utm_* query parameters present on the URL, keyed without the 'utm_' prefix."""
    query = parse_qs(urlparse(url).query)
    return {
        key[len("utm_"):]: values[0]
        for key, values in query.items()
        if key in UTM_KEYS and values and values[0]
    }
