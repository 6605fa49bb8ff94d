from __future__ import annotations
import asyncio
import json
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from filelock import FileLock, Timeout

from errors import ContentionError, CorruptionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRODUCTS = "products"
CARTS = "carts"
ORDERS = "orders"

Records = list[dict[str, Any]]


def _parse(resource: str, raw: Optional[str]) -> Records:
    if raw is None or not raw.strip():
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"Stored {resource} is not valid JSON: {e}")
        raise CorruptionError(f"Stored {resource} data is corrupted") from e
    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        logger.error(f"Stored {resource} is not an array of records")
        raise CorruptionError(f"Stored {resource} data is corrupted")
    return data


def _serialize(records: Records) -> str:
    return json.dumps(records, indent=2, ensure_ascii=False)


class RecordStore:
    """Lock-guarded read-modify-write access to JSON-array resources.

    Subclasses provide the raw load/dump of a resource and a non-blocking
    try-acquire/release pair. Acquisition retries with exponential backoff
    and gives up with ContentionError once the retry budget is spent.
    """

    def __init__(self, retries: int = 10, retry_delay: float = 0.05, max_retry_delay: float = 1.0):
        self.retries = retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay

    # -- subclass hooks -------------------------------------------------

    def _load(self, resource: str) -> Optional[str]:
        raise NotImplementedError

    def _dump(self, resource: str, raw: Optional[str]) -> None:
        raise NotImplementedError

    def _try_acquire(self, resource: str) -> bool:
        raise NotImplementedError

    def _release(self, resource: str) -> None:
        raise NotImplementedError

    # -- reads and writes -----------------------------------------------

    async def read(self, resource: str) -> Records:
        raw = await asyncio.to_thread(self._load, resource)
        return _parse(resource, raw)

    async def write(self, resource: str, records: Records) -> None:
        await asyncio.to_thread(self._dump, resource, _serialize(records))

    async def write_many(self, changes: dict[str, Records]) -> None:
        """Persist several resources, restoring earlier ones if a later write fails."""
        written: list[tuple[str, Optional[str]]] = []
        try:
            for resource, records in changes.items():
                previous = await asyncio.to_thread(self._load, resource)
                await self.write(resource, records)
                written.append((resource, previous))
        except Exception:
            for resource, previous in reversed(written):
                try:
                    await asyncio.to_thread(self._dump, resource, previous)
                except OSError as e:
                    logger.warning(f"Could not restore {resource} after failed write: {e}")
            raise

    # -- locking --------------------------------------------------------

    async def _acquire(self, resources: list[str]) -> None:
        delay = self.retry_delay
        for attempt in range(self.retries + 1):
            acquired = []
            for resource in resources:
                if not self._try_acquire(resource):
                    break
                acquired.append(resource)
            else:
                return
            for resource in reversed(acquired):
                self._release(resource)
            if attempt < self.retries:
                logger.debug(f"Lock on {', '.join(resources)} busy, retry {attempt + 1}/{self.retries} in {delay:.2f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_retry_delay)
        logger.error(f"Gave up acquiring lock on {', '.join(resources)}")
        raise ContentionError(f"Resource busy: {', '.join(resources)}, please retry")

    @asynccontextmanager
    async def locked(self, *resources: str) -> AsyncIterator[None]:
        """Hold exclusive access to every named resource for the duration of the block."""
        ordered = sorted(set(resources))
        await self._acquire(ordered)
        try:
            yield
        finally:
            for resource in reversed(ordered):
                self._release(resource)

    async def with_exclusive_access(self, resource: str, operation: Callable[[], Awaitable[T]]) -> T:
        async with self.locked(resource):
            return await operation()


class JsonFileStore(RecordStore):
    """One pretty-printed JSON file per resource, guarded by a sibling .lock file."""

    def __init__(self, data_dir: Path, **kwargs: Any):
        super().__init__(**kwargs)
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._file_locks: dict[str, FileLock] = {}
        self._held: set[str] = set()

    def path_for(self, resource: str) -> Path:
        return self.data_dir / f"{resource}.json"

    def _load(self, resource: str) -> Optional[str]:
        try:
            return self.path_for(resource).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _dump(self, resource: str, raw: Optional[str]) -> None:
        path = self.path_for(resource)
        if raw is None:
            path.unlink(missing_ok=True)
            return
        fd, tmp = tempfile.mkstemp(dir=self.data_dir, prefix=f".{resource}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(raw)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _try_acquire(self, resource: str) -> bool:
        # the in-process guard keeps coroutines of this process from re-entering the file lock
        if resource in self._held:
            return False
        lock = self._file_locks.get(resource)
        if lock is None:
            lock = self._file_locks[resource] = FileLock(str(self.path_for(resource)) + ".lock")
        try:
            lock.acquire(timeout=0)
        except Timeout:
            return False
        self._held.add(resource)
        return True

    def _release(self, resource: str) -> None:
        self._held.discard(resource)
        self._file_locks[resource].release()


class MemoryStore(RecordStore):
    """In-memory store with the same lock and serialization contract."""

    def __init__(self, initial: Optional[dict[str, Records]] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self._data: dict[str, str] = {k: _serialize(v) for k, v in (initial or {}).items()}
        self._held: set[str] = set()

    def _load(self, resource: str) -> Optional[str]:
        return self._data.get(resource)

    def _dump(self, resource: str, raw: Optional[str]) -> None:
        if raw is None:
            self._data.pop(resource, None)
        else:
            self._data[resource] = raw

    def _try_acquire(self, resource: str) -> bool:
        if resource in self._held:
            return False
        self._held.add(resource)
        return True

    def _release(self, resource: str) -> None:
        self._held.discard(resource)


def open_store(settings) -> JsonFileStore:
    return JsonFileStore(
        settings.DATA_DIR,
        retries=settings.LOCK_RETRIES,
        retry_delay=settings.LOCK_RETRY_DELAY,
        max_retry_delay=settings.LOCK_MAX_RETRY_DELAY,
    )
