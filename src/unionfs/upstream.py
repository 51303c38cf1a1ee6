from abc import ABC, abstractmethod
from typing import Any, Optional, Dict, Iterable, Tuple
import os
import posixpath
import shutil
import logging
import threading
import time
from dataclasses import dataclass

from unionfs.errors import CancelledError, MetricUnavailableError

DEFAULT_MIN_FREE_SPACE = 1024 * 1024 * 1024  # 1 GiB
DEFAULT_CACHE_TIME = 120  # seconds


class Context:
    """
    Cancellation and deadline carrier passed through every selection call.

    A context is cancelled explicitly with cancel() or implicitly once its
    timeout elapses. Child contexts created with with_timeout() are cancelled
    whenever their parent is.
    """
    def __init__(self, timeout: Optional[float] = None, parent: Optional["Context"] = None):
        self._cancelled = threading.Event()
        self._parent = parent
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent.deadline is not None:
            if self.deadline is None or parent.deadline < self.deadline:
                self.deadline = parent.deadline

    def with_timeout(self, timeout: float) -> "Context":
        return Context(timeout=timeout, parent=self)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        if self._parent is not None and self._parent.cancelled:
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self) -> None:
        """Raise CancelledError if the context is no longer live."""
        if self._cancelled.is_set() or (self._parent is not None and self._parent.cancelled):
            raise CancelledError("context cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise CancelledError("context deadline exceeded")


def background() -> Context:
    """Return a context that is never cancelled unless cancel() is called."""
    return Context()


def clean_path(path: str) -> str:
    """Normalize a union path to a relative, slash separated form ("" is the root)."""
    path = posixpath.normpath("/" + (path or "").replace(os.sep, "/"))
    return path.lstrip("/")


class Upstream(ABC):
    """
    One storage backend participating in the union namespace.

    Subclasses provide existence checks and raw metric queries. The base class
    caches free space and object counts for cache_time seconds; failed queries
    are never cached so a recovering backend is picked up on the next call.
    """
    def __init__(self, name: str, min_free_space: int = DEFAULT_MIN_FREE_SPACE,
                 cache_time: float = DEFAULT_CACHE_TIME, writable: bool = True,
                 creatable: bool = True, writeback: bool = False, clock=time.monotonic):
        if not name:
            raise ValueError("upstream name must not be empty")
        if min_free_space < 0:
            raise ValueError(f"min_free_space must be >= 0, got {min_free_space}")
        self._name = name
        self._min_free_space = int(min_free_space)
        self.cache_time = cache_time
        self.writable = writable
        self.creatable = creatable and writable
        self.writeback = writeback
        self._clock = clock
        self._cache: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(f"Upstream({name})")

    @property
    def name(self) -> str:
        return self._name

    @property
    def min_free_space(self) -> int:
        return self._min_free_space

    @abstractmethod
    def exists(self, ctx: Context, path: str) -> bool:
        """Check whether path resolves to an object or directory on this upstream."""
        pass

    @abstractmethod
    def entry(self, ctx: Context, path: str) -> Optional["Entry"]:
        """Return the Entry for path, or None if it does not exist here."""
        pass

    @abstractmethod
    def _fetch_free_space(self, ctx: Context) -> int:
        pass

    @abstractmethod
    def _fetch_num_objects(self, ctx: Context) -> int:
        pass

    def free_space(self, ctx: Context) -> int:
        """Free bytes on the upstream. Raises if the backend cannot report it."""
        return self._cached_metric(ctx, "free_space", self._fetch_free_space)

    def num_objects(self, ctx: Context) -> int:
        """Total number of objects on the upstream. Raises if unsupported."""
        return self._cached_metric(ctx, "num_objects", self._fetch_num_objects)

    def invalidate(self) -> None:
        """Drop cached metrics, forcing the next query to hit the backend."""
        with self._lock:
            self._cache.clear()

    def _cached_metric(self, ctx: Context, metric: str, fetch) -> int:
        ctx.check()
        now = self._clock()
        with self._lock:
            cached = self._cache.get(metric)
            if cached is not None and self.cache_time > 0 and now - cached[1] < self.cache_time:
                return cached[0]
        value = int(fetch(ctx))
        with self._lock:
            self._cache[metric] = (value, now)
        self.logger.debug(f"Refreshed {metric}={value}")
        return value

    def __repr__(self):
        return f"{type(self).__name__}({self._name!r})"


@dataclass(frozen=True)
class Entry:
    """A listed filesystem object annotated with the upstream that produced it."""
    path: str
    upstream: Upstream
    is_dir: bool = False
    size: int = 0
    mod_time: float = 0.0


class MemoryUpstream(Upstream):
    """
    Upstream that keeps its namespace in a dict.
    Useful for tests and simulations: free_space and num_objects are
    configured values, and None means the backend cannot report that metric.
    """
    def __init__(self, name: str, files: Optional[Iterable[str]] = None,
                 free_space: Optional[int] = None, num_objects: Optional[int] = None,
                 **kwargs: Any):
        super().__init__(name, **kwargs)
        self._files: Dict[str, int] = {}
        self._dirs = {""}
        self.reported_free_space = free_space
        self.reported_num_objects = num_objects
        for path in files or ():
            self.put(path)

    def put(self, path: str, size: int = 0) -> None:
        path = clean_path(path)
        if not path:
            raise ValueError("cannot store an object at the root")
        self._files[path] = size
        self.mkdir(posixpath.dirname(path))

    def mkdir(self, path: str) -> None:
        path = clean_path(path)
        while path not in self._dirs:
            self._dirs.add(path)
            path = posixpath.dirname(path)

    def remove(self, path: str) -> None:
        self._files.pop(clean_path(path), None)

    def exists(self, ctx: Context, path: str) -> bool:
        ctx.check()
        path = clean_path(path)
        return path in self._files or path in self._dirs

    def entry(self, ctx: Context, path: str) -> Optional[Entry]:
        ctx.check()
        path = clean_path(path)
        if path in self._files:
            return Entry(path=path, upstream=self, size=self._files[path])
        if path in self._dirs:
            return Entry(path=path, upstream=self, is_dir=True)
        return None

    def _fetch_free_space(self, ctx: Context) -> int:
        if self.reported_free_space is None:
            raise MetricUnavailableError(f"free space not supported by {self.name}")
        return self.reported_free_space

    def _fetch_num_objects(self, ctx: Context) -> int:
        if self.reported_num_objects is None:
            raise MetricUnavailableError(f"number of objects not supported by {self.name}")
        return self.reported_num_objects


class LocalUpstream(Upstream):
    """
    Upstream backed by a directory on the local filesystem.
    Free space comes from shutil.disk_usage on the root, the object count from
    walking the tree (cached like every other metric).
    """
    def __init__(self, name: str, root_path: str, **kwargs: Any):
        super().__init__(name, **kwargs)
        self.root_path = os.path.abspath(root_path)

    def _local_path(self, path: str) -> str:
        return os.path.join(self.root_path, *clean_path(path).split("/"))

    def exists(self, ctx: Context, path: str) -> bool:
        ctx.check()
        return os.path.exists(self._local_path(path))

    def entry(self, ctx: Context, path: str) -> Optional[Entry]:
        ctx.check()
        try:
            st = os.stat(self._local_path(path))
        except FileNotFoundError:
            return None
        is_dir = os.path.isdir(self._local_path(path))
        return Entry(path=clean_path(path), upstream=self, is_dir=is_dir,
                     size=0 if is_dir else st.st_size, mod_time=st.st_mtime)

    def _fetch_free_space(self, ctx: Context) -> int:
        try:
            return shutil.disk_usage(self.root_path).free
        except OSError as e:
            raise MetricUnavailableError(f"free space of {self.root_path}: {e}") from e

    def _fetch_num_objects(self, ctx: Context) -> int:
        if not os.path.isdir(self.root_path):
            raise MetricUnavailableError(f"{self.root_path} is not a directory")
        count = 0
        for _dirpath, _dirnames, filenames in os.walk(self.root_path):
            ctx.check()
            count += len(filenames)
        return count
