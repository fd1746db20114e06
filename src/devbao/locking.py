"""Advisory file locks guarding node and cluster records.

Each command that mutates persisted state takes the global ``devbao.lock``
first and then one lock per touched entity, in a fixed order (clusters before
nodes, names sorted) so that concurrent invocations serialise instead of
overwriting each other's JSON documents. Lock files live under the configured
locks directory and are left in place after release for diagnostics; the
lock itself is the ``flock`` held on the open descriptor.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "devbao.lock"
POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock and the time spent waiting for it."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting on every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global, node and cluster locks under *lock_dir*."""

    def __init__(self, lock_dir: Path, default_timeout: float = 30.0) -> None:
        self.lock_dir = Path(lock_dir).expanduser()
        self.default_timeout = default_timeout

    # ------------------------------------------------------------------
    # Single locks
    # ------------------------------------------------------------------
    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process-wide devbao lock."""
        with self._acquire(self.lock_dir / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def node_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for node *name*."""
        path = self.lock_dir / "nodes" / f"{_safe(name)}.lock"
        with self._acquire(path, timeout) as handle:
            yield handle

    @contextmanager
    def cluster_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for cluster *name*."""
        path = self.lock_dir / "clusters" / f"{_safe(name)}.lock"
        with self._acquire(path, timeout) as handle:
            yield handle

    # ------------------------------------------------------------------
    # Bundles
    # ------------------------------------------------------------------
    @contextmanager
    def mutate(
        self,
        *,
        nodes: Iterable[str] = (),
        clusters: Iterable[str] = (),
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock, then cluster locks, then node locks."""
        bundle = LockBundle()
        with ExitStack() as stack:
            bundle.handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(clusters)):
                bundle.handles.append(stack.enter_context(self.cluster_lock(name, timeout=timeout)))
            for name in sorted(set(nodes)):
                bundle.handles.append(stack.enter_context(self.node_lock(name, timeout=timeout)))
            yield bundle

    @contextmanager
    def mutate_nodes(self, names: Iterable[str], *, timeout: float | None = None) -> Iterator[LockBundle]:
        """Shortcut for :meth:`mutate` with only node locks."""
        with self.mutate(nodes=names, timeout=timeout) as bundle:
            yield bundle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = json.dumps(
        {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
    )
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, payload.encode("utf-8"))


def _safe(name: str) -> str:
    return name.replace("/", "-")


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
