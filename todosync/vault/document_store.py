"""Document store interface and a filesystem-backed vault."""

import asyncio
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable

import structlog

log = structlog.stdlib.get_logger()

ModifiedCallback = Callable[[str], None]


class Subscription:
    """Handle returned by ``DocumentStore.subscribe``; ``close()`` releases it."""

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._release()


class DocumentStore(ABC):
    """Text documents addressed by vault-relative paths using ``/`` separators."""

    @abstractmethod
    def read_text(self, path: str) -> str:
        """Read a document.

        Raises:
            FileNotFoundError: If the document does not exist
        """
        pass

    @abstractmethod
    def write_text(self, path: str, text: str) -> None:
        """Create or overwrite a document."""
        pass

    @abstractmethod
    def exists(self, path: str) -> bool:
        pass

    @abstractmethod
    def list_files(self, suffix: str = ".md") -> list[str]:
        """Return all document paths ending in ``suffix``, sorted."""
        pass

    @abstractmethod
    def subscribe(self, callback: ModifiedCallback) -> Subscription:
        """Register ``callback`` to receive the path of every modified document."""
        pass


class FileSystemDocumentStore(DocumentStore):
    """Vault rooted at a directory, with a polling modification watcher.

    Hidden entries (names starting with ``.``) are ignored, which keeps the
    cache directory out of scans. The watcher runs as an asyncio task while at
    least one subscription is open; it compares modification times every
    ``poll_interval`` seconds and reports created or changed files.
    """

    def __init__(self, root: str | Path, poll_interval: float = 2.0):
        """
        Initialize the store.

        Args:
            root: Vault directory; must exist
            poll_interval: Seconds between modification scans

        Raises:
            FileNotFoundError: If root is not a directory
        """
        self._root = Path(root).expanduser().resolve()
        if not self._root.is_dir():
            raise FileNotFoundError(f"Vault root is not a directory: {self._root}")

        self._poll_interval = poll_interval
        self._callbacks: list[ModifiedCallback] = []
        self._mtimes: dict[str, int] = {}
        self._watch_task: asyncio.Task | None = None

        log.info("filesystem_document_store_initialized", root=str(self._root))

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        resolved = (self._root / path).resolve()
        if resolved != self._root and self._root not in resolved.parents:
            raise ValueError(f"Path escapes the vault: {path}")
        return resolved

    def read_text(self, path: str) -> str:
        return self._resolve(path).read_text(encoding="utf-8")

    def write_text(self, path: str, text: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(text)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        log.debug("document_written", path=path, size=len(text))

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def list_files(self, suffix: str = ".md") -> list[str]:
        files = []
        for current, dirs, names in os.walk(self._root):
            dirs[:] = [d for d in dirs if not d.startswith(".")]
            for name in names:
                if name.startswith(".") or not name.endswith(suffix):
                    continue
                full = Path(current) / name
                files.append(full.relative_to(self._root).as_posix())
        return sorted(files)

    def subscribe(self, callback: ModifiedCallback) -> Subscription:
        """
        Register a modification callback and start watching.

        Must be called from a running event loop.
        """
        self._callbacks.append(callback)
        if self._watch_task is None:
            self._mtimes = self._snapshot_mtimes()
            self._watch_task = asyncio.get_running_loop().create_task(self._watch())
            log.info("vault_watcher_started", poll_interval=self._poll_interval)

        def release() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
            if not self._callbacks and self._watch_task is not None:
                self._watch_task.cancel()
                self._watch_task = None
                log.info("vault_watcher_stopped")

        return Subscription(release)

    def poll_once(self) -> list[str]:
        """
        Compare modification times with the previous scan and notify subscribers.

        Returns:
            Paths reported as modified
        """
        current = self._snapshot_mtimes()
        changed = [path for path, mtime in current.items() if self._mtimes.get(path) != mtime]
        self._mtimes = current

        for path in changed:
            for callback in list(self._callbacks):
                try:
                    callback(path)
                except Exception as e:
                    log.error("modified_callback_failed", path=path, error=str(e))
        return changed

    async def _watch(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                self.poll_once()
            except OSError as e:
                log.warning("vault_poll_failed", error=str(e))

    def _snapshot_mtimes(self) -> dict[str, int]:
        mtimes = {}
        for path in self.list_files():
            try:
                mtimes[path] = self._resolve(path).stat().st_mtime_ns
            except FileNotFoundError:
                continue
        return mtimes


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed store; writes notify subscribers synchronously."""

    def __init__(self, files: dict[str, str] | None = None):
        self.files: dict[str, str] = dict(files or {})
        self.writes: list[str] = []
        self._callbacks: list[ModifiedCallback] = []

    def read_text(self, path: str) -> str:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def write_text(self, path: str, text: str) -> None:
        self.files[path] = text
        self.writes.append(path)
        self.touch(path)

    def exists(self, path: str) -> bool:
        return path in self.files

    def list_files(self, suffix: str = ".md") -> list[str]:
        return sorted(p for p in self.files if p.endswith(suffix))

    def subscribe(self, callback: ModifiedCallback) -> Subscription:
        self._callbacks.append(callback)
        return Subscription(lambda: self._callbacks.remove(callback))

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    def touch(self, path: str) -> None:
        """Report ``path`` as modified to every subscriber."""
        for callback in list(self._callbacks):
            callback(path)
