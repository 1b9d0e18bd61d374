"""
Disk-backed Fragment Audio Cache.

Stores synthesized audio for (book_id, fragment_id) pairs:
    - One directory per book under the cache root
    - One file per fragment, named by the SHA256 of the fragment ID
    - Atomic writes (temp file + rename), so a visible file is always complete
    - Size cap with oldest-first eviction across all books
    - No index file: presence of the hashed filename is the source of truth

File Organization:
    {base_dir}/
        book-42/
            3f1a...9c.mp3
            a07e...11.mp3
        book-7/
            ...

Eviction:
    Before each store, if the total size of all cached files exceeds
    max_size_mb * cleanup_threshold, files are deleted oldest-mtime first
    until the total falls to or below that target. The file about to be
    written is never a candidate.

Example:
    >>> cache = FragmentCache("./audio-cache", max_size_mb=500)
    >>> path = cache.store("book-42", "p17", mp3_bytes)
    >>> path, found = cache.lookup("book-42", "p17")
    >>> found
    True
"""
from __future__ import annotations

import hashlib
import re
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from tts_narrator.core.config import CacheConfig, Defaults
from tts_narrator.core.errors import CacheWriteError
from tts_narrator.core.logging import get_logger, info, verbose, warn
from tts_narrator.core.metrics import metrics
from tts_narrator.utils.timeit import timeit

_LOG = get_logger("tts-narrator.cache")

_SAFE_DIR = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def hash_fragment_id(fragment_id: str) -> str:
    """SHA256 hex digest of a fragment ID (the cached file's stem)."""
    return hashlib.sha256(fragment_id.encode("utf-8")).hexdigest()


def book_dir_name(book_id: str) -> str:
    """
    Directory name for a book.

    Plain IDs are used as-is; anything that is not a safe single path
    component is hashed so a book ID can never escape the cache root.
    """
    if _SAFE_DIR.match(book_id) and book_id not in (".", ".."):
        return book_id
    return "book-" + hashlib.sha256(book_id.encode("utf-8")).hexdigest()[:32]


class FragmentCache:
    """
    Thread-safe disk cache of fragment audio.

    Stores happen on the request queue's worker threads, so eviction and
    the write itself are serialized with a lock. Lookups only stat a file
    and take no lock.

    Args:
        base_dir: Cache root directory (created lazily).
        max_size_mb: Total size cap in megabytes.
        cleanup_threshold: Fraction of the cap that triggers eviction and
            that eviction shrinks the cache to.
        file_extension: Extension of cached audio files, without the dot.
    """

    def __init__(
        self,
        base_dir: str | Path = Defaults.CACHE_BASE_DIR,
        max_size_mb: float = Defaults.CACHE_MAX_SIZE_MB,
        cleanup_threshold: float = Defaults.CACHE_CLEANUP_THRESHOLD,
        file_extension: str = Defaults.CACHE_FILE_EXTENSION,
    ):
        self._base_dir = Path(base_dir)
        self._max_size_mb = max_size_mb
        self._cleanup_threshold = cleanup_threshold
        self._ext = file_extension.lstrip(".")
        self._lock = threading.Lock()

        # Stats
        self._total_evicted = 0
        self._total_bytes_freed = 0

    @classmethod
    def from_config(cls, config: CacheConfig) -> "FragmentCache":
        return cls(
            base_dir=config.base_dir,
            max_size_mb=config.max_size_mb,
            cleanup_threshold=config.cleanup_threshold,
            file_extension=config.file_extension,
        )

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def target_bytes(self) -> int:
        """Total size above which a store triggers eviction."""
        return int(self._max_size_mb * 1024 * 1024 * self._cleanup_threshold)

    # =========================================================================
    # Paths
    # =========================================================================

    def book_dir(self, book_id: str) -> Path:
        return self._base_dir / book_dir_name(book_id)

    def path_for(self, book_id: str, fragment_id: str) -> Path:
        """Where the audio for this fragment lives (whether or not it exists)."""
        return self.book_dir(book_id) / f"{hash_fragment_id(fragment_id)}.{self._ext}"

    # =========================================================================
    # Lookup / Store
    # =========================================================================

    def lookup(self, book_id: str, fragment_id: str) -> Tuple[Path, bool]:
        """
        Probe the cache.

        Returns:
            (path, found). A missing, unreadable or empty file is a miss.
            Never raises.
        """
        p = self.path_for(book_id, fragment_id)
        try:
            found = p.stat().st_size > 0
        except OSError:
            found = False

        metrics.record_cache("hit" if found else "miss")
        if found:
            verbose(_LOG, "cache_hit", book_id=book_id, fragment_id=fragment_id)
        return p, found

    def store(self, book_id: str, fragment_id: str, data: bytes) -> Path:
        """
        Write audio for a fragment, evicting old files first if needed.

        Args:
            book_id: Book the fragment belongs to.
            fragment_id: Fragment ID within the book.
            data: Encoded audio bytes.

        Returns:
            Path of the written file.

        Raises:
            CacheWriteError: The write failed, or produced an empty file.
        """
        p = self.path_for(book_id, fragment_id)
        details = {"book_id": book_id, "fragment_id": fragment_id}

        with self._lock:
            if self.total_size() > self.target_bytes:
                self._evict_locked(exclude=p)

            tmp = p.with_name(f"{p.name}.{threading.get_ident()}.tmp")
            try:
                p.parent.mkdir(parents=True, exist_ok=True)
                with timeit("cache_write") as t:
                    tmp.write_bytes(data)
                    written = tmp.stat().st_size
                    if written == 0:
                        raise CacheWriteError("Cached audio file is empty", details=details)
                    tmp.replace(p)
            except CacheWriteError:
                self._discard(tmp)
                raise
            except OSError as e:
                self._discard(tmp)
                raise CacheWriteError(f"Failed to write audio cache file: {e}", details=details) from e

        info(_LOG, "cache_saved", book_id=book_id, fragment_id=fragment_id,
             bytes=written, seconds=round(t.seconds, 4))
        return p

    def remove(self, book_id: str, fragment_id: str) -> bool:
        """Delete one fragment's audio. Returns whether a file was removed."""
        p = self.path_for(book_id, fragment_id)
        try:
            p.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            warn(_LOG, "cache_remove_error", book_id=book_id, fragment_id=fragment_id, error=str(e))
            return False
        verbose(_LOG, "cache_removed", book_id=book_id, fragment_id=fragment_id)
        return True

    def clear(self, book_id: str) -> None:
        """Remove every cached file of a book. Best-effort, never raises."""
        d = self.book_dir(book_id)
        if not d.exists():
            return

        files_removed = 0
        errors: List[str] = []
        try:
            children = list(d.iterdir())
        except OSError as e:
            warn(_LOG, "cache_clear_error", book_id=book_id, error=str(e))
            return

        for f in children:
            try:
                if f.is_dir():
                    shutil.rmtree(f)
                else:
                    f.unlink()
                    files_removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                errors.append(f"{f.name}: {e}")

        try:
            d.rmdir()
        except OSError as e:
            if d.exists():
                errors.append(f"{d}: {e}")

        if errors:
            warn(_LOG, "cache_clear_incomplete", book_id=book_id, errors=len(errors), first=errors[0])
        else:
            info(_LOG, "cache_cleared", book_id=book_id, files_removed=files_removed)

    # =========================================================================
    # Sizes
    # =========================================================================

    def _entries(self, directory: Path) -> List[Path]:
        try:
            return [f for f in directory.glob(f"*.{self._ext}") if f.is_file()]
        except OSError:
            return []

    def _dir_size(self, directory: Path) -> int:
        total = 0
        for f in self._entries(directory):
            try:
                total += f.stat().st_size
            except OSError:
                # Removed concurrently
                continue
        return total

    def size_of(self, book_id: str) -> int:
        """Bytes cached for one book."""
        return self._dir_size(self.book_dir(book_id))

    def total_size(self) -> int:
        """Bytes cached across all books."""
        if not self._base_dir.exists():
            return 0
        return sum(self._dir_size(d) for d in self._base_dir.iterdir() if d.is_dir())

    # =========================================================================
    # Eviction
    # =========================================================================

    def evict(self) -> Dict[str, int]:
        """
        Delete oldest files until the cache is at or below target_bytes.

        Returns:
            Dict with 'files_removed' and 'bytes_freed'.
        """
        with self._lock:
            return self._evict_locked(exclude=None)

    def _evict_locked(self, exclude: Optional[Path]) -> Dict[str, int]:
        if not self._base_dir.exists():
            return {"files_removed": 0, "bytes_freed": 0}

        entries: List[Tuple[float, int, Path]] = []
        for book in self._base_dir.iterdir():
            if not book.is_dir():
                continue
            for f in self._entries(book):
                try:
                    st = f.stat()
                except OSError:
                    continue
                entries.append((st.st_mtime, st.st_size, f))

        total = sum(size for _, size, _ in entries)
        target = self.target_bytes
        files_removed = 0
        bytes_freed = 0

        with timeit("cache_evict") as t:
            for _mtime, size, f in sorted(entries, key=lambda e: e[0]):
                if total <= target:
                    break
                if exclude is not None and f == exclude:
                    continue
                try:
                    f.unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    verbose(_LOG, "evict_file_error", file=str(f), error=str(e))
                    continue
                total -= size
                files_removed += 1
                bytes_freed += size

        self._total_evicted += files_removed
        self._total_bytes_freed += bytes_freed
        metrics.record_eviction(files_removed)

        if files_removed:
            info(_LOG, "cache_evicted", files_removed=files_removed, bytes_freed=bytes_freed,
                 remaining=total, seconds=round(t.seconds, 4))
        return {"files_removed": files_removed, "bytes_freed": bytes_freed}

    # =========================================================================
    # Info
    # =========================================================================

    def get_info(self) -> Dict[str, Any]:
        """
        Current usage, for the CLI and diagnostics.

        Returns:
            Dict with books, file_count, total_bytes, target_bytes and
            eviction totals since startup.
        """
        books = 0
        file_count = 0
        total_bytes = 0
        if self._base_dir.exists():
            for d in self._base_dir.iterdir():
                if not d.is_dir():
                    continue
                entries = self._entries(d)
                if entries:
                    books += 1
                file_count += len(entries)
                total_bytes += self._dir_size(d)

        return {
            "base_dir": str(self._base_dir),
            "books": books,
            "file_count": file_count,
            "total_bytes": total_bytes,
            "target_bytes": self.target_bytes,
            "total_evicted": self._total_evicted,
            "total_bytes_freed": self._total_bytes_freed,
        }

    @staticmethod
    def _discard(tmp: Path) -> None:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            verbose(_LOG, "tmp_cleanup_error", file=str(tmp), error=str(e))
