"""
Tests for the disk-backed fragment cache.

Tests cover:
- Hashed filenames under a per-book directory
- Lookup of missing, empty and present files
- Atomic store (no temp files left behind)
- Zero-byte writes raising CacheWriteError
- Oldest-first eviction down to max_size_mb * cleanup_threshold
- Per-book clear and size reporting
"""
from __future__ import annotations

import hashlib
import os
import time

import pytest

from tts_narrator.core.errors import CacheWriteError
from tts_narrator.tts.cache import FragmentCache, book_dir_name, hash_fragment_id


def _age(path, seconds_ago: float) -> None:
    t = time.time() - seconds_ago
    os.utime(path, (t, t))


class TestPaths:
    """Test cache file layout."""

    def test_fragment_file_named_by_sha256(self, tmp_path):
        """Filename is the SHA256 of the fragment ID plus the extension."""
        cache = FragmentCache(tmp_path)
        expected = hashlib.sha256(b"p17").hexdigest() + ".mp3"

        path = cache.path_for("book-42", "p17")

        assert path.name == expected
        assert path.parent == tmp_path / "book-42"
        assert hash_fragment_id("p17") == expected[:-4]

    def test_unsafe_book_id_is_hashed(self):
        """Book IDs that are not a plain path component are hashed."""
        assert book_dir_name("book-42") == "book-42"
        assert book_dir_name("../etc").startswith("book-")
        assert book_dir_name("a/b").startswith("book-")
        assert book_dir_name("..").startswith("book-")

    def test_same_fragment_id_in_two_books(self, tmp_path):
        """Fragments are scoped per book."""
        cache = FragmentCache(tmp_path)
        assert cache.path_for("a", "p1") != cache.path_for("b", "p1")


class TestLookupAndStore:
    """Test lookup() and store()."""

    def test_lookup_missing(self, tmp_path):
        """A missing file is not found, and the path is still returned."""
        cache = FragmentCache(tmp_path)
        path, found = cache.lookup("book", "p1")

        assert found is False
        assert path == cache.path_for("book", "p1")

    def test_store_then_lookup(self, tmp_path):
        """Stored audio is found at the returned path."""
        cache = FragmentCache(tmp_path)
        stored = cache.store("book", "p1", b"ID3audio")

        path, found = cache.lookup("book", "p1")

        assert found is True
        assert path == stored
        assert path.read_bytes() == b"ID3audio"

    def test_store_leaves_no_temp_files(self, tmp_path):
        """The temp file is renamed into place."""
        cache = FragmentCache(tmp_path)
        cache.store("book", "p1", b"audio")

        leftovers = [p.name for p in (tmp_path / "book").iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_store_overwrites(self, tmp_path):
        """A second store replaces the first."""
        cache = FragmentCache(tmp_path)
        cache.store("book", "p1", b"old")
        cache.store("book", "p1", b"newer")

        path, _ = cache.lookup("book", "p1")
        assert path.read_bytes() == b"newer"

    def test_zero_byte_store_raises(self, tmp_path):
        """Writing empty audio raises CacheWriteError and leaves nothing behind."""
        cache = FragmentCache(tmp_path)

        with pytest.raises(CacheWriteError) as exc_info:
            cache.store("book", "p1", b"")

        assert exc_info.value.details["fragment_id"] == "p1"
        _, found = cache.lookup("book", "p1")
        assert found is False
        assert list((tmp_path / "book").iterdir()) == []

    def test_empty_file_is_a_miss(self, tmp_path):
        """A zero-length file on disk does not count as cached."""
        cache = FragmentCache(tmp_path)
        path = cache.path_for("book", "p1")
        path.parent.mkdir(parents=True)
        path.write_bytes(b"")

        _, found = cache.lookup("book", "p1")
        assert found is False

    def test_remove(self, tmp_path):
        """remove() reports whether a file was deleted."""
        cache = FragmentCache(tmp_path)
        cache.store("book", "p1", b"audio")

        assert cache.remove("book", "p1") is True
        assert cache.remove("book", "p1") is False


class TestEviction:
    """Test size-capped eviction."""

    def test_oldest_files_evicted_first(self, tmp_path):
        """Eviction removes oldest-mtime files until at or below the target."""
        roomy = FragmentCache(tmp_path, max_size_mb=1)
        chunk = b"x" * 2000
        for i, age in enumerate([50, 40, 30, 20]):
            _age(roomy.store("book", f"p{i}", chunk), age)
        assert roomy.total_size() == 8000

        # target = 0.01 MB * 0.5 = 5242 bytes
        cache = FragmentCache(tmp_path, max_size_mb=0.01, cleanup_threshold=0.5)

        cache.store("book", "new", chunk)

        # 8000 -> 4000 by dropping p0 and p1, then the new file is added
        assert cache.lookup("book", "p0")[1] is False
        assert cache.lookup("book", "p1")[1] is False
        assert cache.lookup("book", "p2")[1] is True
        assert cache.lookup("book", "p3")[1] is True
        assert cache.lookup("book", "new")[1] is True

    def test_overwritten_entry_never_evicted(self, tmp_path):
        """The fragment being rewritten is skipped even when it is the oldest."""
        roomy = FragmentCache(tmp_path, max_size_mb=1)
        chunk = b"x" * 2000
        for i, age in enumerate([50, 40, 30]):
            _age(roomy.store("book", f"p{i}", chunk), age)

        cache = FragmentCache(tmp_path, max_size_mb=0.01, cleanup_threshold=0.5)
        path = cache.store("book", "p0", b"z" * 500)

        # 6000 -> 4000 by dropping p1; p0 is the write target
        assert path.read_bytes() == b"z" * 500
        assert cache.lookup("book", "p1")[1] is False
        assert cache.lookup("book", "p2")[1] is True

    def test_eviction_spans_books(self, tmp_path):
        """The cap is global; another book's old files can be evicted."""
        cache = FragmentCache(tmp_path, max_size_mb=0.005, cleanup_threshold=0.5)
        _age(cache.store("old-book", "p0", b"x" * 2000), 100)
        _age(cache.store("old-book", "p1", b"x" * 2000), 90)

        cache.store("new-book", "p0", b"y" * 100)

        assert cache.size_of("old-book") <= cache.target_bytes

    def test_no_eviction_under_target(self, tmp_path):
        """Nothing is removed while under the target."""
        cache = FragmentCache(tmp_path, max_size_mb=1)
        cache.store("book", "p0", b"x" * 100)
        cache.store("book", "p1", b"x" * 100)

        assert cache.get_info()["file_count"] == 2
        assert cache.get_info()["total_evicted"] == 0

    def test_explicit_evict(self, tmp_path):
        """evict() reports what it removed."""
        cache = FragmentCache(tmp_path, max_size_mb=1)
        _age(cache.store("book", "p0", b"x" * 1000), 10)
        cache = FragmentCache(tmp_path, max_size_mb=0.001, cleanup_threshold=0.5)

        result = cache.evict()

        assert result == {"files_removed": 1, "bytes_freed": 1000}


class TestClearAndSize:
    """Test clear() and size_of()."""

    def test_size_of(self, tmp_path):
        """size_of() sums one book's files."""
        cache = FragmentCache(tmp_path)
        cache.store("a", "p0", b"x" * 10)
        cache.store("a", "p1", b"x" * 20)
        cache.store("b", "p0", b"x" * 40)

        assert cache.size_of("a") == 30
        assert cache.size_of("b") == 40
        assert cache.size_of("missing") == 0

    def test_clear_removes_book_only(self, tmp_path):
        """clear() removes one book's directory."""
        cache = FragmentCache(tmp_path)
        cache.store("a", "p0", b"x")
        cache.store("b", "p0", b"y")

        cache.clear("a")

        assert not (tmp_path / "a").exists()
        assert cache.lookup("b", "p0")[1] is True

    def test_clear_missing_book_is_noop(self, tmp_path):
        """Clearing an unknown book does not raise."""
        FragmentCache(tmp_path).clear("nobody")
