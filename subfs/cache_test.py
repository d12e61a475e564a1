import random
import threading
from pathlib import Path

import pytest

from subfs.cache import MAX_CACHEABLE_FILE_SIZE, LocalCache

MB = 1024 * 1024


@pytest.fixture()
def cache(isolated_dir: Path) -> LocalCache:
    cache_dir = isolated_dir / "cache"
    cache_dir.mkdir()
    return LocalCache(cache_dir, budget_bytes=100 * MB)


def _assert_total_matches_records(cache: LocalCache) -> None:
    assert cache.total == sum(r.size for r in cache.records().values())


def test_admit_and_get(cache: LocalCache) -> None:
    assert cache.get("a.mp3") is None
    assert cache.admit("a.mp3", b"hello", declared_size=5)
    assert "a.mp3" in cache
    assert len(cache) == 1
    assert cache.get("a.mp3") == b"hello"
    assert cache.total == 5

    record = cache.records()["a.mp3"]
    assert record.size == 5
    assert record.path.parent == cache.cache_dir
    assert record.path.read_bytes() == b"hello"


def test_admit_twice_is_a_noop(cache: LocalCache) -> None:
    assert cache.admit("a.mp3", b"hello", declared_size=5)
    assert not cache.admit("a.mp3", b"bye", declared_size=3)
    assert cache.get("a.mp3") == b"hello"
    assert cache.total == 5
    assert len(list(cache.cache_dir.iterdir())) == 1


def test_recorded_size_is_the_real_size(cache: LocalCache) -> None:
    # An over-estimated declared size only affects admission.
    assert cache.admit("a.mp3", b"x" * 100, declared_size=10 * MB)
    assert cache.total == 100
    _assert_total_matches_records(cache)


def test_files_over_ceiling_are_never_cached(isolated_dir: Path) -> None:
    cache = LocalCache(isolated_dir, budget_bytes=1024 * MB)
    assert not cache.admit("big.flac", b"x", declared_size=MAX_CACHEABLE_FILE_SIZE + 1)
    assert not cache.admit("big2.flac", b"x" * (MAX_CACHEABLE_FILE_SIZE + 1), declared_size=0)
    assert len(cache) == 0
    assert cache.total == 0
    assert cache.admit("ok.flac", b"x", declared_size=MAX_CACHEABLE_FILE_SIZE)


def test_overflowing_files_leave_cache_unchanged(isolated_dir: Path) -> None:
    cache = LocalCache(isolated_dir, budget_bytes=10 * MB)
    assert cache.admit("a.mp3", b"a" * 100, declared_size=6 * MB)
    before = cache.records()
    assert not cache.admit("b.mp3", b"b" * 100, declared_size=10 * MB - 99)
    assert cache.records() == before
    assert cache.total == 100
    # Still fits.
    assert cache.admit("c.mp3", b"c" * 100, declared_size=10 * MB - 200)


def test_full_cache_admits_nothing(isolated_dir: Path) -> None:
    cache = LocalCache(isolated_dir, budget_bytes=1 * MB)
    assert cache.admit("a.mp3", b"a" * MB, declared_size=MB)
    assert not cache.admit("b.mp3", b"", declared_size=0)
    assert len(cache) == 1


def test_zero_budget_disables_cache(isolated_dir: Path) -> None:
    cache = LocalCache(isolated_dir, budget_bytes=0)
    assert not cache.admit("a.mp3", b"a", declared_size=1)
    assert len(cache) == 0


def test_cancelled_admission_is_skipped(cache: LocalCache) -> None:
    cancelled = threading.Event()
    cancelled.set()
    assert not cache.admit("a.mp3", b"hello", declared_size=5, cancelled=cancelled)
    assert len(cache) == 0
    assert list(cache.cache_dir.iterdir()) == []


def test_missing_backing_file_is_evicted(cache: LocalCache) -> None:
    cache.admit("a.mp3", b"hello", declared_size=5)
    cache.admit("b.mp3", b"world!", declared_size=6)
    cache.records()["a.mp3"].path.unlink()

    assert cache.get("a.mp3") is None
    assert "a.mp3" not in cache
    assert cache.total == 6
    _assert_total_matches_records(cache)
    # And it can be cached again.
    assert cache.admit("a.mp3", b"hello", declared_size=5)
    assert cache.get("a.mp3") == b"hello"


def test_empty_backing_file_is_evicted(cache: LocalCache) -> None:
    cache.admit("a.mp3", b"hello", declared_size=5)
    cache.records()["a.mp3"].path.write_bytes(b"")
    assert cache.get("a.mp3") is None
    assert len(cache) == 0
    assert cache.total == 0


def test_evict(cache: LocalCache) -> None:
    cache.admit("a.mp3", b"hello", declared_size=5)
    path = cache.records()["a.mp3"].path
    assert cache.evict("a.mp3")
    assert not path.exists()
    assert cache.total == 0
    assert not cache.evict("a.mp3")


def test_purge(cache: LocalCache) -> None:
    for i in range(3):
        cache.admit(f"{i}.mp3", b"x" * (i + 1), declared_size=i + 1)
    paths = [r.path for r in cache.records().values()]
    assert cache.purge() == 3
    assert len(cache) == 0
    assert cache.total == 0
    assert not any(p.exists() for p in paths)


def test_total_matches_records_under_concurrency(isolated_dir: Path) -> None:
    cache = LocalCache(isolated_dir, budget_bytes=64 * 1024)
    errors: list[BaseException] = []

    def churn(seed: int) -> None:
        rng = random.Random(seed)
        try:
            for _ in range(200):
                name = f"{rng.randrange(20)}.mp3"
                action = rng.random()
                if action < 0.5:
                    size = rng.randrange(1, 8 * 1024)
                    cache.admit(name, b"x" * size, declared_size=rng.randrange(0, 2 * size))
                elif action < 0.8:
                    cache.evict(name)
                else:
                    cache.get(name)
        except BaseException as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=churn, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    _assert_total_matches_records(cache)
    assert cache.total <= cache.budget_bytes
    # Every record is backed by exactly one file, and nothing else is left behind.
    assert sorted(p.name for p in isolated_dir.iterdir() if p.name.startswith("subfs")) == sorted(
        r.path.name for r in cache.records().values()
    )
