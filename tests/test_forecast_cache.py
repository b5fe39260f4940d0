from concurrent.futures import ThreadPoolExecutor

from services.forecast_cache import FreshnessCache


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl() -> None:
    clock = _Clock()
    cache: FreshnessCache[list[int]] = FreshnessCache(60.0, clock=clock)

    cache.set("60.17,24.94", [1, 2, 3])
    assert cache.get("60.17,24.94") == [1, 2, 3]

    clock.now += 59.0
    assert cache.get("60.17,24.94") == [1, 2, 3]

    clock.now += 1.0
    assert cache.get("60.17,24.94") is None
    assert len(cache) == 0


def test_zero_ttl_disables_caching() -> None:
    cache: FreshnessCache[str] = FreshnessCache(0.0)

    cache.set("key", "value")

    assert cache.get("key") is None
    assert cache.ttl_seconds == 0.0


def test_clear_drops_everything() -> None:
    cache: FreshnessCache[str] = FreshnessCache(60.0)
    cache.set("a", "1")
    cache.set("b", "2")

    cache.clear()

    assert cache.get("a") is None
    assert len(cache) == 0


def test_set_overwrites_and_refreshes_expiry() -> None:
    clock = _Clock()
    cache: FreshnessCache[str] = FreshnessCache(10.0, clock=clock)
    cache.set("a", "old")
    clock.now += 8.0

    cache.set("a", "new")
    clock.now += 8.0

    assert cache.get("a") == "new"


def test_concurrent_access_from_worker_threads() -> None:
    cache: FreshnessCache[tuple[str, int]] = FreshnessCache(60.0)
    keys = [f"60.{index:02d},24.94" for index in range(8)]

    def worker(seed: int) -> None:
        for step in range(500):
            key = keys[(seed + step) % len(keys)]
            cache.set(key, (key, step))
            value = cache.get(key)
            # another thread may have cleared or overwritten it, never corrupted it
            assert value is None or value[0] == key
            if step % 97 == 0:
                cache.clear()

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(worker, seed) for seed in range(8)]
        for future in futures:
            future.result()

    assert len(cache) <= len(keys)
    for key in keys:
        cache.set(key, (key, -1))
    assert len(cache) == len(keys)
    assert all(cache.get(key) == (key, -1) for key in keys)
