from media_pipeline.dedup import DedupCache
from media_pipeline.model_cache import ModelCache
from media_pipeline.models import ModelConfig


class Clock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_dedup_window():
    clock = Clock()
    cache = DedupCache(window_s=900, clock=clock)
    assert cache.check_and_mark("m-1") is True
    clock.now = 899
    assert cache.check_and_mark("m-1") is False
    assert cache.seen("m-1")
    clock.now = 901
    # Outside the window the same id is accepted again
    assert cache.check_and_mark("m-1") is True


def test_dedup_sweep_evicts_only_expired():
    clock = Clock()
    cache = DedupCache(window_s=10, clock=clock)
    cache.mark("old")
    clock.now = 8
    cache.mark("new")
    clock.now = 12
    assert cache.sweep() == 1
    assert len(cache) == 1
    assert cache.seen("new")
    assert not cache.seen("old")


def test_model_cache_evicts_least_recently_used():
    cache: ModelCache[str] = ModelCache(maxsize=2)
    cache.get_or_create("a", lambda: "A")
    cache.get_or_create("b", lambda: "B")
    # Touch "a" so "b" becomes the eviction candidate
    assert cache.get_or_create("a", lambda: "unused") == "A"
    cache.get_or_create("c", lambda: "C")
    assert "a" in cache
    assert "b" not in cache
    assert cache.keys() == ["a", "c"]


def test_model_cache_hits_for_identical_configs():
    built = []

    def factory():
        built.append(1)
        return object()

    cache: ModelCache[object] = ModelCache(maxsize=10)
    cfg = ModelConfig(model="m", temperature=0.9, top_k=1, top_p=0.95, max_output_tokens=1024, system_instruction="x")
    same = ModelConfig(model="m", temperature=0.9, top_k=1, top_p=0.95, max_output_tokens=1024, system_instruction="x")
    other = same.model_copy(update={"system_instruction": "y"})

    first = cache.get_or_create(cfg.cache_key(), factory)
    assert cache.get_or_create(same.cache_key(), factory) is first
    cache.get_or_create(other.cache_key(), factory)
    assert len(built) == 2
