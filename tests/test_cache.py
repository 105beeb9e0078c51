from memTomas.cache import Cache
from memTomas.config import CacheConfig
from memTomas.memory import Memory


def make_cache(**overrides):
    settings = dict(block_size=8, cache_size=32, hit_latency=1, miss_latency=10)
    settings.update(overrides)
    return Cache(CacheConfig(**settings))


def test_geometry():
    cache = make_cache()
    assert cache.num_blocks == 4
    assert cache.block_number(17) == 2
    assert cache.index_of(17) == 2
    assert cache.index_of(40) == 1  # block 5 -> line 1


def test_miss_then_hit():
    cache = make_cache()
    mem = Memory(initial_data=[(8, 0xAB)])

    access = cache.lookup(8)
    assert not access.hit
    assert access.latency == 11
    assert cache.lines == {}  # lookups never install blocks

    block = cache.fill(8, mem)
    assert block.tag == 1
    assert block.data == [0xAB, 0, 0, 0, 0, 0, 0, 0]

    for address in range(8, 16):
        access = cache.lookup(address)
        assert access.hit
        assert access.latency == 1


def test_conflicting_block_evicts():
    cache = make_cache()
    mem = Memory()
    cache.fill(0, mem)            # block 0 -> line 0
    assert cache.lookup(0).hit

    cache.fill(32, mem)           # block 4 -> line 0, evicts block 0
    assert cache.lines[0].tag == 4
    assert not cache.lookup(0).hit
    assert cache.lookup(32).hit


def test_patch_only_touches_resident_bytes():
    cache = make_cache()
    mem = Memory()
    cache.fill(0, mem)

    assert cache.patch(6, b"\x01\x02\x03\x04")  # spills into block 1, not resident
    assert cache.lines[0].data[6:] == [1, 2]
    assert 1 not in cache.lines

    assert not cache.patch(64, b"\xff")


def test_copy_is_independent():
    cache = make_cache()
    cache.fill(0, Memory())
    clone = cache.copy()
    clone.patch(0, b"\x07")
    assert cache.lines[0].data[0] == 0
