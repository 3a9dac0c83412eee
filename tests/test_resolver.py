"""Tests for timestamp -> block resolution."""

import pytest

from powder.errors import ResolutionError
from powder.models import BlockReference
from powder.resolver import BlockResolver

from conftest import ANCHOR_BLOCK, ANCHOR_TIMESTAMP, HEAD_BLOCK, FakeBlockIndex, FakeChain, block_time


@pytest.fixture
def resolver(chain, block_cache, config):
    return BlockResolver(chain, FakeBlockIndex(), block_cache, config)


class TestIndexLookup:
    """The block-time index answer is verified against the node."""

    @pytest.mark.asyncio
    async def test_exact_index_answer_is_accepted(self, resolver):
        ref = await resolver.resolve(ANCHOR_TIMESTAMP)

        assert ref.resolved_block == ANCHOR_BLOCK
        assert ref.resolved_block_timestamp == ANCHOR_TIMESTAMP
        assert ref.source == 'index'

    @pytest.mark.asyncio
    async def test_index_answer_after_target_is_refined(self, chain, block_cache, config):
        # Index claims a block 50 blocks past the target.
        resolver = BlockResolver(chain, FakeBlockIndex(answer=ANCHOR_BLOCK + 50), block_cache, config)

        ref = await resolver.resolve(ANCHOR_TIMESTAMP + 5)

        assert ref.resolved_block == ANCHOR_BLOCK
        assert ref.source == 'search'

    @pytest.mark.asyncio
    async def test_stale_index_answer_is_refined_forward(self, chain, block_cache, config):
        resolver = BlockResolver(chain, FakeBlockIndex(answer=ANCHOR_BLOCK - 100), block_cache, config)

        ref = await resolver.resolve(ANCHOR_TIMESTAMP)

        assert ref.resolved_block == ANCHOR_BLOCK
        assert ref.resolved_block_timestamp <= ANCHOR_TIMESTAMP

    @pytest.mark.asyncio
    async def test_index_failure_falls_back_to_binary_search(self, chain, block_cache, config):
        resolver = BlockResolver(chain, FakeBlockIndex(fail=True), block_cache, config)

        ref = await resolver.resolve(ANCHOR_TIMESTAMP + 30)

        assert ref.resolved_block == ANCHOR_BLOCK + 2
        assert ref.source == 'search'

    @pytest.mark.asyncio
    async def test_use_index_false_skips_index(self, chain, block_cache, config):
        index = FakeBlockIndex()
        resolver = BlockResolver(chain, index, block_cache, config)

        ref = await resolver.resolve(ANCHOR_TIMESTAMP, use_index=False)

        assert index.lookups == []
        assert ref.resolved_block == ANCHOR_BLOCK

    @pytest.mark.asyncio
    async def test_unverifiable_index_answer_falls_through_to_search(self, block_cache, config):
        # The index names a block the node does not have yet.
        chain = FakeChain(head=ANCHOR_BLOCK - 10)
        resolver = BlockResolver(chain, FakeBlockIndex(answer=ANCHOR_BLOCK), block_cache, config)

        ref = await resolver.resolve(ANCHOR_TIMESTAMP)

        assert ref.resolved_block == ANCHOR_BLOCK - 10
        assert ref.resolved_block_timestamp == block_time(ANCHOR_BLOCK - 10)
        assert ref.source == 'search'
        assert block_cache.get(ANCHOR_TIMESTAMP).resolved_block == ANCHOR_BLOCK - 10


class TestBounds:
    @pytest.mark.asyncio
    @pytest.mark.parametrize('offset', [0, 1, 11, 12, 13, 3600])
    async def test_block_is_last_one_at_or_before_target(self, offset, chain, block_cache, config):
        resolver = BlockResolver(chain, None, block_cache, config)
        target = ANCHOR_TIMESTAMP + offset

        ref = await resolver.resolve(target)

        assert block_time(ref.resolved_block) <= target
        assert block_time(ref.resolved_block + 1) > target

    @pytest.mark.asyncio
    async def test_monotonic_in_timestamp(self, chain, config, tmp_path):
        from powder.cache import BlockCache

        resolver = BlockResolver(chain, None, BlockCache(tmp_path / 'blocks.json'), config)
        timestamps = [ANCHOR_TIMESTAMP - 7200, ANCHOR_TIMESTAMP - 5, ANCHOR_TIMESTAMP, ANCHOR_TIMESTAMP + 700]

        blocks = [(await resolver.resolve(ts)).resolved_block for ts in timestamps]

        assert blocks == sorted(blocks)

    @pytest.mark.asyncio
    async def test_target_beyond_head_returns_head(self, block_cache, config):
        chain = FakeChain(head=ANCHOR_BLOCK)
        resolver = BlockResolver(chain, None, block_cache, config)

        ref = await resolver.resolve(ANCHOR_TIMESTAMP + 86400)

        assert ref.resolved_block == ANCHOR_BLOCK


class TestCache:
    @pytest.mark.asyncio
    async def test_second_lookup_hits_cache(self, resolver, chain):
        first = await resolver.resolve(ANCHOR_TIMESTAMP)
        chain.requests.clear()

        second = await resolver.resolve(ANCHOR_TIMESTAMP)

        assert second.resolved_block == first.resolved_block
        assert second.resolved_block_timestamp == first.resolved_block_timestamp
        assert second.source == 'cache'
        assert chain.requests == []

    @pytest.mark.asyncio
    async def test_very_close_timestamp_reuses_cached_block(self, resolver, chain):
        await resolver.resolve(ANCHOR_TIMESTAMP)
        chain.requests.clear()

        ref = await resolver.resolve(ANCHOR_TIMESTAMP + 10)

        assert ref.resolved_block == ANCHOR_BLOCK
        assert ref.source == 'cache'
        assert chain.requests == []

    @pytest.mark.asyncio
    async def test_close_but_earlier_timestamp_is_not_reused(self, resolver):
        await resolver.resolve(ANCHOR_TIMESTAMP)

        ref = await resolver.resolve(ANCHOR_TIMESTAMP - 10)

        assert ref.resolved_block == ANCHOR_BLOCK - 1

    @pytest.mark.asyncio
    async def test_cached_entries_survive_reload(self, resolver, tmp_path):
        from powder.cache import BlockCache

        await resolver.resolve(ANCHOR_TIMESTAMP)

        reloaded = BlockCache(tmp_path / 'block-cache.json')
        assert reloaded.get(ANCHOR_TIMESTAMP) == BlockReference(
            ANCHOR_TIMESTAMP, ANCHOR_BLOCK, ANCHOR_TIMESTAMP, 'index'
        )


class TestOffline:
    @pytest.mark.asyncio
    async def test_static_fallback_when_network_is_down(self, chain, block_cache, config):
        chain.down = True
        resolver = BlockResolver(chain, FakeBlockIndex(fail=True), block_cache, config)

        ref = await resolver.resolve(1609459200)

        assert ref.resolved_block == 11565019
        assert ref.source == 'static-fallback'
        assert ref.is_fallback
        assert block_cache.get(1609459200) is None

    @pytest.mark.asyncio
    async def test_nearby_cache_used_when_network_is_down(self, chain, block_cache, config):
        block_cache.put(BlockReference(ANCHOR_TIMESTAMP, ANCHOR_BLOCK, ANCHOR_TIMESTAMP, 'index'))
        chain.down = True
        resolver = BlockResolver(chain, FakeBlockIndex(fail=True), block_cache, config)

        ref = await resolver.resolve(ANCHOR_TIMESTAMP + 300)

        assert ref.resolved_block == ANCHOR_BLOCK
        assert ref.source == 'cache'

    @pytest.mark.asyncio
    async def test_unknown_timestamp_with_network_down_raises(self, chain, block_cache, config):
        chain.down = True
        resolver = BlockResolver(chain, FakeBlockIndex(fail=True), block_cache, config)

        with pytest.raises(ResolutionError):
            await resolver.resolve(1700000000)

    @pytest.mark.asyncio
    async def test_never_resolves_to_block_zero_silently(self, chain, block_cache, config):
        chain.down = True
        resolver = BlockResolver(chain, None, block_cache, config, fallback_blocks={})

        with pytest.raises(ResolutionError):
            await resolver.resolve(ANCHOR_TIMESTAMP)


class TestSearchErrors:
    @pytest.mark.asyncio
    async def test_transient_timestamp_failure_is_retried(self, chain, block_cache, config):
        # First midpoint of the full search fails twice, then answers.
        chain.failing_timestamps = {HEAD_BLOCK // 2: 2}
        resolver = BlockResolver(chain, FakeBlockIndex(fail=True), block_cache, config)

        ref = await resolver.resolve(ANCHOR_TIMESTAMP)

        assert ref.resolved_block == ANCHOR_BLOCK
        assert ref.source == 'search'
        assert block_cache.get(ANCHOR_TIMESTAMP).resolved_block == ANCHOR_BLOCK

    @pytest.mark.asyncio
    async def test_persistent_failure_aborts_without_caching(self, chain, block_cache, config):
        chain.failing_timestamps = {HEAD_BLOCK // 2: float('inf')}
        resolver = BlockResolver(chain, FakeBlockIndex(fail=True), block_cache, config, fallback_blocks={})

        with pytest.raises(ResolutionError):
            await resolver.resolve(ANCHOR_TIMESTAMP)

        assert block_cache.get(ANCHOR_TIMESTAMP) is None
        assert chain.requests.count('eth_getBlockByNumber') == config.max_retries
