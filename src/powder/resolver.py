"""Timestamp -> block resolution.

Order of attempts: exact cache, nearby cache entry, block-time index
(verified against the node and refined by a windowed binary search), full
binary search against the node, and as a last resort the static table of
known pairs. Only when every one of those is exhausted does ``resolve``
raise.
"""

import logging
from dataclasses import replace
from typing import Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import ChainError, IndexerError, PersistenceError, ResolutionError
from .models import BlockReference

logger = logging.getLogger(__name__)

# Hand-verified (timestamp -> block) pairs used only when the network is gone.
FALLBACK_BLOCKS = {
    1651363200: 14723000,  # May 1, 2022
    1609459200: 11565019,  # Jan 1, 2021
    1577836800: 9193266,   # Jan 1, 2020
    1546300800: 6988614,   # Jan 1, 2019
}


class _SearchFailed(Exception):
    pass


class BlockResolver:
    def __init__(self, chain, block_index, cache, config, fallback_blocks=None):
        self.chain = chain
        self.block_index = block_index
        self.cache = cache
        self.config = config
        self.fallback_blocks = FALLBACK_BLOCKS if fallback_blocks is None else fallback_blocks

    async def resolve(self, timestamp: int, use_index: bool = True) -> BlockReference:
        cached = self.cache.get(timestamp)
        if cached is not None:
            logger.info(f"Using cached block number {cached.resolved_block} for timestamp {timestamp}")
            return replace(cached, source='cache')

        nearby = self.cache.nearest(timestamp, self.config.cache_tolerance_seconds)
        seed = None
        if nearby is not None:
            diff = abs(nearby.requested_timestamp - timestamp)
            logger.info(f"Found nearby timestamp {nearby.requested_timestamp} ({diff}s difference)")
            if diff < self.config.cache_reuse_seconds and nearby.resolved_block_timestamp <= timestamp:
                logger.info(f"Using block {nearby.resolved_block} for very close timestamp")
                return self._remember(BlockReference(
                    timestamp, nearby.resolved_block, nearby.resolved_block_timestamp, 'cache'
                ))
            seed = (nearby.resolved_block, nearby.resolved_block_timestamp)

        try:
            return self._remember(await self._resolve_online(timestamp, seed, use_index))
        except ChainError as e:
            logger.error(f"Network resolution failed for timestamp {timestamp}: {e}")

        if nearby is not None and nearby.resolved_block_timestamp <= timestamp:
            logger.warning(f"Falling back to cached block {nearby.resolved_block} from nearby timestamp")
            return self._remember(BlockReference(
                timestamp, nearby.resolved_block, nearby.resolved_block_timestamp, 'cache'
            ))

        fallback = self._static_fallback(timestamp)
        if fallback is not None:
            logger.warning(f"Using fallback block data for timestamp {timestamp}: block {fallback.resolved_block}")
            return self._remember(fallback)

        raise ResolutionError(f"No source could resolve a block for timestamp {timestamp}")

    async def _resolve_online(self, timestamp, seed, use_index) -> BlockReference:
        if use_index and self.block_index is not None:
            try:
                return await self._resolve_via_index(timestamp)
            except IndexerError as e:
                logger.error(f"Etherscan lookup failed: {e}")
            except _SearchFailed as e:
                logger.warning(f"Refinement around the index answer failed ({e}); widening search")

        if seed is not None:
            try:
                return await self._refine(timestamp, *seed)
            except _SearchFailed as e:
                logger.warning(f"Refinement around cached seed failed ({e}); widening search")

        logger.info(f"Falling back to binary search for block at timestamp {timestamp}...")
        latest = await self.chain.block_number()
        try:
            number, block_ts = await self._binary_search(0, latest, timestamp)
        except _SearchFailed as e:
            raise ChainError(str(e)) from e
        return BlockReference(timestamp, number, block_ts, 'search')

    async def _resolve_via_index(self, timestamp) -> BlockReference:
        logger.info(f"Querying Etherscan API for block at timestamp {timestamp}...")
        number = await self.block_index.block_by_time(timestamp)
        logger.info(f"Etherscan returned block #{number} for timestamp {timestamp}")

        try:
            block_ts = await self._read_timestamp(number)
        except ChainError as e:
            raise IndexerError(f"Could not verify block #{number}: {e}") from e
        if block_ts is None:
            raise IndexerError(f"Block #{number} is not on the node yet; index answer unverifiable")

        logger.info(f"Block #{number} has timestamp {block_ts} (target: {timestamp})")
        if block_ts <= timestamp and timestamp - block_ts < self.config.index_accept_seconds:
            return BlockReference(timestamp, number, block_ts, 'index')

        logger.info(f"Block timestamp differs by {abs(block_ts - timestamp)}s, refining search...")
        return await self._refine(timestamp, number, block_ts)

    async def _refine(self, timestamp, seed_block, seed_ts) -> BlockReference:
        window = self.config.search_window_blocks
        if seed_ts <= timestamp:
            number, block_ts = await self._binary_search(
                seed_block, seed_block + window, timestamp, best=(seed_block, seed_ts)
            )
        else:
            number, block_ts = await self._binary_search(max(0, seed_block - window), seed_block - 1, timestamp)
        return BlockReference(timestamp, number, block_ts, 'search')

    async def _read_timestamp(self, number) -> Optional[int]:
        """Block timestamp, retried with backoff; ChainError once retries run out."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=self.config.backoff_base_seconds),
            retry=retry_if_exception_type(ChainError),
            before_sleep=lambda state: logger.warning(
                f"Retry {state.attempt_number}/{self.config.max_retries} for block #{number}: "
                f"{state.outcome.exception()}"
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.chain.get_block_timestamp(number)

    async def _binary_search(self, low, high, target, best: Optional[Tuple[int, int]] = None):
        """Largest block in [low, high] whose timestamp is <= target.

        Bounded by ``max_search_iterations``; when the bound is hit the last
        bracket found is returned, which may be a block or so short. A read
        that still fails after its retries aborts the search with ChainError;
        the bracket is never narrowed on an error.
        """
        logger.info(f"Performing binary search in range [{low}, {high}] for timestamp {target}")
        iterations = 0
        while low <= high and iterations < self.config.max_search_iterations:
            iterations += 1
            mid = (low + high) // 2
            try:
                block_ts = await self._read_timestamp(mid)
            except ChainError as e:
                logger.error(f"Error getting block #{mid}, stopping search: {e}")
                raise ChainError(f"Node unreachable during block search: {e}") from e

            # A block the node does not have yet is beyond the chain head.
            if block_ts is not None and block_ts <= target:
                best = (mid, block_ts)
                low = mid + 1
            else:
                high = mid - 1

        if best is None:
            raise _SearchFailed(f"no block at or before {target} found after {iterations} iterations")
        logger.info(f"Binary search found block #{best[0]} after {iterations} iterations")
        return best

    def _static_fallback(self, timestamp) -> Optional[BlockReference]:
        radius = self.config.static_fallback_radius_seconds
        candidates = [ts for ts in self.fallback_blocks if abs(ts - timestamp) < radius]
        if not candidates:
            return None
        closest = min(candidates, key=lambda ts: abs(ts - timestamp))
        return BlockReference(timestamp, self.fallback_blocks[closest], min(closest, timestamp), 'static-fallback')

    def _remember(self, ref: BlockReference) -> BlockReference:
        if ref.source == 'static-fallback':
            # Approximate; never cached.
            return ref
        try:
            self.cache.put(ref)
        except PersistenceError as e:
            logger.error(str(e))
        return ref