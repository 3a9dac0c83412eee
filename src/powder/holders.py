"""Ownership set for the collection at a block.

Three tiers, all converging on "addresses holding at least one token at
the block, minus the null address":

* subgraph: cursor-paginated GraphQL listing with an adaptive page size
* enumeration: ``totalSupply`` then ``ownerOf`` for every id
* transfer replay: ERC-721 ``Transfer`` logs up to the block

The strategy decides the order. Results are written through to the
holder cache, which can also answer for a nearby block by wall-clock time.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Optional, Set

from eth_abi.exceptions import DecodingError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import NULL_ADDRESS
from .errors import ChainError, IndexerError, OwnershipError, PersistenceError, RpcError
from .models import HolderSet, Strategy
from .multicall import TRANSFER_TOPIC, decode_address, decode_uint, encode_owner_of, encode_total_supply

logger = logging.getLogger(__name__)


class AdaptivePageSize:
    """Page size that halves on failure and creeps back up after a run of successes."""

    def __init__(self, floor=500, ceiling=10000, growth_streak=2, initial=None):
        self.floor = floor
        self.ceiling = ceiling
        self.growth_streak = growth_streak
        self.size = ceiling if initial is None else max(floor, min(ceiling, initial))
        self._streak = 0

    @classmethod
    def from_config(cls, config):
        return cls(config.page_size_floor, config.page_size_ceiling, config.page_growth_streak)

    def suggest(self) -> int:
        return self.size

    def record_success(self):
        self._streak += 1
        if self._streak >= self.growth_streak and self.size < self.ceiling:
            self.size = min(self.ceiling, max(self.size + 1, int(self.size * 1.25)))
            self._streak = 0
            logger.info(f"Increasing optimal GraphQL batch size to {self.size} for next queries")

    def record_failure(self):
        self._streak = 0
        if self.size > self.floor:
            self.size = max(self.floor, self.size // 2)
            logger.info(f"Reducing optimal GraphQL batch size to {self.size} for next queries")


class HolderSetBuilder:
    def __init__(self, chain, subgraph, multicall, cache, config, collection_address,
                 deploy_block=0, page_sizer=None):
        self.chain = chain
        self.subgraph = subgraph
        self.multicall = multicall
        self.cache = cache
        self.config = config
        self.collection_address = collection_address
        self.deploy_block = deploy_block
        self.page_sizer = page_sizer or AdaptivePageSize.from_config(config)

    async def holders(self, block: int, block_timestamp: Optional[int] = None,
                      strategy: Strategy = Strategy.INDEXED_FIRST) -> HolderSet:
        cached = self.cache.get(block)
        if cached is not None:
            logger.info(f"Using exact cached {len(cached)} holders for block {block}")
            return replace(cached, source='cache')

        if block_timestamp is None:
            block_timestamp = await self._block_timestamp(block)
        if block_timestamp is not None:
            nearby = self.cache.nearest_by_time(block_timestamp, self.config.holder_tolerance_seconds)
            if nearby is not None:
                diff = abs(nearby.captured_at_timestamp - block_timestamp)
                logger.info(f"Found cached holders from block {nearby.block} ({diff}s difference)")
                return replace(nearby, source='cache')

        failures = []
        for source, tier in self._tiers(strategy):
            start = time.time()
            try:
                holders = await tier(block)
            except (IndexerError, ChainError, OwnershipError) as e:
                logger.error(f"Error fetching holders via {source} at block {block}: {e}")
                failures.append(f"{source}: {e}")
                continue
            holders.discard(NULL_ADDRESS)
            if not holders:
                logger.warning(f"{source} returned no holders for block {block}")
                failures.append(f"{source}: no holders")
                continue

            logger.info(f"  [Block {block}] Found {len(holders)} owners via {source} in {time.time() - start:.2f}s.")
            holder_set = HolderSet(block, frozenset(holders), block_timestamp, source)
            self._remember(holder_set)
            return holder_set

        raise OwnershipError(f"All ownership sources failed for block {block}: " + '; '.join(failures))

    def _tiers(self, strategy):
        if strategy is Strategy.NAIVE:
            return [
                ('enumeration', lambda block: self.holders_from_enumeration(block, use_multicall=False)),
                ('transfer-replay', self.holders_from_transfers),
            ]
        indexed = ('subgraph', self.holders_from_subgraph)
        enumerated = ('enumeration', self.holders_from_enumeration)
        replayed = ('transfer-replay', self.holders_from_transfers)
        if strategy is Strategy.ENUMERATION_FIRST:
            return [enumerated, indexed, replayed]
        return [indexed, enumerated, replayed]

    async def holders_from_subgraph(self, block: int) -> Set[str]:
        if self.subgraph is None:
            raise IndexerError("No subgraph configured")

        logger.info(f"Querying The Graph for holders at block {block}...")
        holders = set()
        cursor = ''
        page_size = self.page_sizer.suggest()
        consecutive_failures = 0
        while True:
            try:
                tokens = await self.subgraph.tokens_page(block, cursor, page_size)
            except IndexerError as e:
                consecutive_failures += 1
                self.page_sizer.record_failure()
                if consecutive_failures >= self.config.max_retries:
                    raise
                logger.warning(f"Failed with batch size {page_size}: {e}")
                page_size = self.page_sizer.suggest()
                await asyncio.sleep(self.config.backoff_base_seconds * 2 ** (consecutive_failures - 1))
                continue

            consecutive_failures = 0
            self.page_sizer.record_success()
            holders.update(t.owner for t in tokens)
            logger.info(f"  -> Fetched {len(tokens)} tokens; unique owners so far: {len(holders)}")
            if len(tokens) < page_size:
                return holders
            # Cursor, not offset: the next page starts after the last id seen.
            cursor = tokens[-1].token_id
            page_size = self.page_sizer.suggest()

    async def holders_from_enumeration(self, block: int, use_multicall: bool = True) -> Set[str]:
        try:
            raw = await self.chain.call(self.collection_address, encode_total_supply(), block)
            total_supply = decode_uint(raw)
        except (ChainError, DecodingError, ValueError) as e:
            raise OwnershipError(f"totalSupply failed at block {block}: {e}") from e
        logger.info(f"  [Block {block}] Total supply: {total_supply}.")

        first = self.config.first_token_id
        token_ids = range(first, first + total_supply)
        size = self.config.owner_batch_size
        batches = [token_ids[i:i + size] for i in range(0, len(token_ids), size)]
        fetch = self.multicall.owners_of if (use_multicall and self.multicall is not None) else None
        semaphore = asyncio.Semaphore(self.config.owner_concurrency)

        async def process_batch(ids):
            async with semaphore:
                async for attempt in self._retrying():
                    with attempt:
                        if fetch is not None:
                            owners = await fetch(self.collection_address, list(ids), block)
                        else:
                            owners = await self._owners_individually(ids, block)
                if ids.start > first and (ids.start - first) % 1000 == 0:
                    logger.info(f"  [Block {block}] Checked ownerOf up to token ID: {ids.start}")
                return owners

        results = await asyncio.gather(*(process_batch(ids) for ids in batches), return_exceptions=True)
        holders = set()
        skipped = 0
        for ids, owners in zip(batches, results):
            if isinstance(owners, BaseException):
                raise OwnershipError(f"ownerOf batch {ids.start}-{ids.stop - 1} failed: {owners}") from owners
            for owner in owners:
                if owner is None:
                    skipped += 1
                else:
                    holders.add(owner)
        if skipped:
            logger.info(f"  [Block {block}] Skipped {skipped} nonexistent or unreadable token ids")
        return holders

    async def _owners_individually(self, token_ids, block):
        owners = []
        for token_id in token_ids:
            try:
                data = await self.chain.call(self.collection_address, encode_owner_of(token_id), block)
                owners.append(decode_address(data))
            except RpcError as e:
                # Reverts for burned / never-minted ids.
                logger.debug(f"ownerOf({token_id}) reverted: {e}")
                owners.append(None)
            except (DecodingError, ValueError) as e:
                logger.warning(f"Failed to decode owner for token {token_id}: {e}")
                owners.append(None)
        return owners

    async def holders_from_transfers(self, block: int) -> Set[str]:
        logger.info('Falling back to token transfers method')
        if self.deploy_block > block:
            return set()
        step = self.config.log_range_blocks
        ranges = [(start, min(start + step - 1, block)) for start in range(self.deploy_block, block + 1, step)]
        semaphore = asyncio.Semaphore(self.config.log_concurrency)

        async def fetch(from_block, to_block):
            async with semaphore:
                async for attempt in self._retrying():
                    with attempt:
                        return await self.chain.get_logs(
                            self.collection_address, [TRANSFER_TOPIC], from_block, to_block
                        )

        chunks = await asyncio.gather(*(fetch(lo, hi) for lo, hi in ranges), return_exceptions=True)
        owner_by_token = {}
        transfers = 0
        for (lo, hi), logs in zip(ranges, chunks):
            if isinstance(logs, BaseException):
                raise OwnershipError(f"Transfer logs {lo}-{hi} unavailable: {logs}") from logs
            for log in sorted(logs or [], key=_log_position):
                topics = log.get('topics', [])
                # ERC-721 indexes the token id; anything else is not ours.
                if len(topics) < 4 or int(log['blockNumber'], 16) > block:
                    continue
                owner_by_token[int(topics[3], 16)] = '0x' + topics[2][-40:].lower()
                transfers += 1

        holders = {owner for owner in owner_by_token.values() if owner != NULL_ADDRESS}
        logger.info(f"Found {len(holders)} holders from {transfers} historical transfers")
        return holders

    def _retrying(self):
        return AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=self.config.backoff_base_seconds),
            retry=retry_if_exception_type(ChainError),
            reraise=True,
        )

    async def _block_timestamp(self, block):
        try:
            return await self.chain.get_block_timestamp(block)
        except ChainError as e:
            logger.warning(f"Could not get timestamp for block {block}: {e}")
            return None

    def _remember(self, holder_set):
        try:
            self.cache.put(holder_set)
        except PersistenceError as e:
            logger.error(str(e))


def _log_position(log):
    return int(log['blockNumber'], 16), int(log.get('logIndex', '0x0'), 16)
