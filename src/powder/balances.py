"""Summed native balance of an address set at a block.

Primary tier: chunks of ``getEthBalance`` calls packed into Multicall3
``aggregate3``, a bounded number of chunks in flight, each chunk retried
with exponential backoff. Chunks that never succeed drop to the fallback
tier, batched ``eth_getBalance`` requests. Nothing here raises for missing
data: a balance that cannot be read counts as zero and its address is
reported in ``BalanceTotal.lost_addresses``.
"""

import asyncio
import logging
import time
from typing import Iterable, List, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import ChainError
from .models import BalanceTotal, Strategy

logger = logging.getLogger(__name__)


def _chunks(items, size):
    return [items[i:i + size] for i in range(0, len(items), size)]


class BalanceAggregator:
    def __init__(self, chain, multicall, config):
        self.chain = chain
        self.multicall = multicall
        self.config = config

    async def total_balance(self, addresses: Iterable[str], block: int,
                            strategy: Strategy = Strategy.INDEXED_FIRST) -> BalanceTotal:
        ordered = sorted(set(addresses))
        if not ordered:
            return BalanceTotal(block=block, total_wei=0, sampled_address_count=0)

        start = time.time()
        total_wei = 0
        lost: List[str] = []
        pending = ordered

        if strategy is not Strategy.NAIVE and self.multicall is not None:
            logger.info(f"Getting ETH balances for {len(ordered)} addresses with multicall...")
            total_wei, chunk_lost, pending = await self._via_multicall(ordered, block)
            lost.extend(chunk_lost)
            if pending:
                logger.warning(f"Multicall failed for {len(pending)} addresses, falling back to individual balance queries...")

        if pending:
            fallback_wei, fallback_lost = await self._individually(pending, block)
            total_wei += fallback_wei
            lost.extend(fallback_lost)

        if lost:
            logger.warning(f"  [Block {block}] Partial balance loss: {len(lost)} addresses counted as zero")
        logger.info(f"  [Block {block}] Checked balances in {time.time() - start:.2f}s.")
        return BalanceTotal(
            block=block,
            total_wei=total_wei,
            sampled_address_count=len(ordered) - len(lost),
            lost_addresses=tuple(sorted(lost)),
        )

    async def _via_multicall(self, addresses, block) -> Tuple[int, List[str], List[str]]:
        chunks = _chunks(addresses, self.config.chunk_size)
        semaphore = asyncio.Semaphore(self.config.concurrency_limit)

        async def process_chunk(index, chunk):
            async with semaphore:
                logger.info(f"Processing chunk {index + 1}/{len(chunks)} ({len(chunk)} addresses)")
                try:
                    return await self._with_retries(self.multicall.get_eth_balances, chunk, block,
                                                    label=f"chunk {index + 1}")
                except ChainError as e:
                    logger.error(f"Chunk {index + 1} abandoned after {self.config.max_retries} attempts: {e}")
                    return None

        results = await asyncio.gather(*(process_chunk(i, c) for i, c in enumerate(chunks)))

        total_wei = 0
        lost, pending = [], []
        for chunk, balances in zip(chunks, results):
            if balances is None:
                pending.extend(chunk)
                continue
            chunk_wei, chunk_lost = _sum_balances(chunk, balances)
            total_wei += chunk_wei
            lost.extend(chunk_lost)
        return total_wei, lost, pending

    async def _individually(self, addresses, block) -> Tuple[int, List[str]]:
        logger.info(f"Getting balances individually for {len(addresses)} addresses...")
        batches = _chunks(addresses, self.config.balance_batch_size)
        semaphore = asyncio.Semaphore(self.config.balance_concurrency)

        async def process_batch(index, batch):
            async with semaphore:
                try:
                    balances = await self._with_retries(self.chain.get_balances, batch, block,
                                                        label=f"balance batch {index + 1}")
                except ChainError as e:
                    logger.error(f"Batch balance request failed: {e}")
                    balances = [None] * len(batch)
                if index and index % 20 == 0:
                    logger.info(f"Processed {index}/{len(batches)} balance batches...")
                return balances

        results = await asyncio.gather(*(process_batch(i, b) for i, b in enumerate(batches)))
        total_wei = 0
        lost = []
        for batch, balances in zip(batches, results):
            batch_wei, batch_lost = _sum_balances(batch, balances)
            total_wei += batch_wei
            lost.extend(batch_lost)
        return total_wei, lost

    async def _with_retries(self, fn, addresses, block, label):
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=self.config.backoff_base_seconds),
            retry=retry_if_exception_type(ChainError),
            before_sleep=lambda state: logger.warning(
                f"Retry {state.attempt_number}/{self.config.max_retries} for {label}: {state.outcome.exception()}"
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await fn(addresses, block)


def _sum_balances(addresses, balances: List[Optional[int]]) -> Tuple[int, List[str]]:
    total = 0
    lost = []
    for address, balance in zip(addresses, balances):
        if balance is None:
            logger.warning(f"No balance for {address} (counted as zero)")
            lost.append(address)
        else:
            total += balance
    return total, lost
