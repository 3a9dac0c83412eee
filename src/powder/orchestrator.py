"""Runs one snapshot: timestamp -> block -> holders -> summed balance.

``SnapshotOrchestrator`` walks the stages for a single request and turns
any exhausted stage into an error result. ``SnapshotService`` is what the
CLI and the API hold on to: it owns the file caches for the lifetime of
the process and wires fresh clients onto a new HTTP session for each run.
"""

import logging
import time
from dataclasses import replace
from enum import Enum

import aiohttp

from .balances import BalanceAggregator
from .cache import BlockCache, HolderCache, ResultStore
from .config import Settings
from .errors import OwnershipError, PersistenceError, ResolutionError
from .holders import AdaptivePageSize, HolderSetBuilder
from .implementations import get_implementation
from .indexers import BlockIndexClient, SubgraphClient
from .models import SnapshotResult, utc_now_iso, wei_to_eth_string
from .multicall import Multicall
from .resolver import BlockResolver
from .rpc import ChainClient

logger = logging.getLogger(__name__)


class Stage(Enum):
    CHECK_CACHE = 'check_cache'
    RESOLVE_BLOCK = 'resolve_block'
    BUILD_HOLDERS = 'build_holders'
    AGGREGATE_BALANCE = 'aggregate_balance'
    PERSIST = 'persist'
    DONE = 'done'
    ERROR = 'error'


def _elapsed_ms(since):
    return int(round((time.time() - since) * 1000))


class SnapshotOrchestrator:
    def __init__(self, resolver, builder, aggregator, result_store, lookup=get_implementation):
        self.resolver = resolver
        self.builder = builder
        self.aggregator = aggregator
        self.result_store = result_store
        self.lookup = lookup
        self.stage = None

    async def compute(self, timestamp: int, implementation_id: str, use_cache: bool = True) -> SnapshotResult:
        implementation = self.lookup(implementation_id)
        if implementation is None:
            raise ValueError(f"Unknown implementation {implementation_id!r}")

        start = time.time()
        metrics = {}

        if use_cache:
            self.stage = Stage.CHECK_CACHE
            stage_start = time.time()
            stored = self.result_store.get(implementation_id, timestamp)
            metrics[Stage.CHECK_CACHE.value] = _elapsed_ms(stage_start)
            if stored is not None:
                logger.info(f"Using saved {implementation_id} result for timestamp {timestamp}")
                self.stage = Stage.DONE
                return replace(stored, from_cache=True)

        logger.info(f"Computing {implementation.name} snapshot for timestamp {timestamp}...")
        ref = None
        try:
            self.stage = Stage.RESOLVE_BLOCK
            stage_start = time.time()
            ref = await self.resolver.resolve(timestamp, use_index=implementation.use_block_index)
            metrics[Stage.RESOLVE_BLOCK.value] = _elapsed_ms(stage_start)
            metrics['block_source'] = ref.source
            logger.info(f"Found block {ref.resolved_block} for timestamp {timestamp} ({ref.source})")

            self.stage = Stage.BUILD_HOLDERS
            stage_start = time.time()
            holder_set = await self.builder.holders(
                ref.resolved_block, ref.resolved_block_timestamp, implementation.strategy
            )
            metrics[Stage.BUILD_HOLDERS.value] = _elapsed_ms(stage_start)
            metrics['holders_source'] = holder_set.source
            if not holder_set:
                raise OwnershipError(f"No holders found at block {ref.resolved_block}")

            self.stage = Stage.AGGREGATE_BALANCE
            stage_start = time.time()
            total = await self.aggregator.total_balance(
                holder_set.holders, ref.resolved_block, implementation.strategy
            )
            metrics[Stage.AGGREGATE_BALANCE.value] = _elapsed_ms(stage_start)
            metrics['lost_addresses'] = len(total.lost_addresses)
        except (ResolutionError, OwnershipError) as e:
            logger.error(f"Snapshot failed during {self.stage.value} for timestamp {timestamp}: {e}")
            result = self._failure(timestamp, implementation, ref, metrics, start, e)
        except Exception as e:
            logger.exception(f"Unexpected error during {self.stage.value} for timestamp {timestamp}")
            result = self._failure(timestamp, implementation, ref, metrics, start, e)
        else:
            metrics['total_ms'] = _elapsed_ms(start)
            result = SnapshotResult(
                timestamp=timestamp,
                implementation_id=implementation_id,
                block=ref.resolved_block,
                holder_count=len(holder_set),
                total_value=wei_to_eth_string(total.total_wei),
                total_wei=str(total.total_wei),
                execution_time_ms=metrics['total_ms'],
                per_stage_metrics=metrics,
                method=implementation.name,
                block_source=ref.source,
                computed_at=utc_now_iso(),
            )
            logger.info(f"Total ETH value: {result.total_value} ETH across {result.holder_count} holders "
                        f"at block {result.block} ({result.execution_time_ms}ms)")

        self._persist(implementation_id, timestamp, result)
        self.stage = Stage.DONE if result.ok else Stage.ERROR
        return result

    def _failure(self, timestamp, implementation, ref, metrics, start, error) -> SnapshotResult:
        self.stage = Stage.ERROR
        metrics['total_ms'] = _elapsed_ms(start)
        return SnapshotResult(
            timestamp=timestamp,
            implementation_id=implementation.id,
            block=ref.resolved_block if ref is not None else 0,
            execution_time_ms=metrics['total_ms'],
            per_stage_metrics=metrics,
            method=implementation.name,
            block_source=ref.source if ref is not None else None,
            computed_at=utc_now_iso(),
            error=str(error) or type(error).__name__,
        )

    def _persist(self, implementation_id, timestamp, result):
        self.stage = Stage.PERSIST
        stage_start = time.time()
        try:
            self.result_store.put(implementation_id, timestamp, result)
        except PersistenceError as e:
            logger.error(f"Result for {implementation_id}/{timestamp} not saved: {e}")
            return
        logger.debug(f"Saved result for {implementation_id}/{timestamp} in {_elapsed_ms(stage_start)}ms")


class SnapshotService:
    """Long-lived owner of the caches; builds a pipeline per request."""

    def __init__(self, settings=None):
        self.settings = settings or Settings.from_env()
        pipeline = self.settings.pipeline
        self.block_cache = BlockCache(self.settings.block_cache_path)
        self.holder_cache = HolderCache(self.settings.holders_cache_path, limit=pipeline.holder_cache_limit)
        self.result_store = ResultStore(self.settings.results_path)
        self._page_sizers = {}

    def page_sizer(self, implementation, config):
        if not implementation.adaptive_pages:
            return AdaptivePageSize.from_config(config)
        if implementation.id not in self._page_sizers:
            self._page_sizers[implementation.id] = AdaptivePageSize.from_config(config)
        return self._page_sizers[implementation.id]

    async def compute(self, timestamp: int, implementation_id: str, use_cache: bool = True) -> SnapshotResult:
        implementation = get_implementation(implementation_id)
        if implementation is None:
            raise ValueError(f"Unknown implementation {implementation_id!r}")

        settings = self.settings
        config = implementation.pipeline_config(settings.pipeline)
        timeout = aiohttp.ClientTimeout(total=settings.request_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            chain = ChainClient(settings.node_url, session)
            block_index = BlockIndexClient(settings.etherscan_api_url, settings.etherscan_api_key, session)
            subgraph = SubgraphClient(settings.subgraph_url, session) if settings.subgraph_url else None
            multicall = Multicall(chain, settings.multicall_address)

            orchestrator = SnapshotOrchestrator(
                BlockResolver(chain, block_index, self.block_cache, config),
                HolderSetBuilder(
                    chain, subgraph, multicall, self.holder_cache, config,
                    settings.collection_address,
                    deploy_block=settings.collection_deploy_block,
                    page_sizer=self.page_sizer(implementation, config),
                ),
                BalanceAggregator(chain, multicall, config),
                self.result_store,
            )
            return await orchestrator.compute(timestamp, implementation_id, use_cache=use_cache)

    def saved_results(self):
        return self.result_store.all()
