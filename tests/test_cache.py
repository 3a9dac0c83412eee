"""Tests for the file-backed caches and the result store."""

import json

import pytest

from powder.cache import SCHEMA_VERSION, BlockCache, HolderCache, ResultStore
from powder.errors import PersistenceError
from powder.models import BlockReference, HolderSet, SnapshotResult

from conftest import ANCHOR_BLOCK, ANCHOR_TIMESTAMP, HOLDERS


def sample_result(**overrides):
    fields = dict(
        timestamp=ANCHOR_TIMESTAMP,
        implementation_id='optimizedSolution',
        block=ANCHOR_BLOCK,
        holder_count=5,
        total_value='15.000000000000000001',
        total_wei='15000000000000000001',
        execution_time_ms=1234,
        per_stage_metrics={'resolve_block': 10, 'block_source': 'index'},
        method='Optimized Implementation',
        block_source='index',
        computed_at='2022-05-01T00:00:00+00:00',
    )
    fields.update(overrides)
    return SnapshotResult(**fields)


class TestResultStore:
    def test_round_trip_through_disk(self, tmp_path):
        path = tmp_path / 'results.json'
        result = sample_result()
        ResultStore(path).put('optimizedSolution', ANCHOR_TIMESTAMP, result)

        loaded = ResultStore(path).get('optimizedSolution', ANCHOR_TIMESTAMP)

        assert loaded == result
        assert loaded.total_value == '15.000000000000000001'

    def test_error_results_are_stored(self, result_store):
        result = sample_result(total_value='0', total_wei='0', error='No source could resolve a block')

        result_store.put('graph', ANCHOR_TIMESTAMP, result)

        assert result_store.get('graph', ANCHOR_TIMESTAMP).error == 'No source could resolve a block'

    def test_all_is_two_level_mapping(self, result_store):
        result_store.put('graph', ANCHOR_TIMESTAMP, sample_result(implementation_id='graph'))

        saved = result_store.all()

        assert list(saved) == ['graph']
        assert saved['graph'][str(ANCHOR_TIMESTAMP)]['total_wei'] == '15000000000000000001'

    def test_file_uses_versioned_envelope(self, tmp_path):
        path = tmp_path / 'results.json'
        ResultStore(path).put('basic', ANCHOR_TIMESTAMP, sample_result(implementation_id='basic'))

        raw = json.loads(path.read_text())

        assert raw['schema_version'] == SCHEMA_VERSION
        assert 'basic' in raw['entries']

    def test_legacy_layout_is_migrated(self, tmp_path):
        path = tmp_path / 'results.json'
        path.write_text(json.dumps({
            'graph': {
                str(ANCHOR_TIMESTAMP): {
                    'totalEth': '15.0',
                    'holderCount': 5,
                    'blockNumber': ANCHOR_BLOCK,
                    'executionTime': 4200,
                    'metrics': {'blockResolutionTime': 100, 'totalTime': 4200},
                    'totalWei': {'type': 'BigNumber', 'hex': hex(15 * 10 ** 18)},
                    'method': 'Graph+Multicall',
                    'timestamp': '2024-01-01T00:00:00.000Z',
                },
            },
        }))

        loaded = ResultStore(path).get('graph', ANCHOR_TIMESTAMP)

        assert loaded.block == ANCHOR_BLOCK
        assert loaded.holder_count == 5
        assert loaded.total_wei == str(15 * 10 ** 18)
        assert loaded.per_stage_metrics == {'resolve_block': 100, 'total_ms': 4200}

    def test_unwritable_path_raises_persistence_error(self, tmp_path):
        blocker = tmp_path / 'not-a-dir'
        blocker.write_text('')
        store = ResultStore(blocker / 'results.json')

        with pytest.raises(PersistenceError):
            store.put('basic', ANCHOR_TIMESTAMP, sample_result())


class TestSchemaValidation:
    def test_version_mismatch_drops_cache(self, tmp_path):
        path = tmp_path / 'block-cache.json'
        path.write_text(json.dumps({'schema_version': 99, 'entries': {'1': {}}}))

        assert len(BlockCache(path)) == 0

    def test_legacy_block_cache_is_dropped(self, tmp_path):
        path = tmp_path / 'block-cache.json'
        path.write_text(json.dumps({str(ANCHOR_TIMESTAMP): ANCHOR_BLOCK}))

        assert len(BlockCache(path)) == 0

    def test_corrupt_json_drops_cache(self, tmp_path):
        path = tmp_path / 'holders-cache.json'
        path.write_text('{not json')

        assert len(HolderCache(path)) == 0

    def test_invalid_entry_drops_cache(self, tmp_path):
        path = tmp_path / 'block-cache.json'
        path.write_text(json.dumps({
            'schema_version': SCHEMA_VERSION,
            'entries': {'1': {'requested_timestamp': 1, 'resolved_block': -5,
                              'resolved_block_timestamp': 1, 'source': 'index'}},
        }))

        assert len(BlockCache(path)) == 0

    def test_holder_snapshot_under_wrong_key_is_rejected(self, tmp_path):
        path = tmp_path / 'holders-cache.json'
        path.write_text(json.dumps({
            'schema_version': SCHEMA_VERSION,
            'entries': {'1': {'block': 2, 'holders': [], 'captured_at_timestamp': None}},
        }))

        assert len(HolderCache(path)) == 0


class TestBlockCache:
    def test_nearest_is_strictly_within_radius(self, block_cache):
        block_cache.put(BlockReference(ANCHOR_TIMESTAMP, ANCHOR_BLOCK, ANCHOR_TIMESTAMP))

        assert block_cache.nearest(ANCHOR_TIMESTAMP + 599, 600) is not None
        assert block_cache.nearest(ANCHOR_TIMESTAMP + 600, 600) is None

    def test_nearest_picks_closest(self, block_cache):
        block_cache.put(BlockReference(ANCHOR_TIMESTAMP, ANCHOR_BLOCK, ANCHOR_TIMESTAMP))
        block_cache.put(BlockReference(ANCHOR_TIMESTAMP + 120, ANCHOR_BLOCK + 10, ANCHOR_TIMESTAMP + 120))

        assert block_cache.nearest(ANCHOR_TIMESTAMP + 100, 600).resolved_block == ANCHOR_BLOCK + 10


class TestHolderCache:
    def test_keeps_only_highest_blocks(self, tmp_path):
        cache = HolderCache(tmp_path / 'holders-cache.json', limit=3)
        for block in range(1, 6):
            cache.put(HolderSet(block, frozenset(HOLDERS[:1]), block * 12))

        assert sorted(cache.entries) == [3, 4, 5]
        assert sorted(HolderCache(tmp_path / 'holders-cache.json', limit=3).entries) == [3, 4, 5]

    def test_reloaded_snapshot_is_marked_as_cache(self, tmp_path):
        path = tmp_path / 'holders-cache.json'
        HolderCache(path).put(HolderSet(ANCHOR_BLOCK, frozenset(HOLDERS), ANCHOR_TIMESTAMP, 'subgraph'))

        loaded = HolderCache(path).get(ANCHOR_BLOCK)

        assert loaded.holders == frozenset(HOLDERS)
        assert loaded.source == 'cache'
        assert loaded.captured_at_timestamp == ANCHOR_TIMESTAMP
