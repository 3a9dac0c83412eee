"""File-backed caches.

Each store is read fully into memory when constructed and written back in
its entirety on every update, via a temp file and ``os.replace``. On disk
every file shares one envelope::

    {"schema_version": 1, "entries": {...}}

A file with another version (or no envelope) is offered to ``migrate``; if
that cannot make sense of it the contents are dropped and rebuilt lazily.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional

from .errors import PersistenceError
from .models import BlockReference, HolderSet, SnapshotResult

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

LEGACY_METRIC_NAMES = {
    'blockResolutionTime': 'resolve_block',
    'holdersResolutionTime': 'build_holders',
    'balanceResolutionTime': 'aggregate_balance',
    'totalTime': 'total_ms',
}


class JsonFileStore:
    kind = 'cache'

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self.entries = self._load()

    def __len__(self):
        return len(self.entries)

    def _load(self):
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            logger.warning(f"Error loading {self.kind} from {self.path}: {e}. Starting empty.")
            return {}

        if not isinstance(raw, dict) or raw.get('schema_version') != SCHEMA_VERSION:
            migrated = self.migrate(raw)
            if migrated is None:
                logger.warning(f"{self.path} has an unknown schema; dropping {self.kind} and rebuilding.")
                return {}
            logger.info(f"Migrated {self.kind} in {self.path} to schema version {SCHEMA_VERSION}")
            raw = migrated

        try:
            entries = self.parse_entries(raw['entries'])
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Invalid {self.kind} in {self.path} ({e}); dropping and rebuilding.")
            return {}
        logger.info(f"Loaded {len(entries)} cached {self.kind} entries from {self.path}")
        return entries

    def migrate(self, raw):
        """Turn an older file layout into the current envelope, or return None."""
        return None

    def parse_entries(self, raw_entries):
        raise NotImplementedError

    def dump_entries(self):
        raise NotImplementedError

    def save(self):
        payload = {'schema_version': SCHEMA_VERSION, 'entries': self.dump_entries()}
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(json.dumps(payload, indent=2), encoding='utf-8')
                os.replace(tmp_path, self.path)
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(f"Error saving {self.kind} to {self.path}: {e}") from e
        logger.debug(f"Saved {len(self.entries)} {self.kind} entries to {self.path}")


class BlockCache(JsonFileStore):
    """requested timestamp -> BlockReference."""

    kind = 'block numbers'

    def parse_entries(self, raw_entries):
        return {int(ts): BlockReference.from_dict(ref) for ts, ref in raw_entries.items()}

    def dump_entries(self):
        return {str(ts): ref.to_dict() for ts, ref in sorted(self.entries.items())}

    def get(self, timestamp: int) -> Optional[BlockReference]:
        return self.entries.get(timestamp)

    def nearest(self, timestamp: int, radius: int) -> Optional[BlockReference]:
        """Closest cached entry whose requested timestamp is strictly within ``radius`` seconds."""
        best = None
        for ts, ref in self.entries.items():
            diff = abs(ts - timestamp)
            if diff < radius and (best is None or diff < abs(best.requested_timestamp - timestamp)):
                best = ref
        return best

    def put(self, ref: BlockReference):
        self.entries[ref.requested_timestamp] = ref
        self.save()


class HolderCache(JsonFileStore):
    """block -> HolderSet, capped to the ``limit`` highest blocks."""

    kind = 'holder snapshots'

    def __init__(self, path, limit=100):
        self.limit = limit
        super().__init__(path)

    def parse_entries(self, raw_entries):
        entries = {}
        for block, snapshot in raw_entries.items():
            holder_set = HolderSet.from_dict(snapshot)
            if holder_set.block != int(block):
                raise ValueError(f"Holder snapshot keyed {block} claims block {holder_set.block}")
            entries[holder_set.block] = holder_set
        return entries

    def dump_entries(self):
        return {str(block): hs.to_dict() for block, hs in sorted(self.entries.items())}

    def get(self, block: int) -> Optional[HolderSet]:
        return self.entries.get(block)

    def nearest_by_time(self, timestamp: int, radius: int) -> Optional[HolderSet]:
        """Cached snapshot whose block timestamp is closest to ``timestamp``, strictly within ``radius``."""
        best, best_diff = None, None
        for holder_set in self.entries.values():
            if holder_set.captured_at_timestamp is None:
                continue
            diff = abs(holder_set.captured_at_timestamp - timestamp)
            if diff < radius and (best_diff is None or diff < best_diff):
                best, best_diff = holder_set, diff
        return best

    def put(self, holder_set: HolderSet):
        self.entries[holder_set.block] = holder_set
        self._evict()
        self.save()

    def _evict(self):
        if len(self.entries) <= self.limit:
            return
        keep = sorted(self.entries, reverse=True)[:self.limit]
        dropped = len(self.entries) - len(keep)
        self.entries = {block: self.entries[block] for block in keep}
        logger.info(f"Evicted {dropped} old holder snapshots (keeping {self.limit})")


class ResultStore(JsonFileStore):
    """(implementation id, timestamp) -> SnapshotResult."""

    kind = 'results'

    def parse_entries(self, raw_entries):
        entries = {}
        for implementation_id, by_timestamp in raw_entries.items():
            entries[implementation_id] = {
                str(ts): SnapshotResult.from_dict(record) for ts, record in by_timestamp.items()
            }
        return entries

    def dump_entries(self):
        return {
            implementation_id: {ts: result.to_dict() for ts, result in by_timestamp.items()}
            for implementation_id, by_timestamp in self.entries.items()
        }

    def get(self, implementation_id: str, timestamp: int) -> Optional[SnapshotResult]:
        return self.entries.get(implementation_id, {}).get(str(timestamp))

    def put(self, implementation_id: str, timestamp: int, result: SnapshotResult):
        self.entries.setdefault(implementation_id, {})[str(timestamp)] = result
        self.save()

    def all(self) -> Dict[str, Dict[str, dict]]:
        return self.dump_entries()

    def migrate(self, raw):
        """Accept the pre-envelope layout ``{implementation: {timestamp: record}}``."""
        if not isinstance(raw, dict) or 'schema_version' in raw:
            return None
        entries = {}
        for implementation_id, by_timestamp in raw.items():
            if not isinstance(by_timestamp, dict):
                return None
            for ts, record in by_timestamp.items():
                try:
                    entries.setdefault(implementation_id, {})[ts] = _migrate_legacy_result(
                        implementation_id, ts, record
                    )
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping unreadable legacy result {implementation_id}/{ts}: {e}")
        return {'schema_version': SCHEMA_VERSION, 'entries': entries}


def _legacy_wei(value):
    if isinstance(value, dict) and 'hex' in value:
        return str(int(value['hex'], 16))
    if value in (None, ''):
        return '0'
    return str(int(str(value)))


def _migrate_legacy_result(implementation_id, ts, record):
    metrics = {
        LEGACY_METRIC_NAMES.get(name, name): value
        for name, value in (record.get('metrics') or {}).items()
    }
    result = SnapshotResult(
        timestamp=int(ts),
        implementation_id=implementation_id,
        block=int(record.get('blockNumber') or record.get('block') or 0),
        holder_count=int(record.get('holderCount') or 0),
        total_value=str(record.get('totalEth') or '0'),
        total_wei=_legacy_wei(record.get('totalWei')),
        execution_time_ms=int(record.get('executionTime') or 0),
        per_stage_metrics=metrics,
        method=record.get('method') or '',
        computed_at=record.get('timestamp') or '',
        error=record.get('error'),
    )
    # Round-trip through the validator so bad legacy values fail here.
    return SnapshotResult.from_dict(result.to_dict()).to_dict()
