"""Records that flow between the pipeline stages and into the cache files.

Every record validates itself in ``from_dict`` so a corrupted or foreign
cache file is rejected on load instead of poisoning a later computation.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from decimal import Decimal, InvalidOperation
from typing import Dict, FrozenSet, Optional, Tuple, Union

from web3 import Web3

BLOCK_SOURCES = ('cache', 'index', 'search', 'static-fallback')
HOLDER_SOURCES = ('cache', 'subgraph', 'enumeration', 'transfer-replay')


class Strategy(Enum):
    """Which ownership and balance tier is tried first."""

    INDEXED_FIRST = 'indexed-first'
    ENUMERATION_FIRST = 'enumeration-first'
    NAIVE = 'naive'


def _require_int(data, key, minimum=0):
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValueError(f"{key} must be an integer >= {minimum}, got {value!r}")
    return value


def _require_str(data, key):
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {value!r}")
    return value


def _require_decimal_str(data, key):
    value = _require_str(data, key)
    try:
        Decimal(value)
    except InvalidOperation:
        raise ValueError(f"{key} must be a decimal string, got {value!r}") from None
    return value


def wei_to_eth_string(total_wei: int) -> str:
    """Format wei as a plain decimal ETH string ('15', '1.5', never '1E+1')."""
    return format(Decimal(Web3.from_wei(total_wei, 'ether')), 'f')


@dataclass(frozen=True)
class BlockReference:
    requested_timestamp: int
    resolved_block: int
    resolved_block_timestamp: int
    source: str = 'index'

    def __post_init__(self):
        if self.source not in BLOCK_SOURCES:
            raise ValueError(f"Unknown block source {self.source!r}")

    @property
    def is_fallback(self) -> bool:
        return self.source == 'static-fallback'

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        return cls(
            requested_timestamp=_require_int(data, 'requested_timestamp'),
            resolved_block=_require_int(data, 'resolved_block'),
            resolved_block_timestamp=_require_int(data, 'resolved_block_timestamp'),
            source=_require_str(data, 'source'),
        )


@dataclass(frozen=True)
class HolderSet:
    block: int
    holders: FrozenSet[str]
    captured_at_timestamp: Optional[int] = None
    source: str = 'subgraph'

    def __post_init__(self):
        if self.source not in HOLDER_SOURCES:
            raise ValueError(f"Unknown holder source {self.source!r}")

    def __len__(self):
        return len(self.holders)

    def to_dict(self):
        return {
            'block': self.block,
            'holders': sorted(self.holders),
            'captured_at_timestamp': self.captured_at_timestamp,
        }

    @classmethod
    def from_dict(cls, data, source='cache'):
        holders = data['holders']
        if not isinstance(holders, list) or not all(isinstance(h, str) for h in holders):
            raise ValueError("holders must be a list of address strings")
        captured = data.get('captured_at_timestamp')
        if captured is not None:
            captured = _require_int(data, 'captured_at_timestamp')
        return cls(
            block=_require_int(data, 'block'),
            holders=frozenset(h.lower() for h in holders),
            captured_at_timestamp=captured,
            source=source,
        )


@dataclass(frozen=True)
class BalanceTotal:
    block: int
    total_wei: int
    sampled_address_count: int
    lost_addresses: Tuple[str, ...] = ()

    @property
    def partial_loss(self) -> bool:
        return bool(self.lost_addresses)


@dataclass(frozen=True)
class SnapshotResult:
    timestamp: int
    implementation_id: str
    block: int = 0
    holder_count: int = 0
    total_value: str = '0'
    total_wei: str = '0'
    execution_time_ms: int = 0
    per_stage_metrics: Dict[str, Union[int, str]] = field(default_factory=dict)
    method: str = ''
    block_source: Optional[str] = None
    computed_at: str = ''
    error: Optional[str] = None
    # Never persisted: set only on the copy handed back from the store.
    from_cache: bool = field(default=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self):
        data = asdict(self)
        data.pop('from_cache')
        return data

    def to_response(self):
        data = self.to_dict()
        data['fromCache'] = self.from_cache
        return data

    @classmethod
    def from_dict(cls, data):
        metrics = data.get('per_stage_metrics', {})
        if not isinstance(metrics, dict):
            raise ValueError("per_stage_metrics must be a mapping")
        error = data.get('error')
        if error is not None and not isinstance(error, str):
            raise ValueError("error must be a string")
        return cls(
            timestamp=_require_int(data, 'timestamp'),
            implementation_id=_require_str(data, 'implementation_id'),
            block=_require_int(data, 'block'),
            holder_count=_require_int(data, 'holder_count'),
            total_value=_require_decimal_str(data, 'total_value'),
            total_wei=_require_decimal_str(data, 'total_wei'),
            execution_time_ms=_require_int(data, 'execution_time_ms'),
            per_stage_metrics=dict(metrics),
            method=data.get('method', ''),
            block_source=data.get('block_source'),
            computed_at=data.get('computed_at', ''),
            error=error,
        )


def utc_now_iso():
    return datetime.now(timezone.utc).isoformat()
