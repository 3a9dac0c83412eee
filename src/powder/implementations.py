"""The competing implementations that can be benchmarked against each other.

They all run on the same engine; each one is a strategy plus a few
overrides of the pipeline tuning.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from .models import Strategy


@dataclass(frozen=True)
class Implementation:
    id: str
    name: str
    description: str
    strategy: Strategy
    use_block_index: bool = True
    adaptive_pages: bool = True
    overrides: Dict[str, int] = field(default_factory=dict)
    status: str = 'implemented'

    def pipeline_config(self, base):
        return replace(base, **self.overrides) if self.overrides else base

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'strategy': self.strategy.value,
            'status': self.status,
            'source': f'/api/implementations/{self.id}',
        }


IMPLEMENTATIONS: List[Implementation] = [
    Implementation(
        id='basic',
        name='Individual RPC Calls',
        description='Makes individual RPC calls for each token and holder. Queries token ownership with '
                    'direct contract calls and ETH balances one-by-one. Simplest but slowest method.',
        strategy=Strategy.NAIVE,
        adaptive_pages=False,
        overrides={'balance_batch_size': 10, 'owner_batch_size': 10},
    ),
    Implementation(
        id='graph',
        name='Hybrid Graph+Multicall',
        description='Uses The Graph for token ownership data and Multicall contracts to batch ETH balance '
                    'requests. Resolves blocks by binary search against the node.',
        strategy=Strategy.INDEXED_FIRST,
        use_block_index=False,
        adaptive_pages=False,
        overrides={'page_size_floor': 1000, 'page_size_ceiling': 1000, 'chunk_size': 100},
    ),
    Implementation(
        id='multicall',
        name='Full Multicall Implementation',
        description='Uses only Multicall contracts for both token ownership lookups and ETH balance fetching '
                    'without any external services.',
        strategy=Strategy.ENUMERATION_FIRST,
        adaptive_pages=False,
        overrides={'chunk_size': 100},
    ),
    Implementation(
        id='optimizedSolution',
        name='Optimized Implementation',
        description='Graph+Multicall with the Etherscan block index, adaptive page sizes, large multicall '
                    'chunks and persistent block and holder caches.',
        strategy=Strategy.INDEXED_FIRST,
    ),
]

DEFAULT_IMPLEMENTATION = 'optimizedSolution'


def get_implementation(implementation_id) -> Optional[Implementation]:
    for implementation in IMPLEMENTATIONS:
        if implementation.id == implementation_id:
            return implementation
    return None
