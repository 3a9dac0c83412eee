import os
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# --- Configuration ---
NODE_URL = 'http://192.168.10.8:8545'
REQUEST_TIMEOUT = 240
ETHERSCAN_API_URL = 'https://api.etherscan.io/api'
BAYC_CONTRACT_ADDRESS = '0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D'
BAYC_DEPLOY_BLOCK = 12287507
MULTICALL3_ADDRESS = '0xcA11bde05977b3631167028862bE2a173976CA11'
NULL_ADDRESS = '0x0000000000000000000000000000000000000000'

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


@dataclass(frozen=True)
class PipelineConfig:
    """Every retry, batching and tolerance knob used by the pipeline."""

    # Balance aggregation
    chunk_size: int = 5000
    concurrency_limit: int = 3
    max_retries: int = 3
    backoff_base_ms: int = 500
    balance_batch_size: int = 50
    balance_concurrency: int = 4

    # Block resolution
    cache_tolerance_seconds: int = 600
    cache_reuse_seconds: int = 30
    index_accept_seconds: int = 120
    search_window_blocks: int = 1000
    max_search_iterations: int = 40
    static_fallback_radius_seconds: int = 86400

    # Ownership
    holder_tolerance_seconds: int = 3600
    holder_cache_limit: int = 100
    page_size_floor: int = 500
    page_size_ceiling: int = 10000
    page_growth_streak: int = 2
    owner_batch_size: int = 50
    owner_concurrency: int = 8
    first_token_id: int = 0
    log_range_blocks: int = 5000
    log_concurrency: int = 4

    def __post_init__(self):
        if self.page_size_floor <= 0 or self.page_size_floor > self.page_size_ceiling:
            raise ValueError(
                f"page_size_floor ({self.page_size_floor}) must be positive and "
                f"not above page_size_ceiling ({self.page_size_ceiling})"
            )
        for name in ('chunk_size', 'concurrency_limit', 'balance_batch_size', 'balance_concurrency',
                     'owner_batch_size', 'owner_concurrency', 'log_range_blocks', 'log_concurrency'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

    @property
    def backoff_base_seconds(self) -> float:
        return self.backoff_base_ms / 1000.0


@dataclass
class Settings:
    node_url: str = NODE_URL
    request_timeout: int = REQUEST_TIMEOUT
    etherscan_api_url: str = ETHERSCAN_API_URL
    etherscan_api_key: str = ''
    subgraph_url: str = ''
    collection_address: str = BAYC_CONTRACT_ADDRESS
    collection_deploy_block: int = BAYC_DEPLOY_BLOCK
    multicall_address: str = MULTICALL3_ADDRESS
    data_dir: Path = Path('data')
    log_level: str = 'INFO'
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @classmethod
    def from_env(cls, env_file=None):
        """Build settings from the environment, after loading ``.env`` if present."""
        load_dotenv(env_file)
        return cls(
            node_url=os.getenv('NODE_URL', NODE_URL),
            request_timeout=int(os.getenv('REQUEST_TIMEOUT', str(REQUEST_TIMEOUT))),
            etherscan_api_url=os.getenv('ETHERSCAN_API_URL', ETHERSCAN_API_URL),
            etherscan_api_key=os.getenv('ETHERSCAN_API_KEY', ''),
            subgraph_url=os.getenv('SUBGRAPH_URL', os.getenv('BAYC_SUBGRAPH_URL', '')),
            collection_address=os.getenv('COLLECTION_ADDRESS', BAYC_CONTRACT_ADDRESS),
            collection_deploy_block=int(os.getenv('COLLECTION_DEPLOY_BLOCK', str(BAYC_DEPLOY_BLOCK))),
            multicall_address=os.getenv('MULTICALL_ADDRESS', MULTICALL3_ADDRESS),
            data_dir=Path(os.getenv('DATA_DIR', 'data')),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
        )

    @property
    def block_cache_path(self) -> Path:
        return self.data_dir / 'block-cache.json'

    @property
    def holders_cache_path(self) -> Path:
        return self.data_dir / 'holders-cache.json'

    @property
    def results_path(self) -> Path:
        return self.data_dir / 'results.json'


def setup_logging(level='INFO', log_file=None):
    """Log to stdout (and optionally a file) using the project-wide format."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
