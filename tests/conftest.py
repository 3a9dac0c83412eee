import pytest
from eth_abi import decode, encode

from powder.cache import BlockCache, HolderCache, ResultStore
from powder.config import PipelineConfig
from powder.errors import ChainError, IndexerError, RpcError
from powder.indexers import TokenOwnership
from powder.multicall import OWNER_OF, TOTAL_SUPPLY

ANCHOR_TIMESTAMP = 1651363200
ANCHOR_BLOCK = 14723000
BLOCK_TIME = 12
HEAD_BLOCK = 15000000
COLLECTION = '0xbc4ca0eda7647a8ab7c2061c2e118a18a936f13d'
ETHER = 10 ** 18

HOLDERS = [f'0x{i:040x}' for i in range(1, 6)]


def block_time(number):
    """Perfectly regular 12s chain anchored so ANCHOR_BLOCK lands on ANCHOR_TIMESTAMP."""
    return ANCHOR_TIMESTAMP + (number - ANCHOR_BLOCK) * BLOCK_TIME


class FakeChain:
    """In-memory stand-in for ChainClient."""

    def __init__(self, balances=None, owners=None, logs=None, head=HEAD_BLOCK):
        self.balances = balances or {}
        self.owners = owners or {}
        self.logs = logs or []
        self.head = head
        self.down = False
        self.failing_timestamps = {}
        self.failing_balance_batches = 0
        self.requests = []

    def _record(self, method):
        self.requests.append(method)
        if self.down:
            raise ChainError(f"{method}: connection refused")

    async def block_number(self):
        self._record('eth_blockNumber')
        return self.head

    async def get_block_timestamp(self, number):
        self._record('eth_getBlockByNumber')
        if self.failing_timestamps.get(number, 0) > 0:
            self.failing_timestamps[number] -= 1
            raise ChainError(f"timeout reading block {number}")
        if number > self.head or number < 0:
            return None
        return block_time(number)

    async def get_balances(self, addresses, block):
        self._record('eth_getBalance')
        if self.failing_balance_batches:
            self.failing_balance_batches -= 1
            raise ChainError("batch rejected")
        return [self.balances.get(address) for address in addresses]

    async def call(self, to, data, block):
        self._record('eth_call')
        if data[:4] == TOTAL_SUPPLY:
            return encode(['uint256'], [max(self.owners, default=-1) + 1])
        if data[:4] == OWNER_OF:
            token_id = decode(['uint256'], data[4:])[0]
            owner = self.owners.get(token_id)
            if owner is None:
                raise RpcError('execution reverted: ERC721: owner query for nonexistent token', 3)
            return encode(['address'], [owner])
        raise RpcError('execution reverted')

    async def get_logs(self, address, topics, from_block, to_block):
        self._record('eth_getLogs')
        return [log for log in self.logs if from_block <= int(log['blockNumber'], 16) <= to_block]


class FakeMulticall:
    def __init__(self, chain, failures=0):
        self.chain = chain
        self.failures = failures
        self.balance_calls = []
        self.owner_calls = 0

    async def get_eth_balances(self, addresses, block):
        self.balance_calls.append(list(addresses))
        if self.failures:
            self.failures -= 1
            raise ChainError("aggregate3 reverted")
        return [self.chain.balances.get(address) for address in addresses]

    async def owners_of(self, collection, token_ids, block):
        self.owner_calls += 1
        if self.chain.down:
            raise ChainError("connection refused")
        return [self.chain.owners.get(token_id) for token_id in token_ids]


class FakeSubgraph:
    """Serves ``tokens`` (id -> owner) in id order; pages above ``max_page_size`` fail."""

    def __init__(self, tokens=None, max_page_size=None, broken=False):
        self.tokens = sorted((str(k), v) for k, v in (tokens or {}).items())
        self.max_page_size = max_page_size
        self.broken = broken
        self.page_sizes = []

    async def tokens_page(self, block, cursor, page_size):
        self.page_sizes.append(page_size)
        if self.broken:
            raise IndexerError("subgraph unavailable")
        if self.max_page_size is not None and page_size > self.max_page_size:
            raise IndexerError("query timed out")
        page = [TokenOwnership(token_id, owner) for token_id, owner in self.tokens if token_id > cursor]
        return page[:page_size]


class FakeBlockIndex:
    def __init__(self, answer=None, fail=False):
        self.answer = answer
        self.fail = fail
        self.lookups = []

    async def block_by_time(self, timestamp):
        self.lookups.append(timestamp)
        if self.fail:
            raise IndexerError("Etherscan API error: NOTOK")
        if self.answer is not None:
            return self.answer
        return ANCHOR_BLOCK + (timestamp - ANCHOR_TIMESTAMP) // BLOCK_TIME


@pytest.fixture
def config():
    """Pipeline tuning with no backoff sleeps."""
    return PipelineConfig(backoff_base_ms=0)


@pytest.fixture
def holder_balances():
    return {address: (i + 1) * ETHER for i, address in enumerate(HOLDERS)}


@pytest.fixture
def token_owners():
    # Ten tokens spread over the five holders; token 3 is burned.
    owners = {token_id: HOLDERS[token_id % 5] for token_id in range(10)}
    del owners[3]
    return owners


@pytest.fixture
def chain(holder_balances, token_owners):
    return FakeChain(balances=holder_balances, owners=token_owners)


@pytest.fixture
def block_cache(tmp_path):
    return BlockCache(tmp_path / 'block-cache.json')


@pytest.fixture
def holder_cache(tmp_path):
    return HolderCache(tmp_path / 'holders-cache.json')


@pytest.fixture
def result_store(tmp_path):
    return ResultStore(tmp_path / 'results.json')
