"""Async JSON-RPC access to the chain node.

One ``ChainClient`` wraps one ``aiohttp.ClientSession``; the session's owner
(``SnapshotService``) decides its lifetime. Batched requests are sent as a
single JSON array, which is how the node gets hammered least.
"""

import asyncio
import itertools
import logging
from typing import Any, List, Optional, Sequence, Tuple

import aiohttp

from .errors import ChainError, RpcError

logger = logging.getLogger(__name__)


def block_param(block):
    return hex(block) if isinstance(block, int) else block


def _hex_to_bytes(value: str) -> bytes:
    if not isinstance(value, str) or not value.startswith('0x'):
        raise ChainError(f"Expected hex data, got {value!r}")
    return bytes.fromhex(value[2:])


class ChainClient:
    def __init__(self, node_url: str, session: aiohttp.ClientSession):
        self.node_url = node_url
        self.session = session
        self._ids = itertools.count(1)

    async def _post(self, payload):
        try:
            async with self.session.post(self.node_url, json=payload) as response:
                response.raise_for_status()
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ChainError(f"Node request failed: {str(e)[:200]}") from e

    async def request(self, method: str, params: Sequence[Any]) -> Any:
        payload = {'jsonrpc': '2.0', 'method': method, 'params': list(params), 'id': next(self._ids)}
        data = await self._post(payload)
        if not isinstance(data, dict):
            raise ChainError(f"Malformed response to {method}: {str(data)[:200]}")
        if 'error' in data:
            error = data['error'] or {}
            raise RpcError(f"{method}: {error.get('message', 'unknown error')}", error.get('code'))
        return data.get('result')

    async def batch_request(self, calls: Sequence[Tuple[str, Sequence[Any]]]) -> List[Any]:
        """Send many calls in one HTTP request.

        Returns results in call order; a call that failed on the node is
        returned as an ``RpcError`` instance rather than raised, so one bad
        entry does not sink the batch. Transport failures still raise.
        """
        if not calls:
            return []
        batch = []
        for method, params in calls:
            batch.append({'jsonrpc': '2.0', 'method': method, 'params': list(params), 'id': next(self._ids)})
        data = await self._post(batch)
        if not isinstance(data, list):
            raise ChainError(f"Malformed batch response: {str(data)[:200]}")

        by_id = {item.get('id'): item for item in data if isinstance(item, dict)}
        results = []
        for request in batch:
            item = by_id.get(request['id'])
            if item is None:
                results.append(RpcError(f"{request['method']}: missing from batch response"))
            elif 'error' in item:
                error = item['error'] or {}
                results.append(RpcError(f"{request['method']}: {error.get('message', 'unknown error')}",
                                        error.get('code')))
            else:
                results.append(item.get('result'))
        return results

    async def block_number(self) -> int:
        return int(await self.request('eth_blockNumber', []), 16)

    async def get_block_timestamp(self, number: int) -> Optional[int]:
        """Timestamp of block ``number``, or None if the node has no such block."""
        block = await self.request('eth_getBlockByNumber', [block_param(number), False])
        if block is None:
            return None
        return int(block['timestamp'], 16)

    async def get_balances(self, addresses: Sequence[str], block: int) -> List[Optional[int]]:
        """Balances for ``addresses`` in one batched request; None where the node refused."""
        results = await self.batch_request(
            [('eth_getBalance', [address, block_param(block)]) for address in addresses]
        )
        balances = []
        for address, result in zip(addresses, results):
            if isinstance(result, RpcError) or not result:
                logger.warning(f"Balance error for {address}: {result}")
                balances.append(None)
            else:
                try:
                    balances.append(int(result, 16))
                except ValueError:
                    logger.warning(f"Unparseable balance for {address}: {result!r}")
                    balances.append(None)
        return balances

    async def call(self, to: str, data: bytes, block: int) -> bytes:
        result = await self.request('eth_call', [{'to': to, 'data': '0x' + data.hex()}, block_param(block)])
        return _hex_to_bytes(result)

    async def get_logs(self, address: str, topics, from_block: int, to_block: int) -> List[dict]:
        return await self.request('eth_getLogs', [{
            'address': address,
            'topics': list(topics),
            'fromBlock': block_param(from_block),
            'toBlock': block_param(to_block),
        }])
