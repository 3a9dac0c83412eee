"""Clients for the two off-chain indexes: Etherscan block-by-time and the token subgraph."""

import asyncio
import logging
from typing import List, NamedTuple

import aiohttp

from .errors import IndexerError

logger = logging.getLogger(__name__)

HOLDERS_QUERY = """
  query holders($block: Int!, $lastId: String!, $pageSize: Int!) {
    tokens(
      first: $pageSize,
      where: { id_gt: $lastId },
      block: { number: $block },
      orderBy: id,
      orderDirection: asc
    ) {
      id
      owner { id }
    }
  }
"""


class TokenOwnership(NamedTuple):
    token_id: str
    owner: str


class BlockIndexClient:
    """Etherscan ``getblocknobytime`` lookups."""

    def __init__(self, api_url: str, api_key: str, session: aiohttp.ClientSession):
        self.api_url = api_url
        self.api_key = api_key
        self.session = session

    async def block_by_time(self, timestamp: int) -> int:
        """Nearest block at or before ``timestamp``, per the index."""
        params = {
            'module': 'block',
            'action': 'getblocknobytime',
            'timestamp': str(timestamp),
            'closest': 'before',
            'apikey': self.api_key,
        }
        try:
            async with self.session.get(self.api_url, params=params) as response:
                response.raise_for_status()
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise IndexerError(f"Etherscan lookup failed: {e}") from e

        if not isinstance(data, dict) or data.get('status') != '1':
            message = data.get('message') if isinstance(data, dict) else data
            raise IndexerError(f"Etherscan API error: {message}")
        try:
            return int(data['result'])
        except (KeyError, TypeError, ValueError) as e:
            raise IndexerError(f"Etherscan returned a non-numeric block: {data.get('result')!r}") from e


class SubgraphClient:
    """Cursor-paginated token/owner listing from a GraphQL subgraph."""

    def __init__(self, url: str, session: aiohttp.ClientSession):
        if not url:
            raise ValueError("A subgraph URL is required")
        self.url = url
        self.session = session

    async def tokens_page(self, block: int, cursor: str, page_size: int) -> List[TokenOwnership]:
        payload = {
            'query': HOLDERS_QUERY,
            'variables': {'block': block, 'lastId': cursor, 'pageSize': page_size},
        }
        try:
            async with self.session.post(self.url, json=payload) as response:
                response.raise_for_status()
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise IndexerError(f"Subgraph request failed: {e}") from e

        if not isinstance(data, dict):
            raise IndexerError(f"Malformed subgraph response: {str(data)[:200]}")
        if data.get('errors'):
            raise IndexerError(f"GraphQL errors: {str(data['errors'])[:300]}")
        try:
            tokens = data['data']['tokens']
            return [TokenOwnership(t['id'], t['owner']['id'].lower()) for t in tokens]
        except (KeyError, TypeError, AttributeError) as e:
            raise IndexerError(f"Unexpected subgraph payload: {e}") from e
