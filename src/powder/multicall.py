"""Multicall3 calldata encoding and the handful of ERC-721 calls we need."""

import logging
from typing import List, NamedTuple, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .errors import ChainError

logger = logging.getLogger(__name__)


def selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


AGGREGATE3 = selector('aggregate3((address,bool,bytes)[])')
GET_ETH_BALANCE = selector('getEthBalance(address)')
OWNER_OF = selector('ownerOf(uint256)')
TOTAL_SUPPLY = selector('totalSupply()')

TRANSFER_TOPIC = '0x' + bytes(Web3.keccak(text='Transfer(address,address,uint256)')).hex()


class Call(NamedTuple):
    target: str
    call_data: bytes
    allow_failure: bool = True


def encode_get_eth_balance(address: str) -> bytes:
    return GET_ETH_BALANCE + encode(['address'], [Web3.to_checksum_address(address)])


def encode_owner_of(token_id: int) -> bytes:
    return OWNER_OF + encode(['uint256'], [token_id])


def encode_total_supply() -> bytes:
    return TOTAL_SUPPLY


def decode_uint(data: bytes) -> int:
    if len(data) < 32:
        raise ValueError(f"uint256 return data too short ({len(data)} bytes)")
    return decode(['uint256'], data)[0]


def decode_address(data: bytes) -> str:
    if len(data) < 32:
        raise ValueError(f"address return data too short ({len(data)} bytes)")
    return decode(['address'], data)[0].lower()


def encode_aggregate3(calls: Sequence[Call]) -> bytes:
    payload = [(Web3.to_checksum_address(c.target), c.allow_failure, c.call_data) for c in calls]
    return AGGREGATE3 + encode(['(address,bool,bytes)[]'], [payload])


def decode_aggregate3(data: bytes) -> List[Tuple[bool, bytes]]:
    return [(bool(ok), bytes(ret)) for ok, ret in decode(['(bool,bytes)[]'], data)[0]]


class Multicall:
    """Read-only batching through a deployed Multicall3 contract."""

    def __init__(self, chain, address: str):
        self.chain = chain
        self.address = Web3.to_checksum_address(address)

    async def aggregate3(self, calls: Sequence[Call], block: int) -> List[Tuple[bool, bytes]]:
        """Run ``calls`` at ``block``; per-call failures come back as ``(False, data)``."""
        raw = await self.chain.call(self.address, encode_aggregate3(calls), block)
        try:
            results = decode_aggregate3(raw)
        except (DecodingError, ValueError) as e:
            raise ChainError(f"Undecodable aggregate3 response: {e}") from e
        if len(results) != len(calls):
            raise ChainError(f"aggregate3 returned {len(results)} results for {len(calls)} calls")
        return results

    async def get_eth_balances(self, addresses: Sequence[str], block: int) -> List[Optional[int]]:
        calls = [Call(self.address, encode_get_eth_balance(a)) for a in addresses]
        balances = []
        for address, (ok, data) in zip(addresses, await self.aggregate3(calls, block)):
            if not ok:
                balances.append(None)
                continue
            try:
                balances.append(decode_uint(data))
            except (DecodingError, ValueError) as e:
                logger.warning(f"Error decoding balance for address {address}: {e}")
                balances.append(None)
        return balances

    async def owners_of(self, collection: str, token_ids: Sequence[int], block: int) -> List[Optional[str]]:
        calls = [Call(collection, encode_owner_of(token_id)) for token_id in token_ids]
        owners = []
        for token_id, (ok, data) in zip(token_ids, await self.aggregate3(calls, block)):
            if not ok:
                owners.append(None)
                continue
            try:
                owners.append(decode_address(data))
            except (DecodingError, ValueError) as e:
                logger.warning(f"Failed to decode owner for token {token_id}: {e}")
                owners.append(None)
        return owners
