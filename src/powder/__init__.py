"""Total ETH held by an NFT collection's holders at a point in time."""

__version__ = '0.2.0'
