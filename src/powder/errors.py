class PowderError(Exception):
    """Base class for every error raised by the snapshot pipeline."""


class ChainError(PowderError):
    """The chain node could not be reached or answered with garbage."""


class RpcError(ChainError):
    """The node answered with a JSON-RPC error object (reverts included)."""

    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code


class IndexerError(PowderError):
    """The subgraph or the block-time index service failed."""


class ResolutionError(PowderError):
    """No source could map a timestamp to a block."""


class OwnershipError(PowderError):
    """Every ownership tier failed for a block."""


class PersistenceError(PowderError):
    """A cache file or the result store could not be read or written."""
