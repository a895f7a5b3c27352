"""
Custom exception hierarchy for the keeper.

Provides clear, specific exceptions for different error scenarios
so each loop can decide between retry, skip and exit.

Hierarchy:

    KeeperError (base)
    ├── OperationalError       : transient/retryable (RPC, storage, reverts)
    │   ├── RpcError           : node or transport failure
    │   ├── TransactionFailedError: transaction mined with status 0
    │   └── StorageError       : database failure
    ├── DataError              : bad data, skip this item
    │   └── InvalidPriceError  : price feed flagged invalid, zero entry price
    ├── ConfigurationError     : fatal at startup
    └── EventStreamLostError   : fatal at runtime

Rules:
    - OperationalError: catch, log, retry on the next cycle
    - DataError: catch, log, skip this position/event, continue loop
    - ConfigurationError: abort before any loop starts (exit 1)
    - EventStreamLostError: stop the process (exit 1); the supervisor restarts it
"""


class KeeperError(Exception):
    """Base exception for all keeper errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(KeeperError):
    """Transient/retryable error: RPC node, network, database.

    Treatment: catch, log, retry on the next natural cycle.
    """
    pass


class RpcError(OperationalError):
    """JSON-RPC call failed (transport error, timeout, reverted estimate).

    tx_hash is set when the failure came after the transaction was sent.
    """

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class TransactionFailedError(OperationalError):
    """Transaction was mined but reverted (receipt status 0)."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class StorageError(OperationalError):
    """Database read/write failed."""
    pass


# ============ DATA (bad input, skip item) ============

class DataError(KeeperError):
    """Bad data from chain or storage.

    Treatment: catch, log, skip this position or event, continue loop.
    """
    pass


class InvalidPriceError(DataError):
    """Price source returned an invalid flag or a zero price."""
    pass


# ============ FATAL ============

class ConfigurationError(KeeperError):
    """Missing or malformed configuration. Abort before any loop starts."""
    pass


class EventStreamLostError(KeeperError):
    """Live event subscription dropped.

    Never retried in-process: the keeper exits non-zero so the process
    manager restarts it from the current block or the persisted checkpoint.
    """
    pass
