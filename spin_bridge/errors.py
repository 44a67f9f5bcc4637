from typing import Optional


class SpinBridgeError(Exception):
    """
    Base error carrying the machine-readable code and recoverability sent to the game.
    """

    code = "UNKNOWN"
    recoverable = True

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.request_id = request_id


class InsufficientFunds(SpinBridgeError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, required: int, available: int, queued_count: int = 0, request_id: Optional[str] = None):
        self.required = required
        self.available = available
        self.queued_count = queued_count
        message = f"Insufficient balance: bet needs {required}, only {available} available"
        if queued_count:
            message += f" ({queued_count} spins already queued)"
        super().__init__(message, request_id)


class InvalidStake(SpinBridgeError):
    code = "INVALID_BET"


class NotInitialized(SpinBridgeError):
    code = "NOT_INITIALIZED"
    recoverable = False


class TransactionRejected(SpinBridgeError):
    code = "TRANSACTION_FAILED"

    def __init__(self, reason: str, request_id: Optional[str] = None):
        self.reason = reason
        super().__init__(f"Transaction failed: {reason}", request_id)


class ChainUnavailable(SpinBridgeError):
    code = "NETWORK_ERROR"


class ChannelMismatch(SpinBridgeError):
    code = "CHANNEL_MISMATCH"


class CorrelationMiss(SpinBridgeError):
    code = "CORRELATION_MISS"


class StaleSnapshotConflict(SpinBridgeError):
    code = "STALE_SNAPSHOT"

    def __init__(self, client_id: str, local_status: str, authority_status: str):
        self.client_id = client_id
        self.local_status = local_status
        self.authority_status = authority_status
        super().__init__(
            f"snapshot status {authority_status} replaces local {local_status} for clientId={client_id}",
            client_id,
        )
