# oft_errors.py
# Exception types shared by the transfer sequencer, the listener and the CLI.

from typing import Optional


class BridgeError(Exception):
    """Base class for every error raised by the OFT bridge tooling."""


class ConfigurationMissing(BridgeError):
    """Raised when a required configuration value or file is absent."""
    def __init__(self, what: str, source: Optional[str] = None):
        self.what = what
        self.source = source
        message = f"Missing configuration: {what}"
        if source:
            message += f" (in {source})"
        super().__init__(message)


class NetworkNotFound(BridgeError):
    """Raised when a network name has no entry in the endpoints file."""
    def __init__(self, network: str, source: str):
        self.network = network
        self.source = source
        super().__init__(f"Network {network} not found in {source}")


class TransportFailure(BridgeError, ConnectionError):
    """Raised when a connection or subscription to a node fails."""


class PreconditionFailed(BridgeError):
    """Raised when on-chain state (allowance, balance, peers) blocks a transfer."""


class TransactionReverted(BridgeError):
    """Raised when a submitted transaction is mined with a failing status."""
    def __init__(self, action: str, tx_hash: str):
        self.action = action
        self.tx_hash = tx_hash
        super().__init__(f"{action} transaction {tx_hash} reverted")
