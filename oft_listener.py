# oft_listener.py
# Long-lived listener for inbound OFT transfers on the destination chain.
#
# A ListenerSupervisor keeps exactly one WebSocket log subscription alive.
# Every decoded Transfer event is handed to an EventReporter, which keeps only
# the transfers coming from the expected sender. When the connection drops
# the supervisor releases it and tries again after a fixed delay, forever,
# until the process is told to terminate.

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from web3 import AsyncWeb3, Web3
from web3.providers import WebSocketProvider

from oft_config import ListenerSettings, WatchTarget, build_watch_target, get_chain_data
from oft_errors import ConfigurationMissing, TransportFailure
from oft_transfer import ERC20_ABI
from oft_units import DEFAULT_DECIMALS, format_units

TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))


class ListenerState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ACTIVE = "active"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class InboundTransfer:
    sender: str
    recipient: str
    amount: int
    transaction_hash: str
    block_number: int


EventCallback = Callable[[InboundTransfer], Any]


class EventTransport(Protocol):
    """What the supervisor needs from a streaming connection."""

    async def connect(self) -> None: ...

    async def subscribe(self, callback: EventCallback) -> Any: ...

    async def unsubscribe(self, handle: Any) -> None: ...

    async def listen(self) -> None:
        """Delivers events until the connection ends; raises TransportFailure on error."""
        ...

    async def close(self) -> None: ...


# --- Reporting ---

class EventReporter:
    """Filters inbound transfers by sender and logs the ones that match."""

    def __init__(self, target: WatchTarget):
        self.target = target
        self.expected_sender = target.expected_sender.lower()

    def is_relevant(self, event: InboundTransfer) -> bool:
        return event.sender.lower() == self.expected_sender

    def format_amount(self, amount: int) -> str:
        decimals = self.target.decimals if self.target.decimals is not None else DEFAULT_DECIMALS
        try:
            return format_units(amount, decimals)
        except Exception as e:
            return f"{amount} (raw, formatting with {decimals} decimals failed: {e})"

    def handle(self, event: InboundTransfer) -> bool:
        """Reports `event` if it is relevant. Returns whether it was reported."""
        try:
            if not self.is_relevant(event):
                return False
            logging.info(
                f"Matched inbound transfer: from {event.sender} to {event.recipient}, "
                f"amount {self.format_amount(event.amount)}, "
                f"tx {event.transaction_hash} (block {event.block_number})"
            )
            return True
        except Exception as e:
            logging.error(f"Could not report event {event!r}: {e}")
            return False


# --- Transport ---

class Web3SocketTransport:
    """
    Subscribes to ERC-20 Transfer logs of one contract over a WebSocket
    JSON-RPC endpoint using AsyncWeb3.
    """

    def __init__(self, ws_url: str, contract_address: str):
        self.ws_url = ws_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.w3: Optional[AsyncWeb3] = None
        self.contract = None
        self.callback: Optional[EventCallback] = None

    async def connect(self) -> None:
        try:
            self.w3 = AsyncWeb3(WebSocketProvider(self.ws_url))
            await self.w3.provider.connect()
            chain_id = await self.w3.eth.chain_id
        except Exception as e:
            raise TransportFailure(f"Could not connect to {self.ws_url}: {e}") from e
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=ERC20_ABI)
        logging.info(f"Connected to {self.ws_url}. Chain ID: {chain_id}")

    async def subscribe(self, callback: EventCallback) -> str:
        if self.w3 is None:
            raise TransportFailure("Cannot subscribe before connecting.")
        try:
            subscription_id = await self.w3.eth.subscribe(
                "logs", {"address": self.contract_address, "topics": [TRANSFER_TOPIC]}
            )
        except Exception as e:
            raise TransportFailure(f"Subscription to Transfer logs failed: {e}") from e
        self.callback = callback
        logging.info(f"Subscribed to Transfer logs of {self.contract_address} (id {subscription_id})")
        return subscription_id

    async def unsubscribe(self, handle: str) -> None:
        self.callback = None
        if self.w3 is not None:
            await self.w3.eth.unsubscribe(handle)

    async def listen(self) -> None:
        if self.w3 is None:
            raise TransportFailure("Cannot listen before connecting.")
        try:
            async for response in self.w3.socket.process_subscriptions():
                log = response.get("result")
                if not log:
                    continue
                event = self._decode(log)
                if event is not None and self.callback is not None:
                    self.callback(event)
        except Exception as e:
            raise TransportFailure(f"Connection to {self.ws_url} failed: {e}") from e

    async def close(self) -> None:
        w3, self.w3 = self.w3, None
        self.contract = None
        if w3 is not None:
            await w3.provider.disconnect()

    def _decode(self, log: Dict[str, Any]) -> Optional[InboundTransfer]:
        try:
            decoded = self.contract.events.Transfer().process_log(log)
        except Exception as e:
            logging.warning(f"Skipping undecodable log in tx {log.get('transactionHash')}: {e}")
            return None
        args = decoded["args"]
        return InboundTransfer(
            sender=args["from"],
            recipient=args["to"],
            amount=args["value"],
            transaction_hash=Web3.to_hex(decoded["transactionHash"]),
            block_number=decoded["blockNumber"],
        )


# --- Supervision ---

class ListenerSupervisor:
    """
    Owns the lifecycle of the single subscription of one listener process.

    States move DISCONNECTED -> CONNECTING -> ACTIVE and back to DISCONNECTED
    on any failure; only terminate() leads to TERMINATED. Failures never
    propagate out of run().
    """

    def __init__(
        self,
        settings: ListenerSettings,
        transport_factory: Callable[[str, str], EventTransport] = Web3SocketTransport,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.transport_factory = transport_factory
        self._sleep = sleep
        self.state = ListenerState.DISCONNECTED
        self.transport: Optional[EventTransport] = None
        self.subscription: Any = None
        self.reporter: Optional[EventReporter] = None
        self.attempts = 0
        self.last_error: Optional[BaseException] = None
        self._task: Optional[asyncio.Task] = None

    async def run(self) -> None:
        """Keeps the subscription alive until terminate() is called."""
        self._task = asyncio.current_task()
        logging.info(f"--- Listening for OFT transfers on {self.settings.listen_network} "
                     f"(expected source: {self.settings.source_network}) ---")
        try:
            while self.state is not ListenerState.TERMINATED:
                delay = await self.run_once()
                if self.state is ListenerState.TERMINATED:
                    break
                logging.info(f"Reconnecting in {delay} seconds...")
                await self._sleep(delay)
        except asyncio.CancelledError:
            if self.state is not ListenerState.TERMINATED:
                raise
        finally:
            await self.release()
            logging.info("Listener stopped.")

    async def run_once(self) -> float:
        """
        Makes one establishment attempt and, if it succeeds, stays on the
        connection until it ends.

        Returns:
            The delay to wait before the next attempt.
        """
        self.attempts += 1
        self.state = ListenerState.CONNECTING
        logging.info(f"Connecting listener on {self.settings.listen_network} (attempt {self.attempts})...")
        try:
            await self.establish()
        except Exception as e:
            self.last_error = e
            logging.error(f"Error setting up listener: {e}")
            await self.release()
            self._mark_disconnected()
            return self.settings.connect_retry_delay

        self.state = ListenerState.ACTIVE
        try:
            await self.transport.listen()
            logging.warning("Listener connection closed.")
        except Exception as e:
            self.last_error = e
            logging.error(f"Listener connection error: {e}")
        await self.release()
        self._mark_disconnected()
        return self.settings.reconnect_delay

    async def establish(self) -> None:
        """
        Resolves configuration, opens the transport and registers the reporter.

        Raises:
            ConfigurationMissing: if the listening network has no 'wsUrl'.
        """
        await self.release()

        endpoint = get_chain_data(self.settings.listen_network, self.settings.endpoints_path)
        if not endpoint.ws_url:
            raise ConfigurationMissing(f"'wsUrl' for network {endpoint.network}", self.settings.endpoints_path)
        source = get_chain_data(self.settings.source_network, self.settings.endpoints_path)
        target = build_watch_target(self.settings)
        logging.info(f"Watching {target.contract_address} for transfers from {target.expected_sender} "
                     f"(source EID {source.eid})")

        self.reporter = EventReporter(target)
        self.transport = self.transport_factory(endpoint.ws_url, target.contract_address)
        await self.transport.connect()
        self.subscription = await self.transport.subscribe(self.reporter.handle)
        logging.info("Waiting for incoming 'Transfer' events...")

    async def release(self) -> None:
        """Unsubscribes and closes the current transport. Safe to call repeatedly."""
        transport, subscription = self.transport, self.subscription
        self.transport = None
        self.subscription = None
        if transport is None:
            return
        if subscription is not None:
            try:
                await transport.unsubscribe(subscription)
            except Exception as e:
                logging.debug(f"Ignoring error while unsubscribing: {e}")
        try:
            await transport.close()
        except Exception as e:
            logging.debug(f"Ignoring error while closing transport: {e}")

    def terminate(self) -> None:
        """Stops the listener. run() releases the transport and returns."""
        if self.state is ListenerState.TERMINATED:
            return
        logging.info("Termination requested. Shutting down listener...")
        self.state = ListenerState.TERMINATED
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _mark_disconnected(self) -> None:
        if self.state is not ListenerState.TERMINATED:
            self.state = ListenerState.DISCONNECTED
