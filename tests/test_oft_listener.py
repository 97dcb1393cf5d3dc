"""Tests for the transfer listener: reporting, the WebSocket transport and
the reconnecting supervisor.

The supervisor is driven with an in-memory transport and an injected sleep,
so every state transition happens without sockets or real delays. The
WebSocket transport is fed hand-built logs through a stand-in for
w3.socket.process_subscriptions().
"""

import asyncio
import logging
from types import SimpleNamespace

import pytest
from hexbytes import HexBytes
from web3 import Web3

from conftest import TOKEN_ADDRESS, write_endpoints
from oft_config import ZERO_ADDRESS, ListenerSettings, WatchTarget
from oft_errors import ConfigurationMissing, TransportFailure
from oft_listener import (
    TRANSFER_TOPIC,
    EventReporter,
    InboundTransfer,
    ListenerState,
    ListenerSupervisor,
    Web3SocketTransport,
)
from oft_transfer import ERC20_ABI

RECIPIENT = "0x5555555555555555555555555555555555555555"
STRANGER = "0x6666666666666666666666666666666666666666"


def make_event(sender=ZERO_ADDRESS, amount=1500000):
    return InboundTransfer(
        sender=sender,
        recipient=RECIPIENT,
        amount=amount,
        transaction_hash="0x" + "ab" * 32,
        block_number=123,
    )


class FakeTransport:
    def __init__(self, ws_url, contract_address, fail_connect=False):
        self.ws_url = ws_url
        self.contract_address = contract_address
        self.fail_connect = fail_connect
        self.callback = None
        self.closed = False
        self.unsubscribed = []
        self.error = None
        self._ended = asyncio.Event()

    async def connect(self):
        if self.fail_connect:
            raise TransportFailure("connection refused")

    async def subscribe(self, callback):
        self.callback = callback
        return "sub-1"

    async def unsubscribe(self, handle):
        self.unsubscribed.append(handle)
        self.callback = None

    async def listen(self):
        await self._ended.wait()
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True
        self._ended.set()

    def drop(self, error=None):
        self.error = error
        self._ended.set()

    def emit(self, event):
        return self.callback(event)


class TransportFactory:
    def __init__(self, fail_connect=False):
        self.fail_connect = fail_connect
        self.created = []

    def __call__(self, ws_url, contract_address):
        transport = FakeTransport(ws_url, contract_address, fail_connect=self.fail_connect)
        self.created.append(transport)
        return transport


class BlockingSleep:
    """Records requested delays and never wakes up on its own."""

    def __init__(self):
        self.delays = []
        self._never = asyncio.Event()

    async def __call__(self, delay):
        self.delays.append(delay)
        await self._never.wait()


async def wait_for_state(supervisor, state, ticks=50):
    for _ in range(ticks):
        if supervisor.state is state:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"supervisor stayed in {supervisor.state}, expected {state}")


# =============================================================================
# EventReporter
# =============================================================================


def test_reporter_drops_events_from_other_senders(caplog):
    caplog.set_level(logging.DEBUG)
    reporter = EventReporter(WatchTarget(TOKEN_ADDRESS, ZERO_ADDRESS, 6))
    for amount in (0, 1, 10 ** 30):
        assert reporter.handle(make_event(sender=STRANGER, amount=amount)) is False
    assert caplog.records == []


def test_reporter_reports_each_matching_event_once(caplog):
    caplog.set_level(logging.INFO)
    adapter = "0xAbCdEf0000000000000000000000000000000001"
    reporter = EventReporter(WatchTarget(TOKEN_ADDRESS, adapter, 6))
    assert reporter.handle(make_event(sender=adapter.lower())) is True
    assert reporter.handle(make_event(sender=adapter.upper().replace("0X", "0x"), amount=2)) is True
    assert len(caplog.records) == 2


def test_reporter_formats_with_target_decimals(caplog):
    caplog.set_level(logging.INFO)
    reporter = EventReporter(WatchTarget(TOKEN_ADDRESS, ZERO_ADDRESS, 6))
    reporter.handle(make_event(amount=1500000))
    assert "amount 1.5," in caplog.records[0].getMessage()


def test_reporter_defaults_to_18_decimals(caplog):
    caplog.set_level(logging.INFO)
    reporter = EventReporter(WatchTarget(TOKEN_ADDRESS, ZERO_ADDRESS))
    reporter.handle(make_event(amount=2000000000000000000))
    assert "amount 2.0," in caplog.records[0].getMessage()


def test_reporter_reports_raw_amount_when_formatting_fails(caplog):
    caplog.set_level(logging.INFO)
    reporter = EventReporter(WatchTarget(TOKEN_ADDRESS, ZERO_ADDRESS, -1))
    assert reporter.handle(make_event(amount=1500000)) is True
    message = caplog.records[0].getMessage()
    assert "1500000" in message
    assert "formatting" in message and "failed" in message


# =============================================================================
# Web3SocketTransport
# =============================================================================


def _topic_address(address):
    return HexBytes(Web3.to_bytes(hexstr=address).rjust(32, b"\0"))


def make_log(sender=ZERO_ADDRESS, recipient=RECIPIENT, value=1500000):
    return {
        "address": TOKEN_ADDRESS,
        "topics": [HexBytes(TRANSFER_TOPIC), _topic_address(sender), _topic_address(recipient)],
        "data": HexBytes(value.to_bytes(32, "big")),
        "blockNumber": 123,
        "blockHash": HexBytes(b"\x01" * 32),
        "transactionHash": HexBytes(b"\xab" * 32),
        "transactionIndex": 0,
        "logIndex": 0,
    }


def make_socket_transport(responses=(), error=None):
    transport = Web3SocketTransport("wss://amoy.example", TOKEN_ADDRESS)
    transport.contract = Web3().eth.contract(address=TOKEN_ADDRESS, abi=ERC20_ABI)

    async def process_subscriptions():
        for response in responses:
            yield response
        if error is not None:
            raise error

    transport.w3 = SimpleNamespace(socket=SimpleNamespace(process_subscriptions=process_subscriptions))
    return transport


def test_socket_transport_decodes_transfer_logs():
    event = make_socket_transport()._decode(make_log(sender=STRANGER, value=1500000))
    assert event == InboundTransfer(
        sender=STRANGER,
        recipient=RECIPIENT,
        amount=1500000,
        transaction_hash="0x" + "ab" * 32,
        block_number=123,
    )


def test_socket_transport_skips_undecodable_logs(caplog):
    log = make_log()
    log["topics"] = log["topics"][:1]
    assert make_socket_transport()._decode(log) is None
    assert "Skipping undecodable log" in caplog.text


@pytest.mark.asyncio
async def test_socket_transport_listen_delivers_decoded_events():
    malformed = make_log()
    malformed["topics"] = malformed["topics"][:1]
    transport = make_socket_transport(responses=[
        {"subscription": "0x1"},
        {"subscription": "0x1", "result": make_log(value=7)},
        {"subscription": "0x1", "result": malformed},
        {"subscription": "0x1", "result": make_log(sender=STRANGER, value=8)},
    ])
    received = []
    transport.callback = received.append

    await transport.listen()

    assert [(e.sender, e.amount) for e in received] == [(ZERO_ADDRESS, 7), (STRANGER, 8)]


@pytest.mark.asyncio
async def test_socket_transport_listen_wraps_connection_errors():
    transport = make_socket_transport(responses=[{"result": make_log()}],
                                      error=ConnectionError("socket closed"))
    received = []
    transport.callback = received.append

    with pytest.raises(TransportFailure) as excinfo:
        await transport.listen()

    assert "socket closed" in str(excinfo.value)
    assert len(received) == 1


@pytest.mark.asyncio
async def test_socket_transport_requires_connection():
    transport = Web3SocketTransport("wss://amoy.example", TOKEN_ADDRESS)
    with pytest.raises(TransportFailure):
        await transport.listen()
    with pytest.raises(TransportFailure):
        await transport.subscribe(lambda event: None)
    await transport.close()


# =============================================================================
# ListenerSupervisor
# =============================================================================


@pytest.mark.asyncio
async def test_supervisor_becomes_active_and_reports_events(listener_settings, caplog):
    caplog.set_level(logging.INFO)
    factory = TransportFactory()
    supervisor = ListenerSupervisor(listener_settings, transport_factory=factory, sleep=BlockingSleep())
    task = asyncio.create_task(supervisor.run())
    await wait_for_state(supervisor, ListenerState.ACTIVE)

    transport = factory.created[0]
    assert transport.ws_url == "wss://amoy.example"
    assert transport.contract_address == TOKEN_ADDRESS
    assert supervisor.subscription == "sub-1"

    caplog.clear()
    transport.emit(make_event(sender=STRANGER))
    transport.emit(make_event())
    matched = [r for r in caplog.records if "Matched inbound transfer" in r.getMessage()]
    assert len(matched) == 1

    supervisor.terminate()
    await task


@pytest.mark.asyncio
async def test_transport_close_while_active_disconnects_within_one_tick(listener_settings):
    factory = TransportFactory()
    sleep = BlockingSleep()
    supervisor = ListenerSupervisor(listener_settings, transport_factory=factory, sleep=sleep)
    task = asyncio.create_task(supervisor.run())
    await wait_for_state(supervisor, ListenerState.ACTIVE)

    transport = factory.created[0]
    transport.drop()
    await asyncio.sleep(0)

    assert supervisor.state is ListenerState.DISCONNECTED
    assert supervisor.transport is None
    assert supervisor.subscription is None
    assert transport.unsubscribed == ["sub-1"]
    assert transport.closed
    assert sleep.delays == [listener_settings.reconnect_delay]

    supervisor.terminate()
    await task
    assert supervisor.state is ListenerState.TERMINATED


@pytest.mark.asyncio
async def test_transport_error_while_active_is_retried(listener_settings):
    factory = TransportFactory()
    sleep = BlockingSleep()
    supervisor = ListenerSupervisor(listener_settings, transport_factory=factory, sleep=sleep)
    task = asyncio.create_task(supervisor.run())
    await wait_for_state(supervisor, ListenerState.ACTIVE)

    factory.created[0].drop(TransportFailure("socket reset"))
    await wait_for_state(supervisor, ListenerState.DISCONNECTED)
    assert isinstance(supervisor.last_error, TransportFailure)
    assert sleep.delays == [5.0]

    supervisor.terminate()
    await task


@pytest.mark.asyncio
async def test_reconnect_replaces_the_handle(listener_settings):
    factory = TransportFactory()
    delays = []

    async def short_sleep(delay):
        delays.append(delay)

    supervisor = ListenerSupervisor(listener_settings, transport_factory=factory, sleep=short_sleep)
    task = asyncio.create_task(supervisor.run())
    await wait_for_state(supervisor, ListenerState.ACTIVE)
    first = factory.created[0]
    first.drop()

    for _ in range(50):
        if len(factory.created) == 2 and supervisor.state is ListenerState.ACTIVE:
            break
        await asyncio.sleep(0)

    assert len(factory.created) == 2
    assert first.closed
    assert supervisor.transport is factory.created[1]
    assert supervisor.attempts == 2

    supervisor.terminate()
    await task


@pytest.mark.asyncio
async def test_consecutive_connection_failures_keep_retrying(listener_settings):
    failures = 4
    factory = TransportFactory(fail_connect=True)
    delays = []
    states = []

    async def sleep(delay):
        delays.append(delay)
        states.append(supervisor.state)
        if len(delays) == failures:
            supervisor.terminate()
        await asyncio.sleep(0)

    supervisor = ListenerSupervisor(listener_settings, transport_factory=factory, sleep=sleep)
    await asyncio.create_task(supervisor.run())

    assert supervisor.attempts == failures
    assert delays == [listener_settings.connect_retry_delay] * failures
    assert states == [ListenerState.DISCONNECTED] * failures
    assert all(t.closed for t in factory.created)
    assert supervisor.state is ListenerState.TERMINATED


@pytest.mark.asyncio
async def test_missing_streaming_url_schedules_retry(tmp_path, contracts_dir):
    endpoints = write_endpoints(tmp_path / "endpoints.json", [
        {"network": "amoy", "eid": 40267, "rpcUrl": "https://amoy.example"},
        {"network": "holesky", "eid": 40217, "rpcUrl": "https://holesky.example"},
    ])
    settings = ListenerSettings("amoy", "holesky", endpoints, str(contracts_dir))
    factory = TransportFactory()
    sleep = BlockingSleep()
    supervisor = ListenerSupervisor(settings, transport_factory=factory, sleep=sleep)
    task = asyncio.create_task(supervisor.run())

    for _ in range(50):
        if sleep.delays:
            break
        await asyncio.sleep(0)

    assert isinstance(supervisor.last_error, ConfigurationMissing)
    assert sleep.delays == [15.0]
    assert supervisor.state is ListenerState.DISCONNECTED
    assert factory.created == []
    assert not task.done()

    supervisor.terminate()
    await task


@pytest.mark.asyncio
async def test_release_is_idempotent(listener_settings):
    supervisor = ListenerSupervisor(listener_settings, transport_factory=TransportFactory())
    transport = FakeTransport("wss://amoy.example", TOKEN_ADDRESS)
    supervisor.transport = transport
    supervisor.subscription = "sub-1"

    await supervisor.release()
    await supervisor.release()

    assert transport.unsubscribed == ["sub-1"]
    assert supervisor.transport is None
    assert supervisor.subscription is None


@pytest.mark.asyncio
async def test_release_swallows_transport_errors(listener_settings):
    class BrokenTransport(FakeTransport):
        async def unsubscribe(self, handle):
            raise TransportFailure("already gone")

        async def close(self):
            raise TransportFailure("already closed")

    supervisor = ListenerSupervisor(listener_settings)
    supervisor.transport = BrokenTransport("wss://amoy.example", TOKEN_ADDRESS)
    supervisor.subscription = "sub-1"

    await supervisor.release()
    assert supervisor.transport is None


@pytest.mark.asyncio
async def test_terminate_while_active_releases_everything(listener_settings):
    factory = TransportFactory()
    supervisor = ListenerSupervisor(listener_settings, transport_factory=factory, sleep=BlockingSleep())
    task = asyncio.create_task(supervisor.run())
    await wait_for_state(supervisor, ListenerState.ACTIVE)

    supervisor.terminate()
    await task

    assert supervisor.state is ListenerState.TERMINATED
    assert supervisor.transport is None
    assert factory.created[0].closed
    assert factory.created[0].unsubscribed == ["sub-1"]
