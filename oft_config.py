# oft_config.py
# Configuration for the OFT bridge tooling: environment settings, the
# LayerZero endpoints file and the per-network contract files.

import os
import json
import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

from dotenv import load_dotenv
from web3 import Web3

from oft_errors import ConfigurationMissing, NetworkNotFound

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
CONTRACT_CATEGORIES = ("adapter", "token")


# --- Configuration ---

class ConfigManager:
    """
    Manages application configuration, loading from environment variables.
    A `.env` file in the working directory is read first if present.
    """
    def __init__(self):
        load_dotenv()
        self.PRIVATE_KEY = os.getenv("PRIVATE_KEY")
        if not self.PRIVATE_KEY:
            raise ConfigurationMissing("PRIVATE_KEY", "environment or .env file")
        self.LZ_ENDPOINTS_PATH = os.getenv("LZ_ENDPOINTS_PATH", "lz_config/lz_endpoints.json")
        self.OFT_CONTRACTS_DIR = os.getenv("OFT_CONTRACTS_DIR", "contracts")
        self.EXECUTOR_LZ_RECEIVE_GAS = int(os.getenv("EXECUTOR_LZ_RECEIVE_GAS", "65000000"))
        self.RECEIPT_TIMEOUT_SECONDS = int(os.getenv("RECEIPT_TIMEOUT_SECONDS", "120"))
        self.CONNECT_RETRY_SECONDS = float(os.getenv("CONNECT_RETRY_SECONDS", "15"))
        self.RECONNECT_DELAY_SECONDS = float(os.getenv("RECONNECT_DELAY_SECONDS", "5"))
        self.LISTENER_EXPECTED_SENDER = os.getenv("LISTENER_EXPECTED_SENDER") or None
        self.LZ_SCAN_API_URL = os.getenv("LZ_SCAN_API_URL") or None
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        if not isinstance(logging.getLevelName(self.LOG_LEVEL), int):
            raise ValueError(f"Invalid LOG_LEVEL: {self.LOG_LEVEL}")

    def listener_settings(self, listen_network: str, source_network: str) -> "ListenerSettings":
        """Builds the scoped settings object owned by a single listener instance."""
        return ListenerSettings(
            listen_network=listen_network,
            source_network=source_network,
            endpoints_path=self.LZ_ENDPOINTS_PATH,
            contracts_dir=self.OFT_CONTRACTS_DIR,
            connect_retry_delay=self.CONNECT_RETRY_SECONDS,
            reconnect_delay=self.RECONNECT_DELAY_SECONDS,
            expected_sender=self.LISTENER_EXPECTED_SENDER,
        )


@dataclass(frozen=True)
class EndpointDescriptor:
    network: str
    eid: int
    rpc_url: str
    ws_url: Optional[str] = None


@dataclass(frozen=True)
class ContractConfig:
    network: str
    category: str
    address: str
    abi: List[Dict[str, Any]]
    decimals: Optional[int] = None
    # Adapters wrap an existing ERC-20; its address may be recorded alongside.
    token_address: Optional[str] = None


@dataclass(frozen=True)
class WatchTarget:
    contract_address: str
    expected_sender: str
    decimals: Optional[int] = None


@dataclass(frozen=True)
class ListenerSettings:
    listen_network: str
    source_network: str
    endpoints_path: str = "lz_config/lz_endpoints.json"
    contracts_dir: str = "contracts"
    connect_retry_delay: float = 15.0
    reconnect_delay: float = 5.0
    expected_sender: Optional[str] = None


# --- Lookups ---

def _read_json(path: str) -> Any:
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except FileNotFoundError:
        raise ConfigurationMissing(f"file '{path}'")
    except json.JSONDecodeError as e:
        raise ConfigurationMissing(f"valid JSON in '{path}' ({e})")


def get_chain_data(network: str, endpoints_path: str) -> EndpointDescriptor:
    """
    Looks up a network by name (case-insensitive) in the endpoints file.

    The file holds a list of objects such as
    ``{"network": "sepolia", "eid": 40161, "rpcUrl": "...", "wsUrl": "..."}``.

    Raises:
        NetworkNotFound: if no entry matches the network name.
        ConfigurationMissing: if the file is unreadable or the entry lacks
                              'eid' or 'rpcUrl'.
    """
    entries = _read_json(endpoints_path)
    if not isinstance(entries, list):
        raise ConfigurationMissing("a list of networks", endpoints_path)

    wanted = network.lower()
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigurationMissing(f"a network object instead of {entry!r}", endpoints_path)
        if str(entry.get("network", "")).lower() != wanted:
            continue
        if not entry.get("eid") or not entry.get("rpcUrl"):
            raise ConfigurationMissing(f"'eid' or 'rpcUrl' for network {network}", endpoints_path)
        return EndpointDescriptor(
            network=entry["network"],
            eid=int(entry["eid"]),
            rpc_url=entry["rpcUrl"],
            ws_url=entry.get("wsUrl") or None,
        )
    raise NetworkNotFound(network, endpoints_path)


def load_contract_config(network: str, category: str, contracts_dir: str) -> ContractConfig:
    """Loads `<contracts_dir>/<network>/<category>.json`."""
    if category not in CONTRACT_CATEGORIES:
        raise ValueError(f"Unknown contract category '{category}'. Expected one of {CONTRACT_CATEGORIES}.")

    path = os.path.join(contracts_dir, network.lower(), f"{category}.json")
    data = _read_json(path)
    if not isinstance(data, dict) or not data.get("address") or not data.get("abi"):
        raise ConfigurationMissing(f"'address' or 'abi' for {category} on {network}", path)

    decimals = data.get("decimals")
    token_address = data.get("token")
    return ContractConfig(
        network=network,
        category=category,
        address=Web3.to_checksum_address(data["address"]),
        abi=data["abi"],
        decimals=int(decimals) if decimals is not None else None,
        token_address=Web3.to_checksum_address(token_address) if token_address else None,
    )


def _load_optional(network: str, category: str, contracts_dir: str) -> Optional[ContractConfig]:
    try:
        return load_contract_config(network, category, contracts_dir)
    except ConfigurationMissing:
        return None


def resolve_oft_contract(network: str, contracts_dir: str) -> ContractConfig:
    """Returns the network's OFT adapter if one is configured, else its OFT token."""
    contract = _load_optional(network, "adapter", contracts_dir)
    if contract is None:
        contract = _load_optional(network, "token", contracts_dir)
    if contract is None:
        raise ConfigurationMissing(f"OFT contract address or ABI for {network}", contracts_dir)
    return contract


def build_watch_target(settings: ListenerSettings) -> WatchTarget:
    """
    Determines which contract the listener watches and whose transfers count.

    Native OFTs mint on arrival, so their inbound transfers come from the zero
    address. Adapters release locked tokens, so transfers come from the adapter
    itself and are emitted by the wrapped ERC-20. LISTENER_EXPECTED_SENDER
    overrides either default.
    """
    token = _load_optional(settings.listen_network, "token", settings.contracts_dir)
    if token is not None:
        contract_address = token.address
        decimals = token.decimals
        default_sender = ZERO_ADDRESS
    else:
        adapter = _load_optional(settings.listen_network, "adapter", settings.contracts_dir)
        if adapter is None:
            raise ConfigurationMissing(
                f"token or adapter contract for {settings.listen_network}", settings.contracts_dir
            )
        if not adapter.token_address:
            raise ConfigurationMissing(
                f"'token' address in the adapter config for {settings.listen_network}",
                settings.contracts_dir,
            )
        contract_address = adapter.token_address
        decimals = adapter.decimals
        default_sender = adapter.address

    return WatchTarget(
        contract_address=contract_address,
        expected_sender=settings.expected_sender or default_sender,
        decimals=decimals,
    )
