import json
import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from oft_config import ListenerSettings

ADAPTER_ADDRESS = "0x1111111111111111111111111111111111111111"
UNDERLYING_ADDRESS = "0x2222222222222222222222222222222222222222"
TOKEN_ADDRESS = "0x3333333333333333333333333333333333333333"

MINIMAL_ABI = [
    {"type": "function", "name": "token", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "address"}]},
]


def write_endpoints(path, entries):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(entries))
    return str(path)


def write_contract(contracts_dir, network, category, **fields):
    data = {"abi": MINIMAL_ABI}
    data.update(fields)
    target = contracts_dir / network / f"{category}.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(data))
    return target


@pytest.fixture
def endpoints_path(tmp_path):
    return write_endpoints(tmp_path / "lz_config" / "lz_endpoints.json", [
        {"network": "holesky", "eid": 40217, "rpcUrl": "https://holesky.example",
         "wsUrl": "wss://holesky.example"},
        {"network": "amoy", "eid": 40267, "rpcUrl": "https://amoy.example",
         "wsUrl": "wss://amoy.example"},
    ])


@pytest.fixture
def contracts_dir(tmp_path):
    root = tmp_path / "contracts"
    write_contract(root, "holesky", "adapter", address=ADAPTER_ADDRESS,
                   token=UNDERLYING_ADDRESS, decimals=18)
    write_contract(root, "amoy", "token", address=TOKEN_ADDRESS, decimals=6)
    return root


@pytest.fixture
def listener_settings(endpoints_path, contracts_dir):
    return ListenerSettings(
        listen_network="amoy",
        source_network="holesky",
        endpoints_path=endpoints_path,
        contracts_dir=str(contracts_dir),
    )
