# oft_options.py
# Executor options for LayerZero V2 OFT sends.
#
# Layout of a type-3 options blob carrying one executor lzReceive option:
#   uint16 type (3) | uint8 worker id (1) | uint16 size | uint8 option type (1)
#   | uint128 gas | [uint128 value, only when non-zero]
# where size counts the option type byte plus the option payload.

from eth_abi.packed import encode_packed

OPTIONS_TYPE_3 = 3
EXECUTOR_WORKER_ID = 1
OPTION_TYPE_LZRECEIVE = 1
UINT128_MAX = 2 ** 128 - 1


def build_executor_lz_receive_option(gas: int, value: int = 0) -> bytes:
    """Encodes the executor gas (and optional native value) for lzReceive on the destination."""
    for name, amount in (("gas", gas), ("value", value)):
        if amount < 0 or amount > UINT128_MAX:
            raise ValueError(f"Executor option {name} out of uint128 range: {amount}")

    if value:
        option = encode_packed(["uint128", "uint128"], [gas, value])
    else:
        option = encode_packed(["uint128"], [gas])

    header = encode_packed(
        ["uint16", "uint8", "uint16", "uint8"],
        [OPTIONS_TYPE_3, EXECUTOR_WORKER_ID, len(option) + 1, OPTION_TYPE_LZRECEIVE],
    )
    return header + option
