# oft_units.py
# Conversions between human-readable token amounts and on-chain integers,
# and the bytes32 address form LayerZero contracts expect.

from decimal import Decimal, InvalidOperation

from web3 import Web3

DEFAULT_DECIMALS = 18


def parse_units(amount: str, decimals: int) -> int:
    """
    Converts a decimal string such as "10.5" into the token's smallest unit.

    Raises:
        ValueError: if the string is not a number, or has more fractional
                    digits than the token supports.
    """
    try:
        value = Decimal(amount.strip())
    except (InvalidOperation, AttributeError):
        raise ValueError(f"Invalid token amount: {amount!r}")
    if not value.is_finite():
        raise ValueError(f"Invalid token amount: {amount!r}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {decimals} decimal places")
    return int(scaled)


def format_units(value: int, decimals: int = DEFAULT_DECIMALS) -> str:
    """Formats an integer amount with `decimals` places; always keeps one fractional digit."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"Expected an integer amount, got {type(value).__name__}")
    if not isinstance(decimals, int) or decimals < 0:
        raise ValueError(f"Invalid decimals: {decimals!r}")

    sign = "-" if value < 0 else ""
    whole, fraction = divmod(abs(value), 10 ** decimals)
    fraction_str = str(fraction).rjust(decimals, "0").rstrip("0") if decimals else ""
    return f"{sign}{whole}.{fraction_str or '0'}"


def to_bytes32(address: str) -> bytes:
    """Left-pads a 20-byte address to 32 bytes."""
    return Web3.to_bytes(hexstr=address).rjust(32, b'\0')
