import logging
from typing import Callable, List, Optional

from oft_units import DEFAULT_DECIMALS


class DecimalsNotFoundError(Exception):
    """Raised when no provider can report the decimals of a token."""
    def __init__(self, token_label: str):
        self.token_label = token_label
        super().__init__(f"Could not determine decimals for token: {token_label}")


class DecimalsResolver:
    """
    Resolves a token's decimals from a prioritized list of providers.

    An OFT exposes decimals() itself, an adapter only through the token it
    wraps, and the contract file may also record them. Each of those is a
    provider; the first one that answers wins.
    """

    def __init__(self, providers: List[Callable[[], Optional[int]]], token_label: str = "token"):
        """
        Args:
            providers: Callables taking no arguments and returning the decimals
                       (int) or None. They may also raise; a raising provider
                       is skipped. Order is highest priority first.
            token_label: Name used in log and error messages.
        """
        if not providers:
            raise ValueError("At least one decimals provider must be supplied.")
        self.providers = providers
        self.token_label = token_label

    def resolve(self) -> int:
        """
        Returns the decimals from the first provider that yields a valid value.

        Raises:
            DecimalsNotFoundError: If every provider fails or returns None.
        """
        for i, provider in enumerate(self.providers):
            try:
                decimals = provider()
            except Exception as e:
                logging.debug(f"Decimals provider #{i + 1} failed for {self.token_label}: {e}")
                continue
            if decimals is not None and not isinstance(decimals, bool) and 0 <= int(decimals) <= 255:
                return int(decimals)

        raise DecimalsNotFoundError(self.token_label)

    def resolve_or_default(self, default: int = DEFAULT_DECIMALS) -> int:
        """Like resolve(), but falls back to `default` with a warning."""
        try:
            return self.resolve()
        except DecimalsNotFoundError as e:
            logging.warning(f"{e}. Proceeding with assumption of {default} decimals.")
            return default
