# oft_cli.py
# Command-line entry point.
#
#   oft-bridge <sourceNetwork> <destinationNetwork> <destinationAddress> <amount>
#   oft-bridge --listen <listeningNetwork> <expectedSourceNetwork>

import sys
import signal
import asyncio
import logging
import argparse
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from web3 import Web3

from oft_config import ConfigManager, ListenerSettings
from oft_errors import BridgeError
from oft_listener import ListenerSupervisor
from oft_transfer import OftTransfer

USAGE = (
    "%(prog)s <sourceNetwork> <destinationNetwork> <destinationAddress> <amount>\n"
    "       %(prog)s --listen <listeningNetwork> <expectedSourceNetwork>"
)
EPILOG = (
    "Example: %(prog)s sepolia amoy 0xRecipientAddress 10.5\n\n"
    "Networks must exist in lz_config/lz_endpoints.json and contracts in "
    "contracts/<network>/{adapter,token}.json.\n"
    "PRIVATE_KEY must be set in the environment or in a .env file."
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oft-bridge",
        usage=USAGE,
        epilog=EPILOG,
        description="Send tokens across chains through LayerZero OFT contracts, "
                    "or listen for inbound transfers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--listen",
        nargs=2,
        metavar=("LISTENING_NETWORK", "EXPECTED_SOURCE_NETWORK"),
        help="Watch for inbound transfers instead of sending.",
    )
    parser.add_argument("transfer", nargs="*", help=argparse.SUPPRESS)
    return parser


def validate_transfer_args(destination_address: str, amount: str) -> Optional[str]:
    """Returns an error message for malformed transfer arguments, or None."""
    if not Web3.is_address(destination_address):
        return f"Invalid destination address: {destination_address}"
    try:
        value = Decimal(amount)
    except InvalidOperation:
        return f"Invalid amount: {amount}"
    if not value.is_finite() or value <= 0:
        return f"Amount must be a positive number, got: {amount}"
    return None


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


async def listen(settings: ListenerSettings) -> None:
    """Runs the listener until SIGINT or SIGTERM."""
    supervisor = ListenerSupervisor(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, supervisor.terminate)
        except NotImplementedError:
            # Windows event loops do not support add_signal_handler.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(supervisor.terminate))
    await supervisor.run()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the script. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.listen and args.transfer:
        parser.error("--listen takes exactly two networks and no transfer arguments")
    if not args.listen and len(args.transfer) != 4:
        parser.error("expected <sourceNetwork> <destinationNetwork> <destinationAddress> <amount>")

    setup_logging()

    if not args.listen:
        problem = validate_transfer_args(args.transfer[2], args.transfer[3])
        if problem:
            logging.error(problem)
            return 1

    try:
        config = ConfigManager()
    except (BridgeError, ValueError) as e:
        logging.error(f"Configuration Error: {e}")
        return 1
    logging.getLogger().setLevel(config.LOG_LEVEL)

    if args.listen:
        listen_network, source_network = args.listen
        try:
            asyncio.run(listen(config.listener_settings(listen_network, source_network)))
        except KeyboardInterrupt:
            logging.info("Interrupted. Listener stopped.")
        return 0

    source_network, destination_network, destination_address, amount = args.transfer
    try:
        OftTransfer(config).execute(source_network, destination_network, destination_address, amount)
    except (BridgeError, ValueError) as e:
        logging.error(f"Transfer failed: {e}")
        return 1
    except Exception as e:
        logging.critical(f"A fatal error occurred during the transfer: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
