# oft_transfer.py
# Sends tokens from one chain to another through LayerZero OFT / OFT Adapter
# contracts: approve, make sure both contracts know each other as peers,
# quote the messaging fee and submit send().

import json
import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

from eth_account import Account
from web3 import Web3
from web3.contract import Contract
from web3.logs import DISCARD
from web3.middleware import ExtraDataToPOAMiddleware

from oft_config import (
    ConfigManager,
    ContractConfig,
    EndpointDescriptor,
    ZERO_ADDRESS,
    get_chain_data,
    resolve_oft_contract,
)
from oft_decimals import DecimalsResolver
from oft_errors import BridgeError, PreconditionFailed, TransactionReverted, TransportFailure
from oft_options import build_executor_lz_receive_option
from oft_scan import log_message_status
from oft_units import parse_units, to_bytes32

# The ERC-20 surface needed for approvals, precondition checks and decimals.
ERC20_ABI: List[Dict[str, Any]] = json.loads("""
[
    {"type": "function", "name": "approve", "stateMutability": "nonpayable",
     "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"type": "function", "name": "allowance", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"type": "function", "name": "balanceOf", "stateMutability": "view",
     "inputs": [{"name": "account", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"type": "function", "name": "decimals", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint8"}]},
    {"type": "event", "name": "Transfer", "anonymous": false,
     "inputs": [{"indexed": true, "name": "from", "type": "address"},
                {"indexed": true, "name": "to", "type": "address"},
                {"indexed": false, "name": "value", "type": "uint256"}]}
]
""")


@dataclass
class TransferResult:
    transaction_hash: str
    block_number: int
    amount_ld: int
    native_fee: int
    lz_token_fee: int
    guid: Optional[str] = None


# --- Blockchain Interaction ---

class BlockchainConnector:
    """
    Manages the connection to one chain's JSON-RPC node via Web3.py and signs
    transactions with the configured account.
    """
    def __init__(self, rpc_url: str, private_key: str, receipt_timeout: int = 120):
        self.rpc_url = rpc_url
        self.account = Account.from_key(private_key)
        self.receipt_timeout = receipt_timeout
        self.web3: Optional[Web3] = None
        self.connect()

    def connect(self):
        """Establishes a connection to the blockchain node."""
        try:
            self.web3 = Web3(Web3.HTTPProvider(self.rpc_url))
            # Testnets such as Amoy and BSC are PoA chains.
            self.web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            if not self.is_connected():
                raise ConnectionError("Failed to connect to the node.")
            logging.info(f"Successfully connected to blockchain node at {self.rpc_url}. "
                         f"Chain ID: {self.web3.eth.chain_id}")
        except Exception as e:
            logging.error(f"Error connecting to blockchain node: {e}")
            self.web3 = None

    def is_connected(self) -> bool:
        """Checks if the connection to the node is active."""
        return self.web3 is not None and self.web3.is_connected()

    def get_web3_instance(self) -> Web3:
        """Returns the Web3 instance, ensuring it's connected."""
        if not self.is_connected():
            logging.warning("Connection lost. Attempting to reconnect...")
            self.connect()
        if self.web3 is None:
            raise TransportFailure(f"Unable to establish a connection to {self.rpc_url}.")
        return self.web3

    def get_contract(self, address: str, abi: List[Dict[str, Any]]) -> Contract:
        """Gets a contract instance."""
        w3 = self.get_web3_instance()
        checksum_address = w3.to_checksum_address(address)
        return w3.eth.contract(address=checksum_address, abi=abi)

    def transact(self, contract_function, action: str, value: int = 0) -> Dict[str, Any]:
        """
        Signs, sends and waits for a contract call.

        Returns:
            The transaction receipt.

        Raises:
            TransactionReverted: if the receipt reports a failed status.
        """
        w3 = self.get_web3_instance()
        tx = contract_function.build_transaction({
            "from": self.account.address,
            "nonce": w3.eth.get_transaction_count(self.account.address),
            "chainId": w3.eth.chain_id,
            "value": value,
        })
        signed_tx = self.account.sign_transaction(tx)
        tx_hash = Web3.to_hex(w3.eth.send_raw_transaction(signed_tx.raw_transaction))
        logging.info(f"{action} transaction sent: {tx_hash}")

        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt["status"] != 1:
            raise TransactionReverted(action, tx_hash)
        logging.info(f"{action} confirmed in block {receipt['blockNumber']}")
        return receipt


# --- Core Logic ---

class OftTransfer:
    """
    Orchestrates one OFT transfer from a source network to a destination network.
    """
    def __init__(self, config: ConfigManager, connector_factory=BlockchainConnector):
        self.config = config
        self.connector_factory = connector_factory

    def _connect(self, endpoint: EndpointDescriptor) -> BlockchainConnector:
        return self.connector_factory(
            endpoint.rpc_url,
            self.config.PRIVATE_KEY,
            receipt_timeout=self.config.RECEIPT_TIMEOUT_SECONDS,
        )

    def execute(self, source_network: str, destination_network: str,
                destination_address: str, amount: str) -> TransferResult:
        """
        Runs the full send sequence.

        Args:
            source_network: Network the tokens leave from.
            destination_network: Network the tokens arrive on.
            destination_address: Recipient on the destination network.
            amount: Human-readable token amount, e.g. "10.5".

        Returns:
            A TransferResult describing the confirmed send() transaction.
        """
        logging.info(f"--- Initiating OFT Transfer: {amount} from {source_network} "
                     f"to {destination_address} on {destination_network} ---")

        src_data = get_chain_data(source_network, self.config.LZ_ENDPOINTS_PATH)
        dst_data = get_chain_data(destination_network, self.config.LZ_ENDPOINTS_PATH)
        src_config = resolve_oft_contract(source_network, self.config.OFT_CONTRACTS_DIR)
        dst_config = resolve_oft_contract(destination_network, self.config.OFT_CONTRACTS_DIR)
        logging.info(f"Using {src_config.category} {src_config.address} on {source_network}; "
                     f"destination EID {dst_data.eid} ({dst_config.category} {dst_config.address})")

        src_connector = self._connect(src_data)
        dst_connector = self._connect(dst_data)
        src_oft = src_connector.get_contract(src_config.address, src_config.abi)
        dst_oft = dst_connector.get_contract(dst_config.address, dst_config.abi)
        sender = src_connector.account.address
        logging.info(f"Sender address: {sender}")

        token_address = self.underlying_token(src_oft)
        token = src_connector.get_contract(token_address, ERC20_ABI)
        decimals = self.resolve_decimals(src_oft, token, src_config)
        amount_ld = parse_units(amount, decimals)
        logging.info(f"Amount in local decimals (amountLD): {amount_ld}")

        needs_approval = self.approval_required(src_oft)
        if needs_approval:
            self.approve(src_connector, token, src_oft.address, amount_ld)

        self.ensure_peer(src_connector, src_oft, dst_data.eid, dst_config.address)
        self.ensure_peer(dst_connector, dst_oft, src_data.eid, src_config.address)

        send_param = self.build_send_param(dst_data.eid, destination_address, amount_ld)
        native_fee, lz_token_fee = self.quote_fee(src_oft, send_param)

        self.check_preconditions(src_oft, token, sender, amount_ld, dst_data.eid,
                                 dst_config.address, needs_approval)

        result = self.send(src_connector, src_oft, send_param, native_fee, lz_token_fee, amount_ld)
        if self.config.LZ_SCAN_API_URL:
            log_message_status(result.transaction_hash, self.config.LZ_SCAN_API_URL)
        return result

    def underlying_token(self, oft: Contract) -> str:
        """Adapters wrap a separate ERC-20; native OFTs are their own token."""
        try:
            underlying = oft.functions.token().call()
        except Exception:
            logging.info("No 'token()' function found. Assuming the OFT contract itself holds the tokens.")
            return oft.address
        if not underlying or underlying == ZERO_ADDRESS:
            return oft.address
        if underlying != oft.address:
            logging.info(f"Identified underlying token: {underlying}")
        return underlying

    def approval_required(self, oft: Contract) -> bool:
        try:
            return bool(oft.functions.approvalRequired().call())
        except Exception:
            return True

    def resolve_decimals(self, oft: Contract, token: Contract, contract_config: ContractConfig) -> int:
        resolver = DecimalsResolver(
            [
                lambda: oft.functions.decimals().call(),
                lambda: token.functions.decimals().call(),
                lambda: contract_config.decimals,
            ],
            token_label=f"{contract_config.category} {contract_config.address}",
        )
        decimals = resolver.resolve_or_default()
        logging.info(f"Token decimals: {decimals}")
        return decimals

    def approve(self, connector: BlockchainConnector, token: Contract, spender: str, amount_ld: int):
        """Approves the OFT to pull `amount_ld` tokens. Only allowance errors stop the transfer."""
        logging.info(f"Approving {spender} to spend {amount_ld} of {token.address}...")
        try:
            connector.transact(token.functions.approve(spender, amount_ld), "Approval")
        except Exception as e:
            logging.error(f"Approval failed: {e}")
            if "insufficient allowance" in str(e):
                raise PreconditionFailed("Approval failed due to allowance issue. Cannot proceed.") from e
            logging.warning("Approval failed, but continuing. The send may fail if approval was required.")

    def ensure_peer(self, connector: BlockchainConnector, oft: Contract, remote_eid: int, remote_address: str):
        """Sets `remote_address` as the peer of `oft` for `remote_eid` unless it already is."""
        expected = to_bytes32(remote_address)
        try:
            current = bytes(oft.functions.peers(remote_eid).call())
            if current == expected:
                logging.info(f"Peer for EID {remote_eid} is already set on {oft.address}.")
                return
            logging.info(f"Current peer for EID {remote_eid} on {oft.address} is "
                         f"{Web3.to_hex(current)}. Needs update.")
        except Exception as e:
            logging.warning(f"Could not check peers({remote_eid}) on {oft.address}: {e}. "
                            f"Proceeding with setPeer call.")

        logging.info(f"Setting peer on {oft.address}: EID {remote_eid} -> {remote_address}")
        try:
            connector.transact(oft.functions.setPeer(remote_eid, expected), "SetPeer")
        except Exception as e:
            raise PreconditionFailed(f"Setting peer on {oft.address} failed, cannot proceed. Reason: {e}") from e

    def build_send_param(self, destination_eid: int, destination_address: str, amount_ld: int) -> Dict[str, Any]:
        return {
            "dstEid": destination_eid,
            "to": to_bytes32(destination_address),
            "amountLD": amount_ld,
            "minAmountLD": amount_ld,
            "extraOptions": build_executor_lz_receive_option(self.config.EXECUTOR_LZ_RECEIVE_GAS, 0),
            "composeMsg": b"",
            "oftCmd": b"",
        }

    def quote_fee(self, oft: Contract, send_param: Dict[str, Any]):
        """Returns (nativeFee, lzTokenFee) as quoted by the source OFT."""
        logging.info("Estimating LayerZero fees using 'quoteSend'...")
        try:
            native_fee, lz_token_fee = oft.functions.quoteSend(send_param, False).call()
        except Exception as e:
            raise BridgeError(f"Fee estimation failed using 'quoteSend': {e}") from e
        logging.info(f"Estimated native fee (wei): {native_fee}, LZ token fee: {lz_token_fee}")
        return native_fee, lz_token_fee

    def check_preconditions(self, oft: Contract, token: Contract, sender: str, amount_ld: int,
                            destination_eid: int, destination_oft: str, needs_approval: bool = True):
        """
        Verifies allowance, balance and the configured peer before paying for send().

        Raises:
            PreconditionFailed: listing every check that failed.
        """
        logging.info("Verifying preconditions for send...")
        problems = []
        if needs_approval:
            try:
                allowance = token.functions.allowance(sender, oft.address).call()
                logging.info(f"Token allowance: {allowance}")
                if allowance < amount_ld:
                    problems.append(f"allowance {allowance} is less than amount {amount_ld}")
            except Exception as e:
                logging.warning(f"Could not read token allowance: {e}")
        try:
            balance = token.functions.balanceOf(sender).call()
            logging.info(f"Token balance: {balance}")
            if balance < amount_ld:
                problems.append(f"balance {balance} is less than amount {amount_ld}")
        except Exception as e:
            logging.warning(f"Could not read token balance: {e}")
        try:
            peer = bytes(oft.functions.peers(destination_eid).call())
            if peer != to_bytes32(destination_oft):
                problems.append(f"configured peer {Web3.to_hex(peer)} does not match {destination_oft}")
        except Exception as e:
            logging.warning(f"Could not read peers({destination_eid}): {e}")

        if problems:
            for problem in problems:
                logging.critical(f"Precondition failed: {problem}")
            raise PreconditionFailed("; ".join(problems))
        logging.info("Preconditions satisfied.")

    def send(self, connector: BlockchainConnector, oft: Contract, send_param: Dict[str, Any],
             native_fee: int, lz_token_fee: int, amount_ld: int) -> TransferResult:
        logging.info("Sending transaction to OFT contract 'send' function...")
        send_call = oft.functions.send(send_param, (native_fee, lz_token_fee), connector.account.address)
        receipt = connector.transact(send_call, "Send", value=native_fee)

        guid = None
        try:
            for event in oft.events.OFTSent().process_receipt(receipt, errors=DISCARD):
                guid = Web3.to_hex(event["args"]["guid"])
        except Exception as e:
            logging.debug(f"Could not decode OFTSent from receipt: {e}")

        result = TransferResult(
            transaction_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            amount_ld=amount_ld,
            native_fee=native_fee,
            lz_token_fee=lz_token_fee,
            guid=guid,
        )
        logging.info(f"OFT transfer initiated successfully! Tx: {result.transaction_hash}, "
                     f"block: {result.block_number}" + (f", guid: {guid}" if guid else ""))
        return result
