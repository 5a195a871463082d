"""
EVM chain access for minting soulbound credentials.

`MintContract` encodes the mint call and decodes the mint event from receipt
logs. `Web3ChainClient` talks to a JSON-RPC node; `MockChainClient` is an
in-process chain used for local development and tests.
"""

import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Union

import rlp
import structlog
from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound

from .errors import PermanentChainError, TransientChainError, classify_chain_error

logger = structlog.get_logger()


# Soulbound credential contract (minimal ABI for minting)
DEFAULT_SBT_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "uri", "type": "string"},
        ],
        "name": "mint",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "tokenId", "type": "uint256"},
            {"indexed": True, "name": "recipient", "type": "address"},
            {"indexed": False, "name": "metadataUri", "type": "string"},
        ],
        "name": "Minted",
        "type": "event",
    },
]


def load_abi(path: Optional[Path]) -> list[dict[str, Any]]:
    """Load a contract ABI from a JSON file (a bare list or a Hardhat/Foundry artifact)."""
    if path is None:
        return DEFAULT_SBT_ABI
    document = json.loads(Path(path).read_text())
    if isinstance(document, dict):
        document = document["abi"]
    return document


def _as_bytes(value: Union[bytes, str]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


@dataclass
class Receipt:
    """Mined transaction outcome."""

    tx_hash: str
    status: int  # 1 = success, 0 = reverted
    block_number: int
    logs: list[dict[str, Any]] = field(default_factory=list)
    gas_used: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class MintContract:
    """
    ABI helper for the credential contract.

    The mint function must take `(address recipient, string uri)`. The token
    id is read from the first indexed parameter of the mint event.
    """

    def __init__(
        self,
        address: str,
        abi: Optional[list[dict[str, Any]]] = None,
        function_name: str = "mint",
        event_name: str = "Minted",
    ):
        self.address = Web3.to_checksum_address(address)
        self.abi = abi or DEFAULT_SBT_ABI
        self.codec = Web3().codec

        fn = self._find(function_name, "function")
        self.input_types = [item["type"] for item in fn["inputs"]]
        if self.input_types != ["address", "string"]:
            raise ValueError(
                f"{function_name} must take (address, string), got ({', '.join(self.input_types)})"
            )
        self.function_signature = f"{function_name}({','.join(self.input_types)})"
        self.selector = Web3.keccak(text=self.function_signature)[:4]

        ev = self._find(event_name, "event")
        indexed = [item for item in ev["inputs"] if item.get("indexed")]
        if not indexed:
            raise ValueError(f"{event_name} has no indexed parameters")
        self.event_signature = f"{event_name}({','.join(item['type'] for item in ev['inputs'])})"
        self.event_topic = Web3.keccak(text=self.event_signature)
        self._event_inputs = ev["inputs"]

    def _find(self, name: str, kind: str) -> dict[str, Any]:
        for item in self.abi:
            if item.get("type") == kind and item.get("name") == name:
                return item
        raise ValueError(f"{kind} {name} not found in contract ABI")

    def encode_mint(self, recipient: str, metadata_uri: str) -> bytes:
        """Calldata for `mint(recipient, metadata_uri)`."""
        args = self.codec.encode(
            self.input_types,
            [Web3.to_checksum_address(recipient), metadata_uri],
        )
        return bytes(self.selector) + args

    def decode_mint(self, data: bytes) -> tuple[str, str]:
        """Inverse of encode_mint: returns (recipient, metadata_uri)."""
        if data[:4] != bytes(self.selector):
            raise ValueError("Calldata is not a mint call")
        recipient, uri = self.codec.decode(self.input_types, data[4:])
        return Web3.to_checksum_address(recipient), uri

    def encode_minted_log(self, token_id: int, recipient: str, metadata_uri: str) -> dict[str, Any]:
        """Build a log entry shaped like the node's (used by MockChainClient)."""
        recipient_topic = bytes(12) + _as_bytes(Web3.to_checksum_address(recipient))
        non_indexed = [item["type"] for item in self._event_inputs if not item.get("indexed")]
        return {
            "address": self.address,
            "topics": [
                Web3.to_hex(self.event_topic),
                Web3.to_hex(token_id.to_bytes(32, "big")),
                Web3.to_hex(recipient_topic),
            ],
            "data": Web3.to_hex(self.codec.encode(non_indexed, [metadata_uri])),
        }

    def decode_token_id(self, logs: list[dict[str, Any]]) -> Optional[int]:
        """Token id from the first mint event emitted by this contract, if any."""
        for log in logs:
            if str(log.get("address", "")).lower() != self.address.lower():
                continue
            topics = [_as_bytes(topic) for topic in log.get("topics", [])]
            if len(topics) < 2 or topics[0] != bytes(self.event_topic):
                continue
            return int.from_bytes(topics[1], "big")
        return None


class ChainClient(Protocol):
    """Chain node operations used by the relayer and watcher."""

    def pending_nonce(self, address: str) -> int: ...

    def confirmed_nonce(self, address: str) -> int: ...

    def gas_price(self) -> int: ...

    def submit_signed(self, raw_transaction: bytes) -> str: ...

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]: ...

    def block_height(self) -> int: ...


class Web3ChainClient:
    """Client for an EVM JSON-RPC node."""

    def __init__(self, rpc_url: str, timeout: float = 20.0, w3: Optional[Web3] = None):
        self.w3 = w3 or Web3(
            Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout})
        )
        logger.info("chain_client_initialized", rpc_url=rpc_url, timeout=timeout)

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception as e:
            raise classify_chain_error(e) from e

    def pending_nonce(self, address: str) -> int:
        return self._call(
            self.w3.eth.get_transaction_count, Web3.to_checksum_address(address), "pending"
        )

    def confirmed_nonce(self, address: str) -> int:
        return self._call(
            self.w3.eth.get_transaction_count, Web3.to_checksum_address(address), "latest"
        )

    def gas_price(self) -> int:
        return self._call(lambda: self.w3.eth.gas_price)

    def submit_signed(self, raw_transaction: bytes) -> str:
        tx_hash = self._call(self.w3.eth.send_raw_transaction, raw_transaction)
        return Web3.to_hex(tx_hash)

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise classify_chain_error(e) from e

        return Receipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            status=receipt["status"],
            block_number=receipt["blockNumber"],
            gas_used=receipt.get("gasUsed"),
            logs=[
                {
                    "address": log["address"],
                    "topics": [Web3.to_hex(topic) for topic in log["topics"]],
                    "data": Web3.to_hex(log["data"]),
                }
                for log in receipt["logs"]
            ],
        )

    def block_height(self) -> int:
        return self._call(lambda: self.w3.eth.block_number)


@dataclass
class _MockTx:
    tx_hash: str
    sender: str
    nonce: int
    gas_price: int
    to: str
    data: bytes
    block_number: Optional[int] = None
    status: Optional[int] = None
    logs: list[dict[str, Any]] = field(default_factory=list)


class MockChainClient:
    """
    In-process chain simulation.

    Accepts real signed legacy transactions, enforces per-sender nonces and
    the replacement gas rule, and mines pending transactions on `mine()`.
    Successful mint calls to the contract emit the mint event with sequential
    token ids. With `block_time_seconds` set, blocks are produced from the
    wall clock as `block_height()` is polled.
    """

    REPLACEMENT_BUMP_PERCENT = 10

    def __init__(
        self,
        contract: MintContract,
        start_height: int = 1_000,
        base_gas_price: int = 30_000_000_000,
        block_time_seconds: Optional[float] = None,
        should_revert: Optional[Callable[[str, str], bool]] = None,
    ):
        self.contract = contract
        self.height = start_height
        self.base_gas_price = base_gas_price
        self.block_time_seconds = block_time_seconds
        self.should_revert = should_revert or (lambda recipient, uri: False)
        self._txs: dict[str, _MockTx] = {}
        self._confirmed_nonces: dict[str, int] = {}
        self._next_token_id = 1
        self._last_block_at = time.monotonic()
        self._lock = threading.Lock()

    def pending_nonce(self, address: str) -> int:
        address = Web3.to_checksum_address(address)
        with self._lock:
            nonce = self._confirmed_nonces.get(address, 0)
            pending = [
                tx.nonce for tx in self._txs.values()
                if tx.sender == address and tx.block_number is None
            ]
            return max([nonce] + [n + 1 for n in pending])

    def confirmed_nonce(self, address: str) -> int:
        with self._lock:
            return self._confirmed_nonces.get(Web3.to_checksum_address(address), 0)

    def gas_price(self) -> int:
        return self.base_gas_price

    def submit_signed(self, raw_transaction: bytes) -> str:
        fields = rlp.decode(raw_transaction)
        if len(fields) != 9:
            raise PermanentChainError("only legacy transactions are supported")

        nonce = int.from_bytes(fields[0], "big")
        gas_price = int.from_bytes(fields[1], "big")
        to = Web3.to_checksum_address(fields[3]) if fields[3] else ""
        sender = Account.recover_transaction(raw_transaction)
        tx_hash = Web3.to_hex(Web3.keccak(raw_transaction))

        with self._lock:
            if tx_hash in self._txs:
                raise TransientChainError("already known")
            if nonce < self._confirmed_nonces.get(sender, 0):
                raise TransientChainError("nonce too low")
            for existing in list(self._txs.values()):
                if existing.sender != sender or existing.nonce != nonce:
                    continue
                if existing.block_number is not None:
                    raise TransientChainError("nonce too low")
                minimum = existing.gas_price * (100 + self.REPLACEMENT_BUMP_PERCENT) // 100
                if gas_price < minimum:
                    raise TransientChainError("replacement transaction underpriced")
                # Replaced transactions are dropped from the pool.
                del self._txs[existing.tx_hash]

            self._txs[tx_hash] = _MockTx(
                tx_hash=tx_hash,
                sender=sender,
                nonce=nonce,
                gas_price=gas_price,
                to=to,
                data=bytes(fields[5]),
            )

        logger.debug("mock_tx_submitted", tx_hash=tx_hash, sender=sender, nonce=nonce)
        return tx_hash

    def mine(self, blocks: int = 1) -> int:
        """Include every pending transaction in the next block, then advance `blocks`."""
        with self._lock:
            if blocks < 1:
                return self.height
            block = self.height + 1
            pending = sorted(
                (tx for tx in self._txs.values() if tx.block_number is None),
                key=lambda tx: (tx.sender, tx.nonce),
            )
            for tx in pending:
                self._execute(tx, block)
                self._confirmed_nonces[tx.sender] = max(
                    self._confirmed_nonces.get(tx.sender, 0), tx.nonce + 1
                )
            self.height += blocks
            return self.height

    def _execute(self, tx: _MockTx, block: int) -> None:
        tx.block_number = block
        if tx.to != self.contract.address:
            tx.status = 0
            return
        try:
            recipient, uri = self.contract.decode_mint(tx.data)
        except Exception:
            tx.status = 0
            return
        if self.should_revert(recipient, uri):
            tx.status = 0
            return
        token_id = self._next_token_id
        self._next_token_id += 1
        tx.status = 1
        tx.logs = [self.contract.encode_minted_log(token_id, recipient, uri)]

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        with self._lock:
            tx = self._txs.get(tx_hash)
            if tx is None or tx.block_number is None:
                return None
            return Receipt(
                tx_hash=tx.tx_hash,
                status=tx.status or 0,
                block_number=tx.block_number,
                logs=list(tx.logs),
                gas_used=21_000,
            )

    def block_height(self) -> int:
        if self.block_time_seconds:
            elapsed = time.monotonic() - self._last_block_at
            blocks = int(elapsed // self.block_time_seconds)
            if blocks:
                self._last_block_at += blocks * self.block_time_seconds
                self.mine(blocks)
        return self.height
