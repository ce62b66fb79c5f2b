"""
EVM Chain Ledger Client

Anchors hashes through a recorder contract using raw JSON-RPC
(no web3 dependency). Transactions are signed locally with eth-account.

Contract interface:
    function recordEvent(string dataHash) returns (uint256)
    function verifyEvent(uint256 eventId, string dataHash) view returns (bool)
    event EventRecorded(uint256 indexed eventId, string dataHash,
                        address indexed recorder, uint256 timestamp)

anchor() blocks until the receipt is mined, so every proof it returns
is CONFIRMED. A reverted transaction is a submission failure.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import httpx
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_utils import (
    decode_hex,
    encode_hex,
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
    to_checksum_address,
)

from ..observability import get_logger
from ..schemas import AnchorProof, AnchorStatus, TransactionInfo
from .anchor import CHAIN_MODE, DEFAULT_CHAIN_TIMEOUT_SECONDS, LedgerAnchorClient
from .errors import (
    AnchorSubmissionError,
    ConfigurationError,
    LedgerUnavailableError,
    TransactionNotFoundError,
)

logger = get_logger(__name__)


RECORD_EVENT_SELECTOR = function_signature_to_4byte_selector("recordEvent(string)")
VERIFY_EVENT_SELECTOR = function_signature_to_4byte_selector("verifyEvent(uint256,string)")
EVENT_RECORDED_TOPIC = encode_hex(
    event_signature_to_log_topic("EventRecorded(uint256,string,address,uint256)")
)

# Headroom over eth_estimateGas
GAS_LIMIT_MULTIPLIER = 1.2


class RpcError(Exception):
    """The node answered with a JSON-RPC error object."""
    pass


def _hex_to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    return int(value, 16)


class ChainLedgerClient(LedgerAnchorClient):
    """
    Real-chain anchor client.

    SECURITY NOTES:
    - The private key is held only inside the eth-account LocalAccount
    - Only the derived address is ever logged or shown
    """

    mode = CHAIN_MODE

    def __init__(
        self,
        *,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        chain_id: int,
        network: str = "sepolia",
        timeout_seconds: float = DEFAULT_CHAIN_TIMEOUT_SECONDS,
        poll_interval_seconds: float = 2.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(network=network, timeout_seconds=timeout_seconds)
        try:
            self._account = Account.from_key(private_key)
        except Exception:
            # Never chain the original error: its text may echo the key
            raise ConfigurationError(
                "TRACELEDGER_CHAIN_PRIVATE_KEY is not a valid secp256k1 private key"
            ) from None
        try:
            self._contract = to_checksum_address(contract_address)
        except ValueError as e:
            raise ConfigurationError(f"Invalid contract address: {contract_address}") from e

        self._rpc_url = str(rpc_url)
        self._chain_id = int(chain_id)
        self._poll_interval_seconds = poll_interval_seconds
        self._http = http_client or httpx.AsyncClient(timeout=30)
        self._request_id = 0

    def __repr__(self) -> str:
        return (
            f"ChainLedgerClient(network={self.network!r}, chain_id={self._chain_id}, "
            f"address={self.address!r}, contract={self._contract!r})"
        )

    @property
    def address(self) -> str:
        """Checksummed sender address derived from the signing key."""
        return self._account.address

    # ================================================================
    # JSON-RPC
    # ================================================================

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Raw JSON-RPC call. Raises RpcError when the node returns an error or garbage."""
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        response = await self._http.post(self._rpc_url, json=payload)
        response.raise_for_status()
        try:
            out = response.json()
        except ValueError as e:
            raise RpcError(f"{method}: response is not JSON") from e
        if not isinstance(out, dict):
            raise RpcError(f"{method}: unexpected response {out!r}")
        if "error" in out:
            raise RpcError(f"{method}: {out['error']}")
        return out.get("result")

    async def _read(self, method: str, params: list[Any]) -> Any:
        """rpc_call for read paths: transport failures become LedgerUnavailableError."""
        try:
            return await self.rpc_call(method, params)
        except (httpx.HTTPError, RpcError, ValueError) as e:
            raise LedgerUnavailableError(f"Ledger unavailable ({self.network}): {e}") from e

    # ================================================================
    # ANCHOR
    # ================================================================

    async def _submit(self, data_hash: str) -> AnchorProof:
        sender = self.address
        calldata = encode_hex(RECORD_EVENT_SELECTOR + abi_encode(["string"], [data_hash]))

        nonce = _hex_to_int(await self.rpc_call("eth_getTransactionCount", [sender, "pending"]))
        gas_price = _hex_to_int(await self.rpc_call("eth_gasPrice", []))
        estimate = _hex_to_int(await self.rpc_call(
            "eth_estimateGas",
            [{"from": sender, "to": self._contract, "data": calldata}],
        ))

        signed = self._account.sign_transaction({
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": int(estimate * GAS_LIMIT_MULTIPLIER),
            "to": self._contract,
            "value": 0,
            "data": calldata,
            "chainId": self._chain_id,
        })
        tx_hash = await self.rpc_call(
            "eth_sendRawTransaction", [encode_hex(bytes(signed.raw_transaction))]
        )
        logger.info("Anchor transaction submitted", network=self.network, transaction_ref=tx_hash)

        receipt = await self._wait_for_receipt(tx_hash)
        if _hex_to_int(receipt.get("status")) != 1:
            raise AnchorSubmissionError(f"Anchor transaction {tx_hash} reverted")

        block_number = _hex_to_int(receipt["blockNumber"])
        block = await self.rpc_call("eth_getBlockByNumber", [receipt["blockNumber"], False])
        if not block:
            raise AnchorSubmissionError(f"Block {block_number} not returned by node")

        return AnchorProof(
            id=str(uuid4()),
            data_hash=data_hash,
            transaction_ref=tx_hash,
            block_number=block_number,
            block_timestamp=datetime.fromtimestamp(_hex_to_int(block["timestamp"]), tz=timezone.utc),
            network=self.network,
            cost_units=str(_hex_to_int(receipt.get("gasUsed")) or 0),
            status=AnchorStatus.CONFIRMED,
        )

    async def _wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        # Bounded by the anchor() timeout
        while True:
            receipt = await self.rpc_call("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                return receipt
            await asyncio.sleep(self._poll_interval_seconds)

    # ================================================================
    # VERIFY / LOOKUP
    # ================================================================

    async def verify_on_chain(self, transaction_ref: str, data_hash: str) -> bool:
        receipt = await self._read("eth_getTransactionReceipt", [transaction_ref])
        if not receipt:
            raise TransactionNotFoundError(f"Unknown transaction: {transaction_ref}")
        if _hex_to_int(receipt.get("status")) != 1:
            return False

        chain_event_id = self._recorded_event_id(receipt)
        if chain_event_id is None:
            return False

        calldata = encode_hex(
            VERIFY_EVENT_SELECTOR + abi_encode(["uint256", "string"], [chain_event_id, data_hash])
        )
        result = await self._read("eth_call", [{"to": self._contract, "data": calldata}, "latest"])
        try:
            (valid,) = abi_decode(["bool"], decode_hex(result))
        except Exception as e:
            raise LedgerUnavailableError(f"Unreadable verifyEvent result: {result!r}") from e
        return bool(valid)

    def _recorded_event_id(self, receipt: dict[str, Any]) -> Optional[int]:
        """Contract-assigned event id from the EventRecorded log, if present."""
        for log in receipt.get("logs") or []:
            topics = log.get("topics") or []
            if (
                str(log.get("address", "")).lower() == self._contract.lower()
                and len(topics) >= 2
                and str(topics[0]).lower() == EVENT_RECORDED_TOPIC
            ):
                return int(topics[1], 16)
        return None

    async def get_transaction(self, transaction_ref: str) -> TransactionInfo:
        tx = await self._read("eth_getTransactionByHash", [transaction_ref])
        if tx is None:
            raise TransactionNotFoundError(f"Unknown transaction: {transaction_ref}")

        receipt = await self._read("eth_getTransactionReceipt", [transaction_ref])
        if not receipt:
            status = AnchorStatus.PENDING
        elif _hex_to_int(receipt.get("status")) == 1:
            status = AnchorStatus.CONFIRMED
        else:
            status = AnchorStatus.FAILED

        block_timestamp = None
        block_number = _hex_to_int(tx.get("blockNumber"))
        if block_number is not None:
            block = await self._read("eth_getBlockByNumber", [tx["blockNumber"], False])
            if block:
                block_timestamp = datetime.fromtimestamp(
                    _hex_to_int(block["timestamp"]), tz=timezone.utc
                )

        return TransactionInfo(
            transaction_ref=transaction_ref,
            network=self.network,
            status=status,
            block_number=block_number,
            block_timestamp=block_timestamp,
            from_address=tx.get("from"),
            to_address=tx.get("to"),
            cost_units=str(_hex_to_int(receipt["gasUsed"])) if receipt and receipt.get("gasUsed") else None,
        )

    async def aclose(self) -> None:
        await self._http.aclose()
