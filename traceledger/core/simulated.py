"""
Simulated Ledger

In-process stand-in for a public chain. Proofs look like chain proofs
(0x-prefixed 32-byte transaction reference, block number, gas units)
but nothing leaves the process.

LIMITATION: verify_on_chain() only checks the digest syntax. A simulated
proof proves nothing about tampering; the local hash comparison does.

get_transaction() only remembers the most recent MAX_REMEMBERED_TRANSACTIONS
submissions; older references report TransactionNotFoundError.
"""

import asyncio
import random
import secrets
import time
from collections import OrderedDict
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Optional
from uuid import uuid4

from ..schemas import AnchorProof, AnchorStatus, TransactionInfo
from .anchor import DEFAULT_SIMULATED_TIMEOUT_SECONDS, SIMULATED_MODE, LedgerAnchorClient
from .errors import TransactionNotFoundError
from .hasher import Hasher


SIMULATED_NETWORK = "mock"
SIMULATED_GAS_UNITS = "21000"
MAX_REMEMBERED_TRANSACTIONS = 10_000


class SimulatedLedgerClient(LedgerAnchorClient):
    """Simulated anchor client with monotonic block numbers."""

    mode = SIMULATED_MODE

    def __init__(
        self,
        delay_seconds: float = 0.5,
        failure_rate: float = 0.0,
        timeout_seconds: float = DEFAULT_SIMULATED_TIMEOUT_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        max_transactions: int = MAX_REMEMBERED_TRANSACTIONS,
    ):
        super().__init__(network=SIMULATED_NETWORK, timeout_seconds=timeout_seconds)
        self._delay_seconds = delay_seconds
        self._failure_rate = failure_rate
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rng = rng or random.Random()
        self._lock = Lock()
        self._last_block = 0
        self._max_transactions = max_transactions
        self._transactions: OrderedDict[str, AnchorProof] = OrderedDict()

    def _next_block_number(self) -> int:
        # Strictly increasing per client, roughly tracking wall-clock seconds
        with self._lock:
            candidate = int(time.time()) + self._rng.randrange(1000)
            self._last_block = max(self._last_block + 1, candidate)
            return self._last_block

    async def _submit(self, data_hash: str) -> AnchorProof:
        if self._delay_seconds > 0:
            await asyncio.sleep(self._delay_seconds)

        if self._failure_rate > 0 and self._rng.random() < self._failure_rate:
            raise RuntimeError("simulated ledger rejected the transaction")

        proof = AnchorProof(
            id=str(uuid4()),
            data_hash=data_hash,
            transaction_ref="0x" + secrets.token_hex(32),
            block_number=self._next_block_number(),
            block_timestamp=self._clock(),
            network=SIMULATED_NETWORK,
            cost_units=SIMULATED_GAS_UNITS,
            status=AnchorStatus.CONFIRMED,
        )
        with self._lock:
            self._transactions[proof.transaction_ref] = proof
            while len(self._transactions) > self._max_transactions:
                self._transactions.popitem(last=False)
        return proof

    async def verify_on_chain(self, transaction_ref: str, data_hash: str) -> bool:
        return Hasher.is_valid_digest(data_hash)

    async def get_transaction(self, transaction_ref: str) -> TransactionInfo:
        with self._lock:
            proof = self._transactions.get(transaction_ref)
        if proof is None:
            raise TransactionNotFoundError(f"Unknown transaction: {transaction_ref}")
        return TransactionInfo(
            transaction_ref=proof.transaction_ref,
            network=proof.network,
            status=proof.status,
            block_number=proof.block_number,
            block_timestamp=proof.block_timestamp,
            cost_units=proof.cost_units,
        )
