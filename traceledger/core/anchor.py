"""
Ledger Anchor Client

Commits a 64-hex data hash to an external append-only ledger and
returns an AnchorProof. The ledger is opaque: hash in, proof out;
reference + hash in, boolean out.

VARIANTS:
- simulated: in-process stand-in (development, demos, tests)
- chain: EVM JSON-RPC contract call, signed locally

The variant is chosen ONCE at startup by create_anchor_client(); the
rest of the system only sees LedgerAnchorClient.

CONFIGURATION:
- TRACELEDGER_ANCHOR_MODE: simulated | chain (default: simulated)
- TRACELEDGER_ANCHOR_TIMEOUT_SECONDS: submission timeout (default: 5 simulated, 180 chain)
- TRACELEDGER_SIMULATED_DELAY_MS: simulated latency (default: 500)
- TRACELEDGER_SIMULATED_FAILURE_RATE: 0..1 injected failure probability (default: 0)
- TRACELEDGER_CHAIN_RPC_URL: JSON-RPC endpoint
- TRACELEDGER_CHAIN_PRIVATE_KEY: hex secp256k1 key of the submitting account
- TRACELEDGER_CHAIN_CONTRACT_ADDRESS: recorder contract address
- TRACELEDGER_CHAIN_ID: EIP-155 chain id (default: 11155111, sepolia)
- TRACELEDGER_CHAIN_NETWORK: network label stored on proofs (default: sepolia)
- TRACELEDGER_CHAIN_POLL_SECONDS: receipt poll interval (default: 2)

SECURITY NOTES:
- The private key is never logged, never in repr(), never in errors or proofs
"""

import asyncio
import os
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from ..observability import get_logger, is_production
from ..schemas import AnchorProof, TransactionInfo
from .errors import AnchorSubmissionError, ConfigurationError, ValidationError
from .hasher import Hasher

logger = get_logger(__name__)


SIMULATED_MODE = "simulated"
CHAIN_MODE = "chain"

DEFAULT_SIMULATED_TIMEOUT_SECONDS = 5.0
DEFAULT_CHAIN_TIMEOUT_SECONDS = 180.0


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class AnchorConfig:
    """Configuration for the ledger anchor client."""
    mode: str = SIMULATED_MODE
    timeout_seconds: Optional[float] = None  # None means per-mode default

    # Simulated
    simulated_delay_ms: int = 500
    simulated_failure_rate: float = 0.0

    # Chain
    rpc_url: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)
    contract_address: Optional[str] = None
    chain_id: int = 11155111
    network: str = "sepolia"
    poll_interval_seconds: float = 2.0

    @classmethod
    def from_env(cls) -> "AnchorConfig":
        """Load configuration from environment variables."""
        timeout = os.environ.get("TRACELEDGER_ANCHOR_TIMEOUT_SECONDS")
        return cls(
            mode=os.environ.get("TRACELEDGER_ANCHOR_MODE", SIMULATED_MODE).lower(),
            timeout_seconds=float(timeout) if timeout else None,
            simulated_delay_ms=int(os.environ.get("TRACELEDGER_SIMULATED_DELAY_MS", "500")),
            simulated_failure_rate=float(os.environ.get("TRACELEDGER_SIMULATED_FAILURE_RATE", "0")),
            rpc_url=os.environ.get("TRACELEDGER_CHAIN_RPC_URL") or None,
            private_key=os.environ.get("TRACELEDGER_CHAIN_PRIVATE_KEY") or None,
            contract_address=os.environ.get("TRACELEDGER_CHAIN_CONTRACT_ADDRESS") or None,
            chain_id=int(os.environ.get("TRACELEDGER_CHAIN_ID", "11155111")),
            network=os.environ.get("TRACELEDGER_CHAIN_NETWORK", "sepolia"),
            poll_interval_seconds=float(os.environ.get("TRACELEDGER_CHAIN_POLL_SECONDS", "2")),
        )

    @property
    def effective_timeout(self) -> float:
        if self.timeout_seconds is not None:
            return self.timeout_seconds
        if self.mode == CHAIN_MODE:
            return DEFAULT_CHAIN_TIMEOUT_SECONDS
        return DEFAULT_SIMULATED_TIMEOUT_SECONDS

    def validate(self) -> None:
        """
        Check the configuration is usable.

        Raises:
            ConfigurationError: Unknown mode, or chain mode missing settings
        """
        if self.mode not in (SIMULATED_MODE, CHAIN_MODE):
            raise ConfigurationError(
                f"Unknown TRACELEDGER_ANCHOR_MODE: {self.mode}. "
                f"Valid values: {SIMULATED_MODE}, {CHAIN_MODE}"
            )
        if self.effective_timeout <= 0:
            raise ConfigurationError("Anchor timeout must be positive")
        if not 0.0 <= self.simulated_failure_rate <= 1.0:
            raise ConfigurationError("TRACELEDGER_SIMULATED_FAILURE_RATE must be within 0..1")
        if self.mode == CHAIN_MODE:
            missing = [
                name for name, value in (
                    ("TRACELEDGER_CHAIN_RPC_URL", self.rpc_url),
                    ("TRACELEDGER_CHAIN_PRIVATE_KEY", self.private_key),
                    ("TRACELEDGER_CHAIN_CONTRACT_ADDRESS", self.contract_address),
                )
                if not value
            ]
            if missing:
                raise ConfigurationError(
                    f"Chain anchoring requires {', '.join(missing)}"
                )


# ============================================================
# ABSTRACT CLIENT
# ============================================================

class LedgerAnchorClient(ABC):
    """
    Abstract ledger anchor client.

    anchor() is a template method: it validates the digest, runs the
    variant's _submit() under a timeout, and converts every failure
    into AnchorSubmissionError. Variants only implement _submit(),
    verify_on_chain() and get_transaction().
    """

    mode: str = ""

    def __init__(self, network: str, timeout_seconds: float):
        self.network = network
        self.timeout_seconds = timeout_seconds

    async def anchor(self, data_hash: str) -> AnchorProof:
        """
        Commit a data hash to the ledger.

        Args:
            data_hash: 64 lowercase hex characters

        Returns:
            AnchorProof (event_id unset; the caller links it)

        Raises:
            ValidationError: data_hash is not a valid digest
            AnchorSubmissionError: rejected, failed, or timed out
        """
        if not Hasher.is_valid_digest(data_hash):
            raise ValidationError(f"Invalid data hash: {data_hash!r}")

        try:
            return await asyncio.wait_for(self._submit(data_hash), self.timeout_seconds)
        except AnchorSubmissionError:
            raise
        except asyncio.TimeoutError as e:
            raise AnchorSubmissionError(
                f"Anchor submission timed out after {self.timeout_seconds}s",
                cause=e,
            ) from e
        except Exception as e:
            raise AnchorSubmissionError(f"Anchor submission failed: {e}", cause=e) from e

    @abstractmethod
    async def _submit(self, data_hash: str) -> AnchorProof:
        """Variant-specific submission. Raise anything on failure."""
        pass

    @abstractmethod
    async def verify_on_chain(self, transaction_ref: str, data_hash: str) -> bool:
        """
        Ask the ledger whether transaction_ref committed data_hash.

        Raises:
            TransactionNotFoundError: Unknown reference
            LedgerUnavailableError: Ledger could not be reached
        """
        pass

    @abstractmethod
    async def get_transaction(self, transaction_ref: str) -> TransactionInfo:
        """
        Look up what the ledger knows about a transaction.

        Raises:
            TransactionNotFoundError: Unknown reference
            LedgerUnavailableError: Ledger could not be reached
        """
        pass

    async def aclose(self) -> None:
        """Release network resources. Default: nothing to release."""
        return None


# ============================================================
# FACTORY
# ============================================================

def create_anchor_client(config: Optional[AnchorConfig] = None) -> LedgerAnchorClient:
    """
    Build the configured anchor client.

    Call this once at startup and pass the instance by reference.

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    config = config or AnchorConfig.from_env()
    config.validate()

    if config.mode == CHAIN_MODE:
        from .chain import ChainLedgerClient

        client = ChainLedgerClient(
            rpc_url=config.rpc_url,
            private_key=config.private_key,
            contract_address=config.contract_address,
            chain_id=config.chain_id,
            network=config.network,
            timeout_seconds=config.effective_timeout,
            poll_interval_seconds=config.poll_interval_seconds,
        )
        logger.info(
            "Anchor client ready",
            mode=CHAIN_MODE,
            network=config.network,
            chain_id=config.chain_id,
            sender=client.address,
        )
        return client

    from .simulated import SimulatedLedgerClient

    if is_production():
        warnings.warn(
            "Simulated anchoring is enabled in production. Proofs are NOT "
            "committed to any external ledger. Set TRACELEDGER_ANCHOR_MODE=chain.",
            stacklevel=2,
        )

    logger.info(
        "Anchor client ready",
        mode=SIMULATED_MODE,
        delay_ms=config.simulated_delay_ms,
        failure_rate=config.simulated_failure_rate,
    )
    return SimulatedLedgerClient(
        delay_seconds=config.simulated_delay_ms / 1000.0,
        failure_rate=config.simulated_failure_rate,
        timeout_seconds=config.effective_timeout,
    )
