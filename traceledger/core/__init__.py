# Core integrity services
from .errors import (
    TraceLedgerError,
    ValidationError,
    CanonicalEncodingError,
    NotFoundError,
    TransactionNotFoundError,
    AnchorSubmissionError,
    LedgerUnavailableError,
    ConfigurationError,
)
from .canonical import CanonicalEncoder
from .hasher import Hasher
from .anchor import (
    LedgerAnchorClient,
    AnchorConfig,
    create_anchor_client,
)
from .simulated import SimulatedLedgerClient
from .integrity import EventIntegrityService
from .custody import ChainOfCustodyAssembler

__all__ = [
    "TraceLedgerError",
    "ValidationError",
    "CanonicalEncodingError",
    "NotFoundError",
    "TransactionNotFoundError",
    "AnchorSubmissionError",
    "LedgerUnavailableError",
    "ConfigurationError",
    "CanonicalEncoder",
    "Hasher",
    "LedgerAnchorClient",
    "AnchorConfig",
    "create_anchor_client",
    "SimulatedLedgerClient",
    "EventIntegrityService",
    "ChainOfCustodyAssembler",
]
