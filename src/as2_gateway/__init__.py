from importlib.metadata import version

from .api import create_app
from .correlator import Correlation, CorrelationResult, ReceiptCorrelator
from .directory_store import DirectoryStore, create_directories, sanitize_message_id, validate_partnership_name
from .engine import EngineFactory, ProtocolEngine, load_engine_factory
from .errors import (
    As2Error,
    ConcurrentTransitionError,
    ConfigurationError,
    DirectoryError,
    IllegalTransitionError,
    MoveError,
    ProtocolError,
    StateCorruptionError,
    ValidationError,
)
from .lifecycle import LifecycleStateMachine
from .models import (
    Direction,
    DispositionMode,
    HttpOutcome,
    Message,
    Outcome,
    PartnershipConfig,
    Receipt,
    Role,
    Stage,
    SendResult,
    TransferContext,
    TransportFailure,
)
from .partnerships import PartnershipResolver
from .settings import RuntimeSettings


def get_version() -> str:
    try:
        return version("as2-gateway")
    except Exception:
        return "0.0.0"


__all__ = [
    "As2Error",
    "ConcurrentTransitionError",
    "ConfigurationError",
    "Correlation",
    "CorrelationResult",
    "Direction",
    "DirectoryError",
    "DirectoryStore",
    "DispositionMode",
    "EngineFactory",
    "HttpOutcome",
    "IllegalTransitionError",
    "LifecycleStateMachine",
    "Message",
    "MoveError",
    "Outcome",
    "PartnershipConfig",
    "PartnershipResolver",
    "ProtocolEngine",
    "ProtocolError",
    "Receipt",
    "ReceiptCorrelator",
    "Role",
    "RuntimeSettings",
    "SendResult",
    "Stage",
    "StateCorruptionError",
    "TransferContext",
    "TransportFailure",
    "ValidationError",
    "create_app",
    "create_directories",
    "get_version",
    "load_engine_factory",
    "sanitize_message_id",
    "validate_partnership_name",
]
