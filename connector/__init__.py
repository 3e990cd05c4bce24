"""
Bitrix24 Open Lines <-> Evolution WhatsApp connection lifecycle.

Contains the resilient transport, the gateway and CRM facades, the credential
freshness scheduler, the pairing-code poll loop and the binding coordinator.
"""

from .bindings import Binding, BindingCoordinator, BindingStatus, BindingStore, describe, map_remote_state
from .bitrix import BitrixClient, BitrixLine, TokenGrant
from .config import (
    AppConfig,
    PollConfig,
    RefreshConfig,
    TransportConfig,
    derive_functions_base_url,
    load_config,
)
from .credentials import Credential, CredentialScheduler, CredentialStore
from .errors import (
    Cancelled,
    ConnectorError,
    ErrorKind,
    MissingRefreshToken,
    NoCredential,
    NotFound,
    PersistenceFailure,
    RemoteRejected,
    TimedOut,
    TransportFailure,
)
from .events import BindingEvent, BindingEvents
from .gateway import GatewayClient, GatewayInstance
from .mock import MockTransport, default_routes
from .pairing import PairingPoller, PollResult, PollState
from .result import Err, Ok, Result
from .transport import RequestSpec, Requester, Transport

__all__ = [
    "AppConfig",
    "Binding",
    "BindingCoordinator",
    "BindingEvent",
    "BindingEvents",
    "BindingStatus",
    "BindingStore",
    "BitrixClient",
    "BitrixLine",
    "Cancelled",
    "ConnectorError",
    "Credential",
    "CredentialScheduler",
    "CredentialStore",
    "Err",
    "ErrorKind",
    "GatewayClient",
    "GatewayInstance",
    "MissingRefreshToken",
    "MockTransport",
    "NoCredential",
    "NotFound",
    "Ok",
    "PairingPoller",
    "PersistenceFailure",
    "PollConfig",
    "PollResult",
    "PollState",
    "RefreshConfig",
    "RemoteRejected",
    "RequestSpec",
    "Requester",
    "Result",
    "TimedOut",
    "TokenGrant",
    "Transport",
    "TransportConfig",
    "TransportFailure",
    "default_routes",
    "derive_functions_base_url",
    "describe",
    "load_config",
    "map_remote_state",
]
