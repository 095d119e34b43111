from vaultkeeper.cancellation import CancellationToken, OperationCancelled
from vaultkeeper.chat import AdmissionGate, ChatOrchestrator
from vaultkeeper.config import Settings, configure_logging
from vaultkeeper.conversation import Conversation, ConversationContent, Role
from vaultkeeper.dispatcher import FunctionDispatcher
from vaultkeeper.functions import (
    FUNCTION_DEFINITIONS,
    AIFunction,
    FunctionCall,
    FunctionDefinition,
    FunctionResponse,
)
from vaultkeeper.instrumentation import instrument, uninstrument
from vaultkeeper.naming import NamingError, NamingService
from vaultkeeper.provider import ProviderCodec, ProviderKind, create_codec
from vaultkeeper.store import JsonConversationStore
from vaultkeeper.streaming import NormalizedChunk
from vaultkeeper.transport import ProviderRequest, StreamingTransport, TransportError
from vaultkeeper.vault import LocalVault

__all__ = [
    "AIFunction",
    "AdmissionGate",
    "CancellationToken",
    "ChatOrchestrator",
    "Conversation",
    "ConversationContent",
    "FUNCTION_DEFINITIONS",
    "FunctionCall",
    "FunctionDefinition",
    "FunctionDispatcher",
    "FunctionResponse",
    "JsonConversationStore",
    "LocalVault",
    "NamingError",
    "NamingService",
    "NormalizedChunk",
    "OperationCancelled",
    "ProviderCodec",
    "ProviderKind",
    "ProviderRequest",
    "Role",
    "Settings",
    "StreamingTransport",
    "TransportError",
    "configure_logging",
    "create_codec",
    "instrument",
    "uninstrument",
]
