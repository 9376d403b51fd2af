"""Core package for the Gamani game generation service."""

from .conversation import ConversationManager, PendingTurnPolicy, TurnOutcome
from .errors import (
    ConcurrencyConflict,
    EmptyProjectError,
    GamaniError,
    GenerationFailed,
    NotFoundError,
    PendingTurnError,
    PersistenceError,
    Unauthenticated,
    ValidationError,
)
from .generation import (
    GameGenerator,
    GenerationEngine,
    GenerationRequest,
    GenerationResult,
    ResilientGenerator,
    split_reply,
)
from .identity import IdentityProvider, StaticTokenIdentityProvider
from .llm import LLMClient, LLMClientError, LLMMessage, LLMResponse
from .llm_provider_registry import LLMProviderRegistry, default_registry
from .models import Message, MessageRole, Project, SharedGame, current_code
from .publication import AccessRecord, PublicationManager
from .service import GamaniService, build_service, build_store, configure_logging
from .settings import GamaniSettings
from .store import ArtifactStore, FileArtifactStore, InMemoryArtifactStore

__all__ = [
    "AccessRecord",
    "ArtifactStore",
    "ConcurrencyConflict",
    "ConversationManager",
    "EmptyProjectError",
    "FileArtifactStore",
    "GamaniError",
    "GamaniService",
    "GamaniSettings",
    "GameGenerator",
    "GenerationEngine",
    "GenerationFailed",
    "GenerationRequest",
    "GenerationResult",
    "IdentityProvider",
    "InMemoryArtifactStore",
    "LLMClient",
    "LLMClientError",
    "LLMMessage",
    "LLMProviderRegistry",
    "LLMResponse",
    "Message",
    "MessageRole",
    "NotFoundError",
    "PendingTurnError",
    "PendingTurnPolicy",
    "PersistenceError",
    "Project",
    "PublicationManager",
    "ResilientGenerator",
    "SharedGame",
    "StaticTokenIdentityProvider",
    "TurnOutcome",
    "Unauthenticated",
    "ValidationError",
    "build_service",
    "build_store",
    "configure_logging",
    "current_code",
    "default_registry",
    "split_reply",
]
