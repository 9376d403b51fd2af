"""Service facade: authenticate, then delegate to the core managers."""

from __future__ import annotations

import logging
import threading
from typing import List

from .conversation import ConversationManager
from .dynamodb import DynamoDBArtifactStore
from .generation import (
    ConversationTurn,
    GameGenerator,
    GenerationEngine,
    GenerationRequest,
    ResilientGenerator,
)
from .identity import IdentityProvider
from .llm import FixedIntervalRateLimiter, LLMClient, LLMRetryPolicy
from .llm_provider_registry import LLMProviderRegistry, default_registry
from .locks import KeyedLocks
from .publication import PublicationManager
from .schemas import (
    CreateProjectRequest,
    GenerateRequest,
    GenerateResponse,
    MessageResource,
    ProjectResource,
    PublishRequest,
    ShareRequest,
    ShareResponse,
    SharedGameResource,
    SharedGameView,
    TurnRequest,
    TurnResponse,
    UpdateProjectRequest,
)
from .settings import GamaniSettings
from .store import ArtifactStore, FileArtifactStore, InMemoryArtifactStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | int = logging.INFO) -> None:
    """Install a stream handler on the root logger."""

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[logging.StreamHandler()])


class GamaniService:
    """Entry point used by transport layers (HTTP handlers, CLIs, tests)."""

    def __init__(
        self,
        *,
        identity: IdentityProvider,
        conversations: ConversationManager,
        publications: PublicationManager,
        generator: ResilientGenerator,
    ) -> None:
        self._identity = identity
        self.conversations = conversations
        self.publications = publications
        self._generator = generator

    def create_project(
        self, credential: str, request: CreateProjectRequest
    ) -> ProjectResource:
        user_id = self._identity.authenticate(credential)
        project = self.conversations.create_project(
            user_id, request.name, request.description
        )
        return ProjectResource.from_project(project)

    def list_projects(self, credential: str) -> List[ProjectResource]:
        user_id = self._identity.authenticate(credential)
        return [
            ProjectResource.from_project(project)
            for project in self.conversations.list_projects(user_id)
        ]

    def update_project(
        self, credential: str, project_id: str, request: UpdateProjectRequest
    ) -> ProjectResource:
        user_id = self._identity.authenticate(credential)
        project = self.conversations.update_project(
            user_id, project_id, name=request.name, description=request.description
        )
        return ProjectResource.from_project(project)

    def delete_project(self, credential: str, project_id: str) -> None:
        user_id = self._identity.authenticate(credential)
        self.conversations.delete_project(user_id, project_id)

    def list_messages(self, credential: str, project_id: str) -> List[MessageResource]:
        user_id = self._identity.authenticate(credential)
        return [
            MessageResource.from_message(message)
            for message in self.conversations.list_messages(user_id, project_id)
        ]

    def clear_messages(self, credential: str, project_id: str) -> int:
        user_id = self._identity.authenticate(credential)
        return self.conversations.clear_messages(user_id, project_id)

    def current_code(self, credential: str, project_id: str) -> str | None:
        user_id = self._identity.authenticate(credential)
        return self.conversations.get_current_code(user_id, project_id)

    def send_prompt(
        self,
        credential: str,
        project_id: str,
        request: TurnRequest,
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TurnResponse:
        user_id = self._identity.authenticate(credential)
        outcome = self.conversations.run_turn(
            user_id,
            project_id,
            request.prompt,
            timeout=timeout,
            cancel_event=cancel_event,
        )
        return TurnResponse(
            user_message=MessageResource.from_message(outcome.user_message),
            assistant_message=MessageResource.from_message(outcome.assistant_message),
            game_code=outcome.game_code,
        )

    def resume_pending_turn(
        self,
        credential: str,
        project_id: str,
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TurnResponse:
        user_id = self._identity.authenticate(credential)
        outcome = self.conversations.resume_pending_turn(
            user_id, project_id, timeout=timeout, cancel_event=cancel_event
        )
        return TurnResponse(
            user_message=MessageResource.from_message(outcome.user_message),
            assistant_message=MessageResource.from_message(outcome.assistant_message),
            game_code=outcome.game_code,
        )

    def discard_pending_turn(self, credential: str, project_id: str) -> MessageResource:
        user_id = self._identity.authenticate(credential)
        return MessageResource.from_message(
            self.conversations.discard_pending_turn(user_id, project_id)
        )

    def generate(
        self, credential: str, request: GenerateRequest, *, timeout: float | None = None
    ) -> GenerateResponse:
        """Stateless generation: nothing is stored."""

        self._identity.authenticate(credential)
        result = self._generator.generate(
            GenerationRequest(
                prompt=request.prompt,
                conversation=[
                    ConversationTurn(role=entry.role, content=entry.content)
                    for entry in request.conversation or ()
                ],
                current_game=request.current_game,
            ),
            timeout=timeout,
        )
        return GenerateResponse(content=result.content or None, game_code=result.game_code)

    def publish(
        self, credential: str, project_id: str, request: PublishRequest
    ) -> ShareResponse:
        user_id = self._identity.authenticate(credential)
        shared = self.publications.publish(
            user_id, project_id, title=request.title, description=request.description
        )
        return ShareResponse(
            shared_game=SharedGameResource.from_shared_game(shared),
            share_url=self.publications.share_url(shared.share_id),
        )

    def share(self, credential: str, request: ShareRequest) -> ShareResponse:
        user_id = self._identity.authenticate(credential)
        shared = self.publications.share(
            user_id,
            title=request.title,
            content=request.content,
            description=request.description,
        )
        return ShareResponse(
            shared_game=SharedGameResource.from_shared_game(shared),
            share_url=self.publications.share_url(shared.share_id),
        )

    def open_shared_game(self, share_id: str) -> SharedGameView:
        """Public read of a shared game; counts one access."""

        record = self.publications.record_access(share_id)
        return SharedGameView(
            share_id=record.share_id,
            title=record.title,
            description=record.description,
            content=record.content,
            access_count=record.access_count,
        )

    def list_shared_games(self, credential: str) -> List[SharedGameResource]:
        user_id = self._identity.authenticate(credential)
        return [
            SharedGameResource.from_shared_game(shared)
            for shared in self.publications.list_shared_games(user_id)
        ]

    def delete_shared_game(self, credential: str, share_id: str) -> None:
        user_id = self._identity.authenticate(credential)
        self.publications.delete_shared_game(user_id, share_id)

    def close(self) -> None:
        self._generator.close()


def build_store(settings: GamaniSettings) -> ArtifactStore:
    """Create the artifact store selected by ``settings.store``."""

    if settings.store == "file":
        if settings.store_path is None:
            raise ValueError("GAMANI_STORE_PATH is required when GAMANI_STORE=file.")
        return FileArtifactStore(settings.store_path)
    if settings.store == "dynamodb":
        return DynamoDBArtifactStore(
            projects_table_name=settings.projects_table,
            messages_table_name=settings.messages_table,
            shared_games_table_name=settings.shared_games_table,
            region_name=settings.aws_region,
            endpoint_url=settings.dynamodb_endpoint,
        )
    return InMemoryArtifactStore()


def build_service(
    settings: GamaniSettings,
    *,
    identity: IdentityProvider,
    store: ArtifactStore | None = None,
    llm_client: LLMClient | None = None,
    engine: GenerationEngine | None = None,
    registry: LLMProviderRegistry | None = None,
) -> GamaniService:
    """Wire store, generation engine, and managers from ``settings``.

    ``engine`` takes precedence over ``llm_client``, which takes precedence
    over the provider configured in ``settings``.
    """

    if store is None:
        store = build_store(settings)
    if engine is None:
        if llm_client is None:
            llm_client = (registry or default_registry()).create_from_config(
                settings.llm_config()
            )
        engine = GameGenerator(llm_client, history_limit=settings.history_limit)

    generator = ResilientGenerator(
        engine,
        timeout=settings.generation_timeout,
        retry_policy=LLMRetryPolicy(
            max_attempts=settings.generation_max_attempts,
            initial_backoff=settings.generation_initial_backoff,
            jitter=0.1,
        ),
        rate_limiter=(
            FixedIntervalRateLimiter(min_interval=settings.generation_min_interval)
            if settings.generation_min_interval > 0
            else None
        ),
    )
    conversations = ConversationManager(
        store,
        generator,
        locks=KeyedLocks(timeout=settings.lock_timeout),
        pending_policy=settings.pending_turn_policy,
    )
    publications = PublicationManager(
        store, conversations, base_url=settings.share_base_url
    )
    logger.info(
        "Gamani service ready (store=%s, provider=%s)",
        settings.store,
        settings.llm_provider if llm_client is not None else type(engine).__name__,
    )
    return GamaniService(
        identity=identity,
        conversations=conversations,
        publications=publications,
        generator=generator,
    )


__all__ = [
    "GamaniService",
    "build_service",
    "build_store",
    "configure_logging",
]
