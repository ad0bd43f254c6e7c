"""Backend selection."""

import structlog

from ..config import Settings
from ..stores.local import LocalStorage
from ..stores.memory import InMemoryDocumentStore
from .base import ConversationRepository
from .local import LocalRepository
from .remote import RemoteRepository

logger = structlog.get_logger()


def create_repository(settings: Settings) -> ConversationRepository:
    """Build the configured repository once, at startup."""
    if settings.chat_backend == "local":
        repository: ConversationRepository = LocalRepository(LocalStorage(settings.local_storage_path))
    else:
        repository = RemoteRepository(InMemoryDocumentStore(latency=settings.store_latency_seconds))
    logger.info("chat_backend_selected", backend=settings.chat_backend)
    return repository
