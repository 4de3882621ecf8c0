"""
Dependency Injection Container: Centralized Object Lifecycle Management

Wires the advisory core's object graph with dependency-injector:
infrastructure singletons (database, Redis, metrics, document store,
vendor clients), the request-pipeline gates, the knowledge components and
the batch maintenance pipeline.

Dependency Graph (DAG):
Settings -> Infrastructure -> Knowledge -> Optimization -> Orchestration -> Services
"""

from typing import Optional

from dependency_injector import containers, providers
from loguru import logger

from config.settings import Settings, get_settings
from infrastructure.database import DatabaseManager
from infrastructure.document_store import DocumentStore, SqlDocumentStore
from infrastructure.embeddings import SentenceTransformerEmbeddingProvider
from infrastructure.llm_client import get_llm_client
from infrastructure.monitoring import MetricsCollector
from infrastructure.redis_client import RedisClient
from knowledge.archive import ArchiveService
from knowledge.deduplication import DeduplicationEngine
from knowledge.knowledge_repository import KnowledgeRepository, PatternRepository
from knowledge.pattern_extractor import PatternExtractor
from optimization.cache_warmer import CacheWarmer, make_vendor_ping
from optimization.cost_accountant import CostAccountant, PriceTable
from optimization.prompt_cache import PromptCacheBuilder
from optimization.rate_limiter import AdmissionController
from orchestration.batch_jobs import BatchJobRepository
from orchestration.batch_pipeline import MaintenancePipeline
from orchestration.events import EventBus, register_knowledge_handlers
from security import SecurityGate
from services.chat_service import ChatService


def build_event_bus(
    store: DocumentStore,
    engine: DeduplicationEngine,
    extractor: PatternExtractor,
    patterns: PatternRepository,
) -> EventBus:
    bus = EventBus(store)
    register_knowledge_handlers(bus, engine, extractor, patterns)
    return bus


class Container(containers.DeclarativeContainer):
    """
    Central dependency injection container.

    - Singleton providers for infrastructure and stateful components
      (the cache warmer registry, the admission front cache)
    - Factory providers for stateless business components
    """

    config: providers.Singleton[Settings] = providers.Singleton(get_settings)

    # Infrastructure layer providers (singletons)
    database: providers.Singleton[DatabaseManager] = providers.Singleton(
        DatabaseManager, database_settings=config.provided.database
    )
    redis: providers.Singleton[RedisClient] = providers.Singleton(
        RedisClient, redis_settings=config.provided.redis
    )
    metrics: providers.Singleton[MetricsCollector] = providers.Singleton(MetricsCollector)
    document_store: providers.Singleton[DocumentStore] = providers.Singleton(
        SqlDocumentStore, db_manager=database
    )
    embedder = providers.Singleton(
        SentenceTransformerEmbeddingProvider,
        redis_client=redis,
        embedding_settings=config.provided.embedding,
    )
    llm = providers.Singleton(get_llm_client, settings=config, metrics_collector=metrics)

    # Knowledge layer providers (factories)
    knowledge_repository = providers.Factory(KnowledgeRepository, store=document_store)
    pattern_repository = providers.Factory(PatternRepository, store=document_store)
    pattern_extractor = providers.Factory(PatternExtractor)
    edit_pattern_extractor = providers.Factory(PatternExtractor, min_pairs=1)
    deduplication_engine = providers.Factory(
        DeduplicationEngine, repository=knowledge_repository, embedder=embedder
    )
    archive_service = providers.Factory(
        ArchiveService,
        store=document_store,
        archive_after_days=config.provided.batch.archive_after_days,
    )

    # Optimization layer providers
    security_gate = providers.Factory(SecurityGate, store=document_store, metrics_collector=metrics)
    admission_controller = providers.Singleton(
        AdmissionController.from_settings,
        store=document_store,
        rate_limit_settings=config.provided.rate_limit,
        metrics_collector=metrics,
    )
    prompt_cache_builder = providers.Factory(
        PromptCacheBuilder,
        store=document_store,
        embedder=embedder,
        knowledge=knowledge_repository,
        patterns=pattern_repository,
    )
    cost_accountant = providers.Factory(
        CostAccountant,
        store=document_store,
        prices=providers.Factory(PriceTable.from_settings, llm=config.provided.llm),
        metrics_collector=metrics,
    )
    cache_warmer = providers.Singleton(
        CacheWarmer.from_settings,
        ping=providers.Factory(make_vendor_ping, builder=prompt_cache_builder, llm_client=llm),
        warmer_settings=config.provided.cache_warmer,
        metrics_collector=metrics,
    )

    # Orchestration layer providers
    batch_job_repository = providers.Factory(BatchJobRepository, store=document_store)
    maintenance_pipeline = providers.Factory(
        MaintenancePipeline,
        store=document_store,
        jobs=batch_job_repository,
        extractor=pattern_extractor,
        patterns=pattern_repository,
        dedup=deduplication_engine,
        archive=archive_service,
        chunk_size=config.provided.batch.chunk_size,
        time_budget_seconds=config.provided.batch.time_budget_seconds,
        metrics_collector=metrics,
    )
    event_bus = providers.Singleton(
        build_event_bus,
        store=document_store,
        engine=deduplication_engine,
        extractor=edit_pattern_extractor,
        patterns=pattern_repository,
    )

    # Service layer providers
    chat_service = providers.Factory(
        ChatService,
        store=document_store,
        admission=admission_controller,
        gate=security_gate,
        builder=prompt_cache_builder,
        llm_client=llm,
        accountant=cost_accountant,
        warmer=cache_warmer,
        event_bus=event_bus,
    )


# Global container instance
container = Container()


class ContainerManager:
    """
    Container lifecycle manager.

    Handles initialization and cleanup of the async infrastructure behind
    the container.
    """

    def __init__(self) -> None:
        self._initialized: bool = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Initialize database and Redis.

        The database is critical; Redis only backs the embedding cache and
        the schedule lock, so its failure is logged and tolerated.

        Raises:
            RuntimeError: If the database fails to initialize
        """
        if self._initialized:
            logger.warning("Container already initialized - skipping re-initialization")
            return

        logger.info("Initializing dependency injection container")

        try:
            await container.database().initialize()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Container initialization failed critically: {e}")
            raise RuntimeError(f"Failed to initialize dependency injection container: {e}") from e

        try:
            await container.redis().initialize()
            logger.info("Redis initialized successfully")
        except Exception as e:
            logger.warning(f"Redis initialization failed, continuing without cache: {e}")

        self._initialized = True

    async def cleanup(self) -> None:
        """Close warmer tasks, vendor client and connections; idempotent."""
        if not self._initialized:
            logger.debug("Container not initialized - skipping cleanup")
            return

        logger.info("Cleaning up dependency injection container")
        for name, close in (
            ("cache_warmer", lambda: container.cache_warmer().stop_all()),
            ("llm", lambda: container.llm().close()),
            ("redis", lambda: container.redis().close()),
            ("database", lambda: container.database().close()),
        ):
            try:
                await close()
            except Exception as e:
                logger.error(f"{name} cleanup failed: {e}")

        self._initialized = False
        logger.info("Container cleanup completed")

    def get_container(self) -> Container:
        if not self._initialized:
            raise RuntimeError("Container not initialized. Call initialize() first.")
        return container


# Global container manager instance
container_manager = ContainerManager()


def override_store(store: Optional[DocumentStore]) -> None:
    """Swap the document store provider, e.g. for an in-memory store in tests."""
    if store is None:
        container.document_store.reset_override()
    else:
        container.document_store.override(providers.Object(store))


__all__ = [
    "Container",
    "ContainerManager",
    "container",
    "container_manager",
    "override_store",
]
