"""
Service container.

Builds the per-process object graph (repository, dispatch pipeline,
collaborator clients and the two core services) and owns its lifecycle.
Routes reach it through app.dependencies.get_container; nothing here is a
module-level singleton.
"""

from dataclasses import dataclass, field

from app.config import Settings, settings
from app.db.pool import DatabasePoolManager
from app.infrastructure.observability.logging import get_logger
from app.jobs.dispatch_pipeline import DispatchPipeline, RetryPolicy
from app.models.domain.blood_domain import Urgency
from app.models.domain.job_domain import ChannelType
from app.repositories.blood_repository import BloodRepository, InMemoryBloodRepository
from app.repositories.postgres_blood_repository import PostgresBloodRepository
from app.services.dead_letter_store import DeadLetterStore
from app.services.geolocation_service import GeoCollaborator, GeolocationService
from app.services.matching_service import MatchingService
from app.services.notification_channel import NotificationChannel, build_channels
from app.services.offer_service import OfferService
from app.services.redis_client import FastRedisClient

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    repository: BloodRepository
    pipeline: DispatchPipeline
    geo: GeoCollaborator
    matching: MatchingService
    offers: OfferService
    dead_letters: DeadLetterStore
    channels: dict[ChannelType, NotificationChannel] = field(default_factory=dict)
    db_pool: DatabasePoolManager | None = None
    redis: FastRedisClient | None = None
    started: list[str] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        config: Settings = settings,
        *,
        repository: BloodRepository | None = None,
        channels: dict[ChannelType, NotificationChannel] | None = None,
        geo: GeoCollaborator | None = None,
        send_timeout: float | None = None,
    ) -> "ServiceContainer":
        """
        Wire every service from settings. Any collaborator can be injected,
        which is how tests swap in fakes.
        """
        db_pool = None
        if repository is None:
            if config.STORAGE_BACKEND == "postgres":
                db_pool = DatabasePoolManager(config.DATABASE_URL)
                repository = PostgresBloodRepository(db_pool)
            elif config.STORAGE_BACKEND == "memory":
                repository = InMemoryBloodRepository()
            else:
                raise ValueError(f"Unknown STORAGE_BACKEND '{config.STORAGE_BACKEND}'")

        channels = channels if channels is not None else build_channels()
        geo = geo or GeolocationService()

        pipeline = DispatchPipeline(
            channels,
            queues=config.queue_concurrency(),
            retry_policy=RetryPolicy(
                base_seconds=config.DISPATCH_BACKOFF_BASE_SECONDS,
                cap_seconds=config.DISPATCH_BACKOFF_CAP_SECONDS,
            ),
            send_timeout=send_timeout or config.NOTIFICATION_TIMEOUT_SECONDS,
            max_attempts={
                Urgency(name): attempts
                for name, attempts in config.max_attempts_by_urgency().items()
            },
            archive_size=config.DISPATCH_ARCHIVE_SIZE,
        )

        redis = FastRedisClient(config.REDIS_URL) if config.REDIS_URL else None
        dead_letters = DeadLetterStore(redis, key=config.DEAD_LETTER_KEY)
        pipeline.add_exhaustion_sink(dead_letters.record)

        return cls(
            repository=repository,
            pipeline=pipeline,
            geo=geo,
            matching=MatchingService(repository, pipeline, geo),
            offers=OfferService(repository, pipeline),
            dead_letters=dead_letters,
            channels=channels,
            db_pool=db_pool,
            redis=redis,
        )

    async def startup(self) -> None:
        """Open pools and start dispatch workers; undo what started on failure."""
        try:
            if self.db_pool is not None:
                await self.db_pool.initialize()
                self.started.append("database_pool")
                await self.repository.ensure_schema()

            if self.redis is not None:
                try:
                    await self.redis.initialize()
                    self.started.append("redis")
                except RuntimeError as e:
                    # dead letters stay in process until redis is back
                    logger.warning("Redis unavailable at startup", error=str(e))

            await self.pipeline.start()
            self.started.append("dispatch_pipeline")

            logger.info("All services initialized successfully", services=self.started)

        except Exception as e:
            logger.error("Failed to initialize services", error=str(e), completed=self.started)
            await self.shutdown()
            raise

    async def shutdown(self) -> None:
        """Stop in reverse order of startup; errors are logged, not raised."""
        shutdown_errors = []

        if "dispatch_pipeline" in self.started:
            try:
                await self.pipeline.stop()
            except Exception as e:
                logger.error("Error stopping dispatch pipeline", error=str(e))
                shutdown_errors.append(f"Pipeline: {e}")

        for channel_type, channel in self.channels.items():
            try:
                await channel.close()
            except Exception as e:
                logger.error("Error closing channel", channel=channel_type.value, error=str(e))
                shutdown_errors.append(f"Channel {channel_type.value}: {e}")

        try:
            await self.geo.close()
        except Exception as e:
            logger.error("Error closing geolocation client", error=str(e))
            shutdown_errors.append(f"Geolocation: {e}")

        if "redis" in self.started:
            await self.redis.close()

        if "database_pool" in self.started:
            await self.db_pool.close()

        self.started.clear()

        if shutdown_errors:
            logger.warning("Some services had shutdown errors", errors=shutdown_errors)
        else:
            logger.info("All services closed successfully")
