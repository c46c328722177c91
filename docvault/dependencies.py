"""Service wiring.

Builds one instance of every service from settings and passes them to each
other explicitly; nothing is held in module globals.
"""

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docvault.core.config import Settings, settings as default_settings
from docvault.core.database import (
    DatabaseClient,
    close_database,
    create_engine_from_settings,
    create_session_maker,
    init_database,
)
from docvault.core.exceptions import ConfigurationError
from docvault.services.events.event_bus import EventBus
from docvault.services.events.transport import WebSocketTransport
from docvault.services.persistence.snapshot_service import StateSnapshotService
from docvault.services.storage.base_adapter import BackendAdapter
from docvault.services.storage.local_adapter import LocalFilesystemAdapter
from docvault.services.storage.metadata_adapter import MetadataStoreAdapter
from docvault.services.storage.payload_spool import PayloadSpool
from docvault.services.storage.supabase_adapter import SupabaseStorageAdapter
from docvault.services.storage.sync_engine import StorageSyncEngine
from docvault.services.storage.sync_queue import SyncQueue
from docvault.services.vault.retention_resolver import RetentionPolicyResolver
from docvault.services.vault.state_store import VaultStateStore
from docvault.services.vault.vault_engine import VaultEngine
from docvault.services.vault.verification import HttpVerificationProvider
from docvault.utils.clock import Clock, SystemClock
from docvault.utils.logging import get_logger

LOGGER = get_logger(__name__)


def build_adapters(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
) -> List[BackendAdapter]:
    """Create the enabled backend adapters in configured order.

    Raises:
        ConfigurationError: If a backend is unknown or missing its settings
    """
    adapters: List[BackendAdapter] = []
    for name in settings.storage.backend_names:
        if name == "primary":
            if not settings.supabase.url or not settings.supabase.service_role_key:
                raise ConfigurationError(
                    "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for the primary backend"
                )
            adapters.append(
                SupabaseStorageAdapter(
                    url=settings.supabase.url,
                    service_role_key=settings.supabase.service_role_key,
                    bucket=settings.supabase.bucket,
                    timeout=settings.storage.backend_write_timeout,
                )
            )
        elif name == "secondary":
            adapters.append(MetadataStoreAdapter(session_maker))
        elif name == "local":
            adapters.append(LocalFilesystemAdapter(settings.storage.local_storage_dir))
        else:
            raise ConfigurationError(f"Unknown storage backend: {name}")

    if not adapters:
        raise ConfigurationError("ENABLED_BACKENDS must name at least one backend")
    return adapters


def build_event_bus(settings: Settings, clock: Clock) -> EventBus:
    transport = None
    if settings.events.url:
        transport = WebSocketTransport(settings.events.url, settings.events.channel_list)
    return EventBus(
        transport=transport,
        clock=clock,
        cache_ttl_seconds=settings.events.cache_ttl_seconds,
        cache_max_entries=settings.events.cache_max_entries,
        queue_size=settings.events.subscriber_queue_size,
        handler_timeout=settings.events.subscriber_timeout_seconds,
        reconnect_delay=settings.events.reconnect_delay,
    )


@dataclass
class DocVaultServices:
    """Every service of a running DocVault process."""

    db_client: DatabaseClient
    session_maker: async_sessionmaker[AsyncSession]
    event_bus: EventBus
    sync_queue: SyncQueue
    sync_engine: StorageSyncEngine
    vault_store: VaultStateStore
    vault_engine: VaultEngine
    snapshots: StateSnapshotService

    async def start(self, auto_migrate: bool = True) -> None:
        """Connect the database, restore state and start background loops."""
        await init_database(self.db_client, auto_migrate=auto_migrate)
        await self.snapshots.restore()
        await self.event_bus.start()
        self.sync_engine.start()
        self.snapshots.start()
        LOGGER.info("DocVault services started")

    async def shutdown(self) -> None:
        """Finish the current drain tick, persist state and close connections."""
        await self.sync_engine.stop()
        await self.snapshots.stop()
        await self.event_bus.stop()
        await close_database(self.db_client)
        LOGGER.info("DocVault services stopped")


def build_services(
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> DocVaultServices:
    """Wire all services from settings.

    Args:
        settings: Application settings, defaults to the environment
        clock: Time source shared by every service

    Returns:
        DocVaultServices: Not yet started
    """
    settings = settings or default_settings
    clock = clock or SystemClock()

    engine = create_engine_from_settings(settings.db)
    session_maker = create_session_maker(engine)
    event_bus = build_event_bus(settings, clock)

    sync_queue = SyncQueue(
        clock=clock,
        max_retries=settings.sync.max_retries,
        base_delay_seconds=settings.sync.base_delay_seconds,
    )
    sync_engine = StorageSyncEngine(
        adapters=build_adapters(settings, session_maker),
        queue=sync_queue,
        spool=PayloadSpool(settings.storage.spool_dir),
        event_bus=event_bus,
        clock=clock,
        write_timeout=settings.storage.backend_write_timeout,
        max_concurrency=settings.sync.max_concurrency,
        batch_max_concurrency=settings.sync.batch_max_concurrency,
        poll_interval=settings.sync.poll_interval_seconds,
    )

    verification_provider = None
    if settings.vault.verification_url:
        verification_provider = HttpVerificationProvider(
            settings.vault.verification_url,
            settings.vault.verification_api_key,
            timeout=settings.http_timeout,
        )

    vault_store = VaultStateStore()
    vault_engine = VaultEngine(
        catalog=sync_engine,
        store=vault_store,
        event_bus=event_bus,
        verification_provider=verification_provider,
        resolver=RetentionPolicyResolver.from_file(settings.vault.retention_policy_file),
        clock=clock,
        verification_max_attempts=settings.vault.verification_max_attempts,
    )

    return DocVaultServices(
        db_client=DatabaseClient(engine),
        session_maker=session_maker,
        event_bus=event_bus,
        sync_queue=sync_queue,
        sync_engine=sync_engine,
        vault_store=vault_store,
        vault_engine=vault_engine,
        snapshots=StateSnapshotService(
            session_maker,
            sync_queue,
            vault_store,
            registry=sync_engine.registry,
            clock=clock,
            interval_seconds=settings.vault.snapshot_interval_seconds,
        ),
    )
