"""talkgate daemon: wires the pipeline, IPC broker and bus collaborators together."""

import asyncio
import signal
import sys
from typing import Optional

import structlog

from .audit import AuditLogger
from .collaborators import (
    BusActionHandler,
    BusEventPublisher,
    BusSpeechOutput,
    BusTranscriptSource,
    LoggingSpeechOutput,
    SpeechOutput,
)
from .config import TalkgateConfig
from .confirmation import ConfirmationCoordinator
from .dispatcher import CommandDispatcher, SubprocessActionHandler
from .embeddings import BusEmbedder, SentenceTransformerEmbedder
from .errors import IPCPermissionError
from .intent import IntentResolver
from .ipc.server import IPCBroker
from .logger import setup_logging
from .messaging import MessageBusClient
from .pipeline import CommandPipeline
from .validation import EntityCatalog, EntityValidator, InMemoryCatalog

logger = structlog.get_logger(__name__)


class TalkgateService:
    """Owns every piece of process-wide state from ``start`` to ``stop``."""

    def __init__(
        self,
        config: Optional[TalkgateConfig] = None,
        catalog: Optional[EntityCatalog] = None,
        speech: Optional[SpeechOutput] = None,
    ):
        self.config = config or TalkgateConfig()
        self.catalog = catalog
        self.speech = speech
        self.message_bus: Optional[MessageBusClient] = None
        self.audit: Optional[AuditLogger] = None
        self.pipeline: Optional[CommandPipeline] = None
        self.broker: Optional[IPCBroker] = None
        self.is_running = False
        self._pipeline_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        logger.info("Starting talkgate", socket=str(self.config.ipc_socket_path))
        config = self.config
        self.audit = AuditLogger(config.audit_path)

        if config.bus_enabled:
            self.message_bus = MessageBusClient(config)
            try:
                await self.message_bus.connect()
            except Exception as e:
                logger.warning("Message bus unavailable, running without it", error=str(e))
                self.message_bus = None

        bus = self.message_bus
        local_embedder = SentenceTransformerEmbedder(config.embedding_model)
        embedder = BusEmbedder(bus, fallback=local_embedder) if bus else local_embedder
        resolver = IntentResolver.from_config(config, embedder=embedder)
        if self.catalog is None:
            self.catalog = await self._load_catalog()
        coordinator = ConfirmationCoordinator.from_config(config)
        dispatcher = CommandDispatcher(
            audit=self.audit,
            action_timeout=config.action_timeout_s,
            fallback=BusActionHandler(bus) if bus else None,
        )
        for name, command in config.action_commands.items():
            dispatcher.register(name, SubprocessActionHandler(command))

        self.pipeline = CommandPipeline(
            config,
            resolver=resolver,
            validator=EntityValidator(self.catalog, resolver),
            coordinator=coordinator,
            dispatcher=dispatcher,
            audit=self.audit,
            speech=self.speech or (BusSpeechOutput(bus) if bus else LoggingSpeechOutput()),
            events=BusEventPublisher(bus) if bus else None,
        )
        self.broker = IPCBroker(config, self.pipeline, coordinator, self.audit, on_reload=self.reload_config)

        try:
            await self.broker.start()
        except IPCPermissionError:
            await self.audit.close()
            if bus:
                await bus.disconnect()
            raise

        self._pipeline_task = asyncio.create_task(self.pipeline.run(), name="pipeline")
        if bus:
            await BusTranscriptSource(bus, self.pipeline.submit).start()

        self.is_running = True
        logger.info("talkgate started", bus=bus is not None, audit=str(config.audit_path))

    async def _load_catalog(self) -> InMemoryCatalog:
        path = self.config.catalog_path
        if not path.exists():
            logger.warning("No entity catalog found; entity commands will not validate", path=str(path))
            return InMemoryCatalog(cutoff=self.config.fuzzy_entity_cutoff)
        return await asyncio.to_thread(InMemoryCatalog.from_file, path, self.config.fuzzy_entity_cutoff)

    async def reload_config(self) -> TalkgateConfig:
        """Re-read configuration and apply it to the live components."""
        config = await asyncio.to_thread(TalkgateConfig)
        self.config = config
        if self.pipeline is not None:
            self.pipeline.apply_config(config)
        logger.info("Configuration reloaded")
        return config

    async def stop(self) -> None:
        """Stop IPC, settle the pipeline, then flush the audit log."""
        if not self.is_running:
            return
        logger.info("Stopping talkgate")
        self.is_running = False

        await self.broker.stop()
        await self.pipeline.shutdown()
        if self._pipeline_task is not None:
            await self._pipeline_task
        await self.audit.close()
        if self.message_bus is not None:
            await self.message_bus.disconnect()

        self._stopped.set()
        logger.info("talkgate stopped")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()


async def main() -> int:
    config = TalkgateConfig()
    setup_logging("talkgate", config.log_level)
    service = TalkgateService(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(service.stop()))

    try:
        await service.start()
    except IPCPermissionError as e:
        logger.critical("Cannot secure IPC socket", error=str(e))
        return 1

    await service.wait_stopped()
    return 0


def run() -> None:
    """Console entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
