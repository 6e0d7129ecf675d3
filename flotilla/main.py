"""Flotilla host entry point.

Initializes all components in dependency order and runs until SIGINT/SIGTERM:
  Settings -> Docker -> Database -> Store -> Orchestrator -> IPC watcher
  -> Task scheduler -> Telegram polling

Shutdown runs in reverse: scheduler, watcher, container queue, orchestrator
(summarizes the open conversation), Telegram, embeddings, Docker, database.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from flotilla.agent_queue import ContainerQueue
from flotilla.config import Settings
from flotilla.embeddings import EmbeddingProvider
from flotilla.errors import FlotillaError
from flotilla.handlers.ipc_watcher import IpcWatcher
from flotilla.handlers.task_commands import TaskCommandProcessor
from flotilla.handlers.task_scheduler import TaskScheduler
from flotilla.orchestrator import Orchestrator
from flotilla.prompts import orchestrator_seed_prompt
from flotilla.registry import ToolServerRegistry
from flotilla.runtime import ContainerRunner, DockerEngine
from flotilla.schemas import MediaRef
from flotilla.secrets import SecretResolver
from flotilla.snapshots import SnapshotWriter
from flotilla.storage.database import Database
from flotilla.storage.store import Store
from flotilla.telegram_bot import TelegramChannel

logger = logging.getLogger(__name__)


async def create_components(settings: Settings, components: dict | None = None) -> dict:
    """Initialize all components in dependency order.

    Docker, the database and the Telegram token are required; any failure
    there propagates and aborts startup. Components are registered in
    ``components`` as they come up so a failed start can still be torn down.
    """
    if components is None:
        components = {}

    docker = DockerEngine(settings.docker_socket)
    components["docker"] = docker
    secrets = SecretResolver(settings)
    runner = ContainerRunner(settings, docker, secrets.container_secrets)
    await runner.ensure_runtime()
    await runner.cleanup_orphans()

    database = Database(settings)
    components["database"] = database
    await database.connect()
    await database.prepare_schema()

    store = Store(database, timezone=settings.timezone)
    await store.agents.ensure_orchestrator(
        settings.assistant_name,
        orchestrator_seed_prompt(settings.assistant_name),
        settings.orchestrator_model,
    )

    bot_token = await secrets.resolve(
        "TELEGRAM_BOT_TOKEN",
        settings.telegram_bot_token_ref or None,
        default=settings.telegram_bot_token or None,
    )

    embedding_provider = EmbeddingProvider.from_settings(settings)
    components["embedding_provider"] = embedding_provider

    queue = ContainerQueue(settings.max_concurrent_containers)
    components["queue"] = queue
    registry = ToolServerRegistry(store)
    snapshots = SnapshotWriter(store, settings.ipc_root)

    # The channel delivers into the orchestrator, which sends through the channel
    orchestrator: Orchestrator | None = None

    async def on_message(chat_id: str, sender_name: str, text: str, media: list[MediaRef]) -> None:
        if orchestrator is None:
            logger.warning("Message from %s before orchestrator is ready, dropped", chat_id)
            return
        await orchestrator.handle_message(chat_id, sender_name, text, media)

    telegram = TelegramChannel(
        bot_token,
        on_message,
        media_dir=settings.data_path / "media",
        allowed_chats=settings.allowed_chat_ids,
    )
    components["telegram"] = telegram

    orchestrator = Orchestrator(
        settings, store, runner, queue, registry, snapshots, telegram, embedding_provider,
    )
    await orchestrator.start()
    components["orchestrator"] = orchestrator

    watcher = IpcWatcher(settings, orchestrator, TaskCommandProcessor(store, snapshots))
    await watcher.start()
    components["ipc_watcher"] = watcher

    scheduler = TaskScheduler(settings, store, runner, queue, registry, snapshots, orchestrator)
    await scheduler.start()
    components["task_scheduler"] = scheduler

    await telegram.start()
    return components


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order; one failing step never blocks the rest."""
    logger.info("Shutting down Flotilla...")

    steps = [
        ("task_scheduler", "stop"),
        ("ipc_watcher", "stop"),
        ("queue", "shutdown"),
        ("orchestrator", "shutdown"),
        ("telegram", "stop"),
        ("telegram", "close"),
        ("embedding_provider", "close"),
        ("docker", "close"),
        ("database", "disconnect"),
    ]
    for key, method in steps:
        component = components.get(key)
        if component is None:
            continue
        try:
            await getattr(component, method)()
        except Exception:
            logger.exception("Error during shutdown of %s", key)

    logger.info("Flotilla shutdown complete.")


async def run(settings: Settings) -> int:
    components: dict = {}
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await create_components(settings, components)
    except (FlotillaError, OSError) as e:
        logger.error("Startup failed: %s", e)
        await shutdown_components(components)
        return 1
    except Exception:
        logger.exception("Startup failed")
        await shutdown_components(components)
        return 1

    logger.info("Flotilla started: %s", settings.assistant_name)
    await stop.wait()
    await shutdown_components(components)
    return 0


def main() -> None:
    """Entry point -- parse settings, configure logging, run until signalled."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    # httpx logs every Telegram long-poll request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    sys.exit(asyncio.run(run(settings)))


if __name__ == "__main__":
    main()
