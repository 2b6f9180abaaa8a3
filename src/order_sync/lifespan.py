"""Startup and shutdown of a wired order-sync runtime."""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv

from .config import Config, load_config
from .config_loader import discover_config_files, load_hierarchical_config
from .config_schema import build_config, to_fallbacks
from .core.client import RemoteReplicaClient
from .core.scheduling import AsyncioScheduler
from .orders import OrderService
from .storage.kv import JsonFileStore
from .storage.local import LocalReplicaStore
from .sync.engine import SyncEngine
from .sync.queue import PendingOperationQueue

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    print(msg, file=sys.stderr, flush=True)


@dataclass
class Runtime:
    """Every long-lived component of one session."""

    config: Config
    scheduler: AsyncioScheduler
    client: RemoteReplicaClient
    local: LocalReplicaStore
    queue: PendingOperationQueue
    engine: SyncEngine
    orders: OrderService


def build_runtime(config: Config, scheduler: AsyncioScheduler) -> Runtime:
    kv = JsonFileStore(config.data_dir)
    client = RemoteReplicaClient(config)
    local = LocalReplicaStore(kv)
    queue = PendingOperationQueue(
        kv,
        client,
        scheduler,
        max_retries=config.max_retries,
        retry_delays=config.retry_delays,
    )
    engine = SyncEngine(
        local,
        client,
        queue,
        scheduler,
        debounce_seconds=config.debounce_seconds,
    )
    return Runtime(
        config=config,
        scheduler=scheduler,
        client=client,
        local=local,
        queue=queue,
        engine=engine,
        orders=OrderService(local, engine),
    )


@asynccontextmanager
async def sync_runtime(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[Runtime]:
    """
    Load configuration and wire the sync components.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load YAML config files if present (as fallback values)
    - Merge all sources via load_config(): CLI > env vars > .env > YAML > defaults
    - Build the stores, client, queue and engine

    On shutdown:
    - Cancel pending debounce and retry timers
    - Cancel scheduled callbacks still running

    Args:
        config_overrides: Optional dict with config values from CLI
            (url, access_token, data_dir, insecure, debug).

    Yields:
        The wired ``Runtime``.

    Raises:
        RuntimeError: If configuration is invalid.
    """
    try:
        load_dotenv()

        yaml_fallbacks: dict[str, Any] | None = None
        sources = []
        config_files = discover_config_files()
        if config_files:
            unified = build_config(load_hierarchical_config())
            yaml_fallbacks = to_fallbacks(unified)
            sources.append(f"config file: {config_files[0]}")
            if not os.getenv("ORDER_SYNC_LOG_LEVEL"):
                logging.getLogger("order_sync").setLevel(
                    unified.logging.level.upper()
                )

        overrides = config_overrides or {}
        config = load_config(
            url=overrides.get("url"),
            access_token=overrides.get("access_token"),
            data_dir=overrides.get("data_dir"),
            insecure=overrides.get("insecure", False),
            debug=overrides.get("debug", False),
            yaml_fallbacks=yaml_fallbacks,
        )

        if overrides:
            sources.append("CLI arguments")
        sources.append("environment variables")
        logger.info("Configuration loaded from: %s", ", ".join(sources))
        logger.info("API URL: %s", config.api_base_url)
        logger.info("Data directory: %s", config.data_dir)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        _stderr_print("  Ensure ORDER_SYNC_API_URL is set.")
        raise RuntimeError(
            f"Configuration error: {e}. Ensure ORDER_SYNC_API_URL is set."
        ) from e

    scheduler = AsyncioScheduler()
    runtime = build_runtime(config, scheduler)
    try:
        yield runtime
    finally:
        runtime.engine.close()
        await scheduler.aclose()
        logger.debug("Runtime shut down")
