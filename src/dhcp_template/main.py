"""Process entry points for the agent and the operator.

Three processes can be started:
- agent: pushes this node's interfaces to the operator
- agent service: serves this node's interfaces on demand
- operator: accepts pushes and reconciles DHCPTemplates

Each loads its configuration from the environment, logs JSON to stdout and
stops gracefully on SIGTERM or SIGINT.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Any

import uvicorn

from .agent import Agent
from .config import AgentConfig, ConfigurationError, OperatorConfig, parse_addr
from .controller import Controller
from .kube import KubernetesCluster
from .providers import ProviderError, create_provider, create_source
from .registry import NodeRegistry
from .service import PushHandler, create_agent_app, create_app

logger = logging.getLogger(__name__)

# LogRecord attributes that are not structured context
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

NOISY_LOGGERS = ("kubernetes", "urllib3", "httpx", "httpcore", "uvicorn.access")


class JsonFormatter(logging.Formatter):
    """Format logs as JSON, including fields passed through ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class _Server(uvicorn.Server):
    # Signals are handled by the process, which also stops the other tasks.
    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def _create_server(app: Any, addr: str) -> _Server:
    host, port = parse_addr(addr)
    return _Server(uvicorn.Config(app, host=host, port=port, log_config=None, lifespan="off"))


def _install_signal_handlers(on_signal: Callable[[], None]) -> None:
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        on_signal()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))


async def run_agent() -> int:
    """Run the push agent until its provider fails or a signal arrives.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = AgentConfig.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting agent",
        extra={
            "node": config.node_name,
            "endpoint": config.endpoint,
            "provider": config.provider.value,
        },
    )

    agent = Agent.from_config(config)
    task = asyncio.create_task(
        agent.run_forever(lambda: create_provider(config), config.restart_delay_seconds)
    )
    _install_signal_handlers(task.cancel)

    try:
        await task
    except asyncio.CancelledError:
        logger.info("Agent stopped")
        return 0
    except ProviderError as e:
        logger.error("Provider failed", extra={"error": str(e), "error_type": type(e).__name__})
        return 1
    except Exception as e:
        logger.exception("Agent failed unexpectedly", extra={"error": str(e)})
        return 1

    return 0


async def run_agent_service() -> int:
    """Serve this node's interfaces on demand."""
    try:
        config = AgentConfig.from_env()
        source = create_source(config)
    except (ConfigurationError, ProviderError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    server = _create_server(create_agent_app(config.node_name, source), config.addr)
    _install_signal_handlers(lambda: setattr(server, "should_exit", True))

    logger.info("Starting agent service", extra={"node": config.node_name, "addr": config.addr})
    await server.serve()

    logger.info("Agent service stopped")
    return 0


async def run_operator() -> int:
    """Run the push server and the controller until a signal arrives.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = OperatorConfig.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    try:
        cluster = KubernetesCluster.from_environment()
    except Exception as e:
        logger.error(
            "Failed to load Kubernetes configuration",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    registry = NodeRegistry(config.idle_seconds)
    controller = Controller(cluster, registry, config)
    server = _create_server(create_app(PushHandler(registry), registry), config.addr)

    def shutdown() -> None:
        server.should_exit = True
        controller.shutdown()

    _install_signal_handlers(shutdown)

    logger.info(
        "Starting operator",
        extra={
            "addr": config.addr,
            "idle_seconds": config.idle_seconds,
            "refresh_seconds": config.refresh_seconds,
        },
    )

    expiry = asyncio.create_task(registry.run_expiry(), name="registry-expiry")
    tasks = [
        asyncio.create_task(server.serve(), name="push-server"),
        asyncio.create_task(controller.run(), name="controller"),
    ]

    exit_code = 0
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task.exception() is not None:
                logger.error(
                    "Operator task failed",
                    extra={"task": task.get_name(), "error": str(task.exception())},
                )
                exit_code = 1
    finally:
        shutdown()
        expiry.cancel()
        await asyncio.gather(*tasks, expiry, return_exceptions=True)

    logger.info("Operator stopped")
    return exit_code
