"""Configuration management with validation.

Both processes are configured from environment variables only. All values
are validated at load time so a misconfigured process fails at startup
rather than in the middle of a sync or reconcile loop.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from urllib.parse import urlparse

ENV_PREFIX = "DHCP_TEMPLATE__"


class ProviderKind(str, Enum):
    """Supported node-local state providers."""

    FILE = "file"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_ENDPOINT = "http://[::1]:50051"
DEFAULT_OPERATOR_ADDR = "[::1]:50051"
DEFAULT_AGENT_ADDR = "[::1]:50052"
DEFAULT_INTERFACES_PATH = "/etc/dhcp-template/interfaces.yaml"

DEFAULT_IDLE_SECONDS = 60
MIN_IDLE_SECONDS = 6  # refresh must stay strictly below the idle timeout
MIN_REFRESH_SECONDS = 5

DEFAULT_DEBOUNCE_SECONDS = 10
DEFAULT_POLL_SECONDS = 5
DEFAULT_RESTART_DELAY_SECONDS = 5

DEFAULT_READY_REQUEUE_SECONDS = 6 * 60 * 60
DEFAULT_ERROR_REQUEUE_SECONDS = 60

MAX_NODE_NAME_LENGTH = 253
MAX_INTERFACES_FILE_SIZE_BYTES = 1024 * 1024

# Field manager and managed-by label value used on every object we touch
CONTROLLER_NAME = "dhcp-template-operator"


def random_node_name() -> str:
    """Generate a node name for agents that were not given one."""
    return f"node-{secrets.randbits(64):016x}"


def parse_addr(value: str) -> tuple[str, int]:
    """Split ``host:port`` (IPv6 hosts in brackets) into its parts.

    Raises:
        ConfigurationError: If the address is malformed.
    """
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise ConfigurationError(f"Address must be host:port: {value}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port_number = int(port)
    except ValueError as e:
        raise ConfigurationError(f"Address port must be an integer: {value}") from e
    if not (0 < port_number < 65536):
        raise ConfigurationError(f"Address port out of range: {value}")
    return host, port_number


def _get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer: {value}") from e


def _get_provider(value: str | None) -> ProviderKind:
    if not value:
        return ProviderKind.FILE
    try:
        return ProviderKind(value.lower())
    except ValueError as e:
        valid = [p.value for p in ProviderKind]
        raise ConfigurationError(f"{ENV_PREFIX}PROVIDER must be one of {valid}: {value}") from e


@dataclass(frozen=True)
class AgentConfig:
    """Agent configuration loaded from environment variables."""

    node_name: str = field(default_factory=random_node_name)
    endpoint: str = DEFAULT_ENDPOINT

    provider: ProviderKind = ProviderKind.FILE
    interfaces_path: Path = field(default_factory=lambda: Path(DEFAULT_INTERFACES_PATH))
    poll_seconds: float = DEFAULT_POLL_SECONDS
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS

    restart_delay_seconds: float = DEFAULT_RESTART_DELAY_SECONDS

    # Listen address of the on-demand node service
    addr: str = DEFAULT_AGENT_ADDR

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.node_name:
            errors.append(f"{ENV_PREFIX}NODE_NAME must not be empty")
        elif len(self.node_name) > MAX_NODE_NAME_LENGTH:
            errors.append(
                f"{ENV_PREFIX}NODE_NAME exceeds maximum length of {MAX_NODE_NAME_LENGTH}"
            )

        parsed = urlparse(self.endpoint)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append(f"{ENV_PREFIX}ENDPOINT must be an http(s) URL: {self.endpoint}")

        if self.poll_seconds <= 0:
            errors.append(f"{ENV_PREFIX}POLL_SECONDS must be positive")
        if self.debounce_seconds < 0:
            errors.append(f"{ENV_PREFIX}DEBOUNCE_SECONDS must not be negative")
        if self.restart_delay_seconds < 0:
            errors.append(f"{ENV_PREFIX}RESTART_DELAY_SECONDS must not be negative")

        try:
            parse_addr(self.addr)
        except ConfigurationError as e:
            errors.append(f"{ENV_PREFIX}AGENT_ADDR: {e}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> AgentConfig:
        """Load agent configuration from environment variables.

        Environment Variables:
            DHCP_TEMPLATE__NODE_NAME: Name reported to the authority (default: random)
            DHCP_TEMPLATE__ENDPOINT: Authority URL (default: http://[::1]:50051)
            DHCP_TEMPLATE__PROVIDER: Node state provider (default: file)
            DHCP_TEMPLATE__INTERFACES_PATH: Interfaces file for the file provider
            DHCP_TEMPLATE__POLL_SECONDS: File change polling interval (default: 5)
            DHCP_TEMPLATE__DEBOUNCE_SECONDS: Quiet period before reloading (default: 10)
            DHCP_TEMPLATE__RESTART_DELAY_SECONDS: Delay before restarting after
                a transport failure (default: 5)
            DHCP_TEMPLATE__AGENT_ADDR: Node service listen address (default: [::1]:50052)
        """
        node_name = os.environ.get(f"{ENV_PREFIX}NODE_NAME") or random_node_name()

        return cls(
            node_name=node_name,
            endpoint=os.environ.get(f"{ENV_PREFIX}ENDPOINT", DEFAULT_ENDPOINT),
            provider=_get_provider(os.environ.get(f"{ENV_PREFIX}PROVIDER")),
            interfaces_path=Path(
                os.environ.get(f"{ENV_PREFIX}INTERFACES_PATH", DEFAULT_INTERFACES_PATH)
            ),
            poll_seconds=_get_int(f"{ENV_PREFIX}POLL_SECONDS", DEFAULT_POLL_SECONDS),
            debounce_seconds=_get_int(f"{ENV_PREFIX}DEBOUNCE_SECONDS", DEFAULT_DEBOUNCE_SECONDS),
            restart_delay_seconds=_get_int(
                f"{ENV_PREFIX}RESTART_DELAY_SECONDS", DEFAULT_RESTART_DELAY_SECONDS
            ),
            addr=os.environ.get(f"{ENV_PREFIX}AGENT_ADDR", DEFAULT_AGENT_ADDR),
        )


@dataclass(frozen=True)
class OperatorConfig:
    """Authority (push server + controller) configuration."""

    addr: str = DEFAULT_OPERATOR_ADDR

    # Registry entries expire after this many seconds without a push
    idle_seconds: int = DEFAULT_IDLE_SECONDS

    # Coalescing window for template and node state triggers
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS

    ready_requeue_seconds: int = DEFAULT_READY_REQUEUE_SECONDS
    error_requeue_seconds: int = DEFAULT_ERROR_REQUEUE_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []

        try:
            parse_addr(self.addr)
        except ConfigurationError as e:
            errors.append(f"{ENV_PREFIX}ADDR: {e}")

        if self.idle_seconds < MIN_IDLE_SECONDS:
            errors.append(f"{ENV_PREFIX}STATE_IDLE_SECONDS must be at least {MIN_IDLE_SECONDS}")
        if self.debounce_seconds < 0:
            errors.append(f"{ENV_PREFIX}DEBOUNCE_SECONDS must not be negative")
        if self.ready_requeue_seconds < 1:
            errors.append(f"{ENV_PREFIX}READY_REQUEUE_SECONDS must be at least 1")
        if self.error_requeue_seconds < 1:
            errors.append(f"{ENV_PREFIX}ERROR_REQUEUE_SECONDS must be at least 1")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def refresh_seconds(self) -> int:
        """Backoff advised to agents; always shorter than the idle timeout."""
        return max(self.idle_seconds // 2, MIN_REFRESH_SECONDS)

    @classmethod
    def from_env(cls) -> OperatorConfig:
        """Load operator configuration from environment variables.

        Environment Variables:
            DHCP_TEMPLATE__ADDR: Push server listen address (default: [::1]:50051)
            DHCP_TEMPLATE__STATE_IDLE_SECONDS: Node idle timeout (default: 60)
            DHCP_TEMPLATE__DEBOUNCE_SECONDS: Reconcile coalescing window (default: 10)
            DHCP_TEMPLATE__READY_REQUEUE_SECONDS: Requeue after success (default: 21600)
            DHCP_TEMPLATE__ERROR_REQUEUE_SECONDS: Requeue after failure (default: 60)
        """
        return cls(
            addr=os.environ.get(f"{ENV_PREFIX}ADDR", DEFAULT_OPERATOR_ADDR),
            idle_seconds=_get_int(f"{ENV_PREFIX}STATE_IDLE_SECONDS", DEFAULT_IDLE_SECONDS),
            debounce_seconds=_get_int(f"{ENV_PREFIX}DEBOUNCE_SECONDS", DEFAULT_DEBOUNCE_SECONDS),
            ready_requeue_seconds=_get_int(
                f"{ENV_PREFIX}READY_REQUEUE_SECONDS", DEFAULT_READY_REQUEUE_SECONDS
            ),
            error_requeue_seconds=_get_int(
                f"{ENV_PREFIX}ERROR_REQUEUE_SECONDS", DEFAULT_ERROR_REQUEUE_SECONDS
            ),
        )
