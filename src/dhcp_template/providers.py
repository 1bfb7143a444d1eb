"""Node-local interface state providers.

A Provider produces an effectively infinite sequence of interface list
snapshots: one right away, then one after every relevant local change.
A Source answers with the current interface list when asked.

Implementations are selected by configuration, not by subclassing. The
only implementation reads a YAML file describing the interfaces:

    interfaces:
      - name: eth0
        lease4:
          dns: [192.0.2.53]
          domain: example.org
        lease6:
          dns: ["2001:db8::53"]
          prefixes:
            - ip: "2001:db8:1::"
              len: 56

A bare list of interfaces at the top level is accepted too.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import TypeAdapter, ValidationError

from .config import MAX_INTERFACES_FILE_SIZE_BYTES, AgentConfig, ProviderKind
from .models import Interface

logger = logging.getLogger(__name__)

_INTERFACES = TypeAdapter(list[Interface])


class ProviderError(Exception):
    """Raised when local interface state cannot be read."""

    pass


class ProviderClosedError(ProviderError):
    """Raised when a provider's snapshot sequence ends."""

    pass


class Provider(Protocol):
    """Lazy sequence of interface list snapshots."""

    def interfaces(self) -> AsyncIterator[list[Interface]]: ...


class Source(Protocol):
    """On-demand interface list lookup."""

    async def get_interfaces(self) -> list[Interface]: ...


def parse_interfaces(content: str, origin: str = "<string>") -> list[Interface]:
    """Parse and validate an interfaces document.

    Raises:
        ProviderError: If the document is not valid YAML or does not
            describe a list of interfaces.
    """
    try:
        data: Any = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ProviderError(f"Invalid YAML in {origin}: {e}") from e

    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("interfaces") or []

    try:
        return _INTERFACES.validate_python(data)
    except ValidationError as e:
        raise ProviderError(f"Invalid interfaces in {origin}: {e}") from e


def read_interfaces_file(path: Path) -> list[Interface]:
    """Read and parse an interfaces file.

    Raises:
        ProviderError: If the file is missing, too large or invalid.
    """
    try:
        size = path.stat().st_size
    except OSError as e:
        raise ProviderError(f"Cannot read interfaces file {path}: {e}") from e

    if size > MAX_INTERFACES_FILE_SIZE_BYTES:
        raise ProviderError(
            f"Interfaces file {path} exceeds maximum size of "
            f"{MAX_INTERFACES_FILE_SIZE_BYTES} bytes"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ProviderError(f"Cannot read interfaces file {path}: {e}") from e

    return parse_interfaces(content, origin=str(path))


def _fingerprint(path: Path) -> tuple[int, int] | None:
    try:
        stat = os.stat(path)
    except FileNotFoundError:
        return None
    return stat.st_mtime_ns, stat.st_size


class FileSource:
    """Reads the interfaces file whenever asked."""

    def __init__(self, path: Path) -> None:
        self._path = path

    async def get_interfaces(self) -> list[Interface]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, read_interfaces_file, self._path)


class FileProvider:
    """Yields the interfaces file's content initially and after every change.

    Changes are detected by polling the file's modification time and size.
    A change is only reported once the file stayed unchanged for the
    debounce window, so editors writing in several steps cause one reload.
    """

    def __init__(
        self,
        path: Path,
        poll_seconds: float,
        debounce_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = FileSource(path)
        self._path = path
        self._poll_seconds = poll_seconds
        self._debounce_seconds = debounce_seconds
        self._clock = clock

    async def interfaces(self) -> AsyncIterator[list[Interface]]:
        last = _fingerprint(self._path)
        yield await self._source.get_interfaces()

        changed_at: float | None = None
        while True:
            await asyncio.sleep(self._poll_seconds)

            current = _fingerprint(self._path)
            if current != last:
                last = current
                changed_at = self._clock()

            if changed_at is not None and self._clock() - changed_at >= self._debounce_seconds:
                changed_at = None
                logger.debug("Interfaces file changed, reloading", extra={"path": str(self._path)})
                yield await self._source.get_interfaces()


def create_provider(config: AgentConfig) -> Provider:
    """Build the configured provider."""
    logger.debug("Creating provider", extra={"provider": config.provider.value})

    match config.provider:
        case ProviderKind.FILE:
            return FileProvider(
                config.interfaces_path,
                poll_seconds=config.poll_seconds,
                debounce_seconds=config.debounce_seconds,
            )
        case _:
            raise ProviderError(f"Unsupported provider: {config.provider}")


def create_source(config: AgentConfig) -> Source:
    """Build the configured on-demand source."""
    logger.debug("Creating source", extra={"provider": config.provider.value})

    match config.provider:
        case ProviderKind.FILE:
            return FileSource(config.interfaces_path)
        case _:
            raise ProviderError(f"Unsupported provider: {config.provider}")
