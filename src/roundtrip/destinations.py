# src/roundtrip/destinations.py
from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import Iterator

from .exceptions import DestinationError

logger = getLogger(__name__)

DESTINATION_DELIMITER = ","
PART_SEPARATOR = "/"


@dataclass(frozen=True, slots=True)
class Destination:
    """A single (device, module) pair a direct method can be invoked on."""

    device_id: str
    module_id: str

    def __str__(self) -> str:
        return f"{self.device_id}{PART_SEPARATOR}{self.module_id}"

    @classmethod
    def parse(cls, entry: str) -> "Destination":
        """
        Parse ``device/module``. Surrounding whitespace is ignored.

        Raises DestinationError when the entry does not have exactly two
        non-empty parts.
        """
        text = entry.strip()
        if not text:
            raise DestinationError(entry, "empty entry")

        parts = text.split(PART_SEPARATOR)
        if len(parts) != 2:
            raise DestinationError(entry, "expected the form 'device/module'")

        device_id, module_id = (p.strip() for p in parts)
        if not device_id:
            raise DestinationError(entry, "device id is empty")
        if not module_id:
            raise DestinationError(entry, "module id is empty")
        return cls(device_id=device_id, module_id=module_id)


@dataclass(frozen=True, slots=True)
class DestinationRegistry:
    """
    Immutable, ordered set of destinations parsed once at startup.

    ``errors`` holds the entries that were rejected; they are excluded from
    ``destinations`` so well-formed entries can still be used.
    """

    destinations: tuple[Destination, ...]
    errors: tuple[DestinationError, ...] = ()

    def __iter__(self) -> Iterator[Destination]:
        return iter(self.destinations)

    def __len__(self) -> int:
        return len(self.destinations)

    @property
    def ok(self) -> bool:
        return not self.errors

    def log_errors(self) -> None:
        for err in self.errors:
            logger.error("Skipping destination: %s", err)


def parse_destinations(
    text: str | None,
    *,
    delimiter: str = DESTINATION_DELIMITER,
    strict: bool = False,
) -> DestinationRegistry:
    """
    Parse a delimited destination string such as ``"dev1/mod1,dev2/mod2"``.

    Duplicates are dropped (first occurrence wins). Malformed entries are
    collected in ``DestinationRegistry.errors``; with ``strict=True`` the
    first one is raised instead.
    """
    if text is None or not text.strip():
        return DestinationRegistry(destinations=())

    seen: set[Destination] = set()
    ordered: list[Destination] = []
    errors: list[DestinationError] = []

    for raw in text.split(delimiter):
        try:
            dest = Destination.parse(raw)
        except DestinationError as err:
            if strict:
                raise
            errors.append(err)
            continue

        if dest in seen:
            logger.warning("Ignoring duplicate destination %s", dest)
            continue
        seen.add(dest)
        ordered.append(dest)

    return DestinationRegistry(destinations=tuple(ordered), errors=tuple(errors))
