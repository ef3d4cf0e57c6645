"""Student roster: maps beacon device identifiers to students and divisions."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger(__name__)

# Optional JSON roster file; the built-in demo roster is used when unset
ROSTER_FILE = os.getenv("ROSTER_FILE")

# Demo mapping of beacon addresses to students
DEMO_ROSTER: dict[str, dict[str, str]] = {
    "12:34:56:78:90:AB": {"name": "Emma Johnson", "division": "Computer Science A"},
    "AA:BB:CC:DD:EE:FF": {"name": "Liam Smith", "division": "Computer Science A"},
    "11:22:33:44:55:66": {"name": "Olivia Davis", "division": "Computer Science A"},
    "77:88:99:00:11:22": {"name": "Noah Wilson", "division": "Computer Science A"},
    "FF:EE:DD:CC:BB:AA": {"name": "Ava Brown", "division": "Computer Science B"},
    "33:44:55:66:77:88": {"name": "William Jones", "division": "Computer Science B"},
    "99:88:77:66:55:44": {"name": "Sophia Garcia", "division": "Computer Science B"},
    "BB:CC:DD:EE:FF:00": {"name": "James Miller", "division": "Computer Science B"},
    "00:11:22:33:44:55": {"name": "Isabella Chen", "division": "Information Technology A"},
    "55:66:77:88:99:AA": {"name": "Alexander Lee", "division": "Information Technology A"},
    "CC:DD:EE:FF:00:11": {"name": "Mia Rodriguez", "division": "Information Technology B"},
    "22:33:44:55:66:77": {"name": "Ethan Taylor", "division": "Information Technology B"},
}


def normalize_identifier(identifier: str | None) -> str | None:
    if not identifier:
        return None
    return identifier.strip().upper()


@dataclass(frozen=True)
class RosterEntry:
    identifier: str
    name: str
    division: str | None = None


class Roster:
    """Read-only lookup table of known student devices.

    Identifiers are normalized to upper case so MAC addresses reported by
    BlueZ match regardless of how the roster file spells them.
    """

    def __init__(self, entries: Iterable[RosterEntry]):
        self._entries: dict[str, RosterEntry] = {}
        for entry in entries:
            key = normalize_identifier(entry.identifier)
            if not key:
                raise ValueError("Roster entry without an identifier")
            if key in self._entries:
                raise ValueError(f"Duplicate roster identifier: {key}")
            self._entries[key] = RosterEntry(key, entry.name, entry.division or None)

    @classmethod
    def from_mapping(cls, mapping: dict[str, dict]) -> "Roster":
        return cls(
            RosterEntry(identifier, info["name"], info.get("division"))
            for identifier, info in mapping.items()
        )

    @classmethod
    def from_file(cls, path: str) -> "Roster":
        """Load a roster from a JSON object of ``{id: {name, division}}``."""
        with open(path, encoding="utf-8") as handle:
            mapping = json.load(handle)
        if not isinstance(mapping, dict):
            raise ValueError(f"Roster file {path} must contain a JSON object")
        roster = cls.from_mapping(mapping)
        logger.info("Loaded %d roster entries from %s", len(roster), path)
        return roster

    def lookup(self, identifier: str | None) -> RosterEntry | None:
        key = normalize_identifier(identifier)
        if key is None:
            return None
        return self._entries.get(key)

    def list_divisions(self) -> list[str]:
        return sorted({entry.division for entry in self._entries.values() if entry.division})

    def entries(self, division: str | None = None) -> list[RosterEntry]:
        """Entries in roster order, optionally limited to one division."""
        return [
            entry
            for entry in self._entries.values()
            if division is None or entry.division == division
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and self.lookup(identifier) is not None


def load_roster(path: str | None = ROSTER_FILE) -> Roster:
    """Load the configured roster, falling back to the demo roster."""
    if path:
        return Roster.from_file(path)
    logger.info("ROSTER_FILE not set, using built-in demo roster")
    return Roster.from_mapping(DEMO_ROSTER)
