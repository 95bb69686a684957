"""JSON snapshot of scheduling metadata and shared context."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from p2p_relay.scheduler.models import TaskKind
from p2p_relay.storage.common import from_iso

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class SnapshotError(RuntimeError):
    """Snapshot file exists but cannot be read back."""


@dataclass(slots=True)
class TaskSnapshot:
    task_id: str
    kind: TaskKind
    next_run_at: datetime | None
    last_run_at: datetime | None
    enabled: bool = True


@dataclass(slots=True)
class SchedulerSnapshot:
    name: str
    saved_at: datetime
    tasks: list[TaskSnapshot] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)

    def task(self, task_id: str) -> TaskSnapshot | None:
        for item in self.tasks:
            if item.task_id == task_id:
                return item
        return None

    def to_payload(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "name": self.name,
            "saved_at": self.saved_at.isoformat(),
            "tasks": [
                {
                    "id": item.task_id,
                    "kind": item.kind.value,
                    "next_run_at": _iso_or_none(item.next_run_at),
                    "last_run_at": _iso_or_none(item.last_run_at),
                    "enabled": item.enabled,
                }
                for item in self.tasks
            ],
            "context": self.context,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SchedulerSnapshot:
        version = payload.get("version")
        if version != SNAPSHOT_VERSION:
            raise SnapshotError(f"Unsupported snapshot version: {version!r}")
        try:
            tasks = [
                TaskSnapshot(
                    task_id=str(raw["id"]),
                    kind=TaskKind(raw["kind"]),
                    next_run_at=_parse_optional(raw.get("next_run_at")),
                    last_run_at=_parse_optional(raw.get("last_run_at")),
                    enabled=bool(raw.get("enabled", True)),
                )
                for raw in payload.get("tasks", [])
            ]
            context = payload.get("context") or {}
            if not isinstance(context, dict):
                raise SnapshotError("Snapshot context must be a JSON object")
            return cls(
                name=str(payload.get("name", "")),
                saved_at=from_iso(str(payload["saved_at"])),
                tasks=tasks,
                context=context,
            )
        except (KeyError, TypeError, ValueError) as error:
            raise SnapshotError(f"Malformed snapshot: {error}") from error


class SnapshotStore:
    """Reads and atomically writes a snapshot file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> SchedulerSnapshot | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise SnapshotError(f"Cannot read snapshot {self.path}: {error}") from error
        if not isinstance(payload, dict):
            raise SnapshotError(f"Snapshot {self.path} is not a JSON object")
        return SchedulerSnapshot.from_payload(payload)

    def save(self, snapshot: SchedulerSnapshot) -> None:
        """Write via a sibling temp file and ``os.replace`` so readers never see a partial file."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        data = json.dumps(snapshot.to_payload(), ensure_ascii=False, indent=2, default=str)
        tmp_path.write_text(data, "utf-8")
        os.replace(tmp_path, self.path)
        logger.debug("Snapshot written to %s (%d tasks)", self.path, len(snapshot.tasks))


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_optional(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    return from_iso(str(value))
