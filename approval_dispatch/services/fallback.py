"""
FallbackLog -- local JSON-lines spill file for events the broker refused.

Contract:
    ``append`` never loses an event it returns from: the line is written and
    flushed before returning.  ``sweep(publish)`` replays every logged event
    through ``publish``; events that still fail are written back so the next
    sweep retries them.

Invariants enforced:
    - One JSON object per line (QueuedEvent.to_dict).
    - A sweep works on a renamed snapshot, so appends during a sweep land in
      a fresh file and are never truncated away.
    - A corrupt line is logged and skipped, never fatal.
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Callable

from approval_kernel.exceptions import DownstreamUnavailableError
from approval_kernel.logging_config import get_logger
from approval_dispatch.domain.types import QueuedEvent

logger = get_logger("dispatch.fallback")


class FallbackLog:
    def __init__(self, path: str | os.PathLike[str]):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, event: QueuedEvent) -> None:
        line = json.dumps(event.to_dict(), sort_keys=True, default=str)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
                fh.flush()
                os.fsync(fh.fileno())

    def pending(self) -> list[QueuedEvent]:
        with self._lock:
            return self._read(self._path)

    def __len__(self) -> int:
        return len(self.pending())

    def sweep(self, publish: Callable[[QueuedEvent], object]) -> int:
        """Replay logged events; returns how many were handed to ``publish``."""
        snapshot = self._path.with_name(self._path.name + ".sweeping")
        with self._lock:
            if snapshot.exists():
                # Left behind by an interrupted sweep
                events = self._read(snapshot) + self._read(self._path)
                self._path.unlink(missing_ok=True)
            elif self._path.exists():
                os.replace(self._path, snapshot)
                events = self._read(snapshot)
            else:
                return 0

        published = 0
        remaining: list[QueuedEvent] = []
        for index, event in enumerate(events):
            try:
                publish(event)
                published += 1
            except DownstreamUnavailableError as exc:
                remaining = events[index:]
                logger.warning(
                    "dispatcher_fallback_sweep_interrupted",
                    extra={"remaining": len(remaining), "error": str(exc)},
                )
                break

        with self._lock:
            for event in remaining:
                line = json.dumps(event.to_dict(), sort_keys=True, default=str)
                with self._path.open("a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
            snapshot.unlink(missing_ok=True)

        if published:
            logger.info(
                "dispatcher_fallback_swept",
                extra={"published": published, "remaining": len(remaining)},
            )
        return published

    @staticmethod
    def _read(path: Path) -> list[QueuedEvent]:
        if not path.exists():
            return []
        events: list[QueuedEvent] = []
        with path.open("r", encoding="utf-8") as fh:
            for lineno, raw in enumerate(fh, start=1):
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    events.append(QueuedEvent.from_dict(json.loads(raw)))
                except (ValueError, KeyError, TypeError):
                    logger.warning(
                        "dispatcher_fallback_line_corrupt",
                        extra={"path": str(path), "line": lineno},
                    )
        return events
