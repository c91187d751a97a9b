"""
SiriusTrack — UI-Agnostic Command Service.

The async call surface the UI layer dispatches to. Each command runs its
synchronous SQLite work on a worker thread via asyncio.to_thread under an
optional store deadline, and returns plain result objects. Failures propagate as
TrackerError subclasses; nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

import pydantic

from siriustrack.core import carryover, evaluation
from siriustrack.core.dates import today_in
from siriustrack.core.errors import StorageUnavailableError, ValidationError
from siriustrack.data.db import deadline
from siriustrack.data.models import (
    CarryoverCandidate,
    CarryoverResult,
    EvaluationSnapshot,
    SourceKind,
)

if TYPE_CHECKING:
    from siriustrack.config import Settings
    from siriustrack.data.db import TrackerDB

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CommandService:
    """Async facade over the tracker database and both engines."""

    def __init__(self, db: TrackerDB, settings: Settings | None = None) -> None:
        if settings is None:
            from siriustrack.config import settings as default_settings
            settings = default_settings
        self._db = db
        self._settings = settings

    async def _run(self, name: str, func: Callable[..., T], *args: Any) -> T:
        # The deadline follows the context into the worker thread.
        timeout = self._settings.DB_TIMEOUT_SECONDS or None
        with deadline(timeout):
            try:
                return await asyncio.to_thread(func, *args)
            except StorageUnavailableError:
                logger.error("Command %s failed (deadline %ss)", name, timeout)
                raise

    def today(self) -> str:
        """Today's date in the configured timezone."""
        return today_in(self._settings.TIMEZONE)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def compute_evaluation(self, segment_id: int, date: str) -> EvaluationSnapshot:
        return await self._run(
            "compute_evaluation",
            evaluation.compute_evaluation,
            self._db, segment_id, date, self._settings.EVALUATION_WINDOW_DAYS,
        )

    async def evaluate_all_segments(self, date: str) -> list[EvaluationSnapshot]:
        """Recompute every segment's snapshot, one after another."""
        segments = await self._run("list_segments", self._db.list_segments)
        return [await self.compute_evaluation(s.id, date) for s in segments]

    # ------------------------------------------------------------------
    # Activity ledger
    # ------------------------------------------------------------------

    async def record_activity_transition(
        self,
        source_kind: SourceKind | str,
        source_id: int,
        segment_id: int,
        date: str,
        became_achieved: bool,
    ) -> None:
        await self._run(
            "record_activity_transition",
            self._db.record_activity_transition,
            source_kind, source_id, segment_id, date, became_achieved,
        )

    # ------------------------------------------------------------------
    # Carryover
    # ------------------------------------------------------------------

    async def find_carryover_candidates(self, today: str) -> list[CarryoverCandidate]:
        return await self._run(
            "find_carryover_candidates",
            carryover.find_carryover_candidates,
            self._db, today, self._settings.CARRYOVER_LOOKBACK_DAYS,
        )

    async def record_carryover(
        self, candidates: list[CarryoverCandidate | dict], today: str,
    ) -> CarryoverResult:
        """Carry the selected candidates to today.

        Accepts candidate objects or their dict form as received from the UI.
        """
        try:
            parsed = [CarryoverCandidate.model_validate(c) for c in candidates]
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid carryover candidate: {exc}") from exc
        return await self._run(
            "record_carryover", carryover.record_carryover, self._db, parsed, today,
        )
