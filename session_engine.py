from __future__ import annotations

import asyncio
import datetime
import math
from enum import Enum
from typing import Callable, Dict, Optional

from loguru import logger

from db import SessionRepository
from errors import InvalidStateError, NotFoundError, ValidationError
from models import FinishCommand, RecordSetCommand, Session, TruncateSetsCommand
from tools import TimeTools


class WorkoutState(str, Enum):
    AWAITING_SET_INPUT = "awaiting_set_input"
    RESTING = "resting"
    COMPLETED = "completed"


class SessionEngine:
    """Drive one workout session from the first set to completion.

    The engine owns the mutation sequence of the attached session. Every
    change is written through :meth:`SessionRepository.apply` before the
    in-memory state moves, so a failed write leaves the state untouched.

    ``set_index`` is the zero-based set being awaited, or during a rest the
    set that follows it. ``on_rest_end`` is called with the new set index when
    a rest countdown runs out.
    """

    def __init__(
        self,
        sessions: SessionRepository,
        *,
        clock: Callable[[], datetime.datetime] | None = None,
        on_rest_end: Callable[[int], None] | None = None,
        tick_interval: float = 1.0,
        auto_timer: bool = True,
    ) -> None:
        self.sessions = sessions
        self.clock = clock or TimeTools.utcnow
        self.on_rest_end = on_rest_end
        self.tick_interval = tick_interval
        self.auto_timer = auto_timer
        self.session: Session | None = None
        self.previous_session: Session | None = None
        self.state: WorkoutState | None = None
        self.set_index = 0
        self.seconds_left = 0
        self.suggested_reps = 0
        self._timer: asyncio.Task | None = None

    @property
    def is_attached(self) -> bool:
        return self.session is not None

    @property
    def previous_reps(self) -> Optional[int]:
        """Reps the comparison session recorded for the current set."""
        if self.previous_session is None:
            return None
        return self._previous_reps_at(self.set_index)

    @property
    def can_undo(self) -> bool:
        if self.state is WorkoutState.RESTING:
            return self.set_index > 0
        return self.state is WorkoutState.AWAITING_SET_INPUT and self.set_index > 0

    def _previous_reps_at(self, index: int) -> Optional[int]:
        if self.previous_session is None:
            return None
        reps = self.previous_session.reps_by_set
        return reps[index] if 0 <= index < len(reps) else None

    def _require(self, *states: WorkoutState) -> Session:
        if self.session is None:
            raise InvalidStateError("no session attached")
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidStateError(
                f"operation requires state {allowed}, engine is {self.state.value}"
            )
        return self.session

    async def attach(self, session_id: str) -> Session:
        session = await self.sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found")
        previous = await self.sessions.last_for_template(
            session.template_id, exclude_id=session_id
        )
        if not session.is_completed and (
            session.current_set_index >= session.template_snapshot.sets
        ):
            logger.warning(
                "Session {} has every set recorded but no end time; finishing it",
                session_id,
            )
            session = await self.sessions.apply(
                session_id, FinishCommand(ended_at=self.clock())
            )
        self._cancel_timer()
        self.session = session
        self.previous_session = previous
        self.seconds_left = 0
        if session.is_completed:
            self.state = WorkoutState.COMPLETED
            self.set_index = session.current_set_index
            return session
        self.state = WorkoutState.AWAITING_SET_INPUT
        self.set_index = session.current_set_index
        suggestion = self._previous_reps_at(self.set_index)
        if suggestion is None:
            snap = session.template_snapshot
            suggestion = math.ceil(snap.target_total / snap.sets)
        self.suggested_reps = suggestion
        logger.info(
            "Attached session {} at set {}/{}",
            session_id,
            self.set_index + 1,
            session.template_snapshot.sets,
        )
        return session

    async def record_set(self, reps: int) -> Session:
        session = self._require(WorkoutState.AWAITING_SET_INPUT)
        if isinstance(reps, bool) or not isinstance(reps, int):
            raise ValidationError("reps must be an integer")
        if reps < 0:
            raise ValidationError("reps must be non-negative")
        index = self.set_index
        last = index >= session.template_snapshot.sets - 1
        commands = [RecordSetCommand(index=index, reps=reps)]
        if last:
            commands.append(FinishCommand(ended_at=self.clock()))
        self.session = await self.sessions.apply(session.id, *commands)
        if last:
            self._complete()
            return self.session
        self.set_index = index + 1
        following = self._previous_reps_at(self.set_index)
        self.suggested_reps = following if following is not None else reps
        self.seconds_left = self.session.template_snapshot.rest_sec
        if self.seconds_left <= 0:
            self.state = WorkoutState.AWAITING_SET_INPUT
            return self.session
        self.state = WorkoutState.RESTING
        self._start_timer()
        return self.session

    def tick(self) -> None:
        """Advance the rest countdown by one second."""
        if self.state is not WorkoutState.RESTING:
            return
        self.seconds_left = max(0, self.seconds_left - 1)
        if self.seconds_left == 0:
            self._end_rest(cue=True)

    def skip_rest(self) -> None:
        self._require(WorkoutState.RESTING)
        self._end_rest(cue=False)

    def adjust_rest(self, delta: int) -> int:
        self._require(WorkoutState.RESTING)
        self.seconds_left = max(0, self.seconds_left + delta)
        return self.seconds_left

    async def undo(self) -> Session:
        session = self._require(WorkoutState.AWAITING_SET_INPUT, WorkoutState.RESTING)
        target = self.set_index - 1
        if target < 0:
            return session
        removed = (
            session.reps_by_set[target] if target < len(session.reps_by_set) else None
        )
        self.session = await self._apply_paused(
            session.id, TruncateSetsCommand(length=target)
        )
        self.state = WorkoutState.AWAITING_SET_INPUT
        self.set_index = target
        self.seconds_left = 0
        if removed is not None:
            self.suggested_reps = removed
        logger.debug("Session {}: undid set {}", session.id, target + 1)
        return self.session

    async def finish_early(self) -> Session:
        session = self._require(WorkoutState.AWAITING_SET_INPUT, WorkoutState.RESTING)
        self.session = await self._apply_paused(
            session.id, FinishCommand(ended_at=self.clock())
        )
        self._complete()
        return self.session

    def detach(self) -> None:
        """Stop the rest timer and forget the attached session."""
        self._cancel_timer()
        self.session = None
        self.previous_session = None
        self.state = None
        self.set_index = 0
        self.seconds_left = 0

    def snapshot(self) -> Dict[str, object]:
        """Return a plain view of the engine for display layers."""
        session = self.session
        return {
            "session_id": session.id if session else None,
            "state": self.state.value if self.state else None,
            "set_index": self.set_index,
            "sets": session.template_snapshot.sets if session else None,
            "seconds_left": self.seconds_left,
            "suggested_reps": self.suggested_reps,
            "previous_reps": self.previous_reps,
            "can_undo": self.can_undo,
            "reps_by_set": list(session.reps_by_set) if session else [],
            "total_reps": session.total_reps if session else 0,
            "is_achieved": session.is_achieved if session else False,
        }

    async def _apply_paused(self, session_id: str, *commands) -> Session:
        """Write ``commands`` with the rest countdown stopped.

        A countdown that reaches zero during the write must not cue a set the
        caller is about to cancel. The countdown resumes if the write fails.
        """
        resting = self.state is WorkoutState.RESTING
        self._cancel_timer()
        try:
            return await self.sessions.apply(session_id, *commands)
        except BaseException:
            if resting and self.state is WorkoutState.RESTING:
                self._start_timer()
            raise

    def _complete(self) -> None:
        self._cancel_timer()
        self.state = WorkoutState.COMPLETED
        self.seconds_left = 0
        logger.info(
            "Session {} completed with {} reps (achieved={})",
            self.session.id,
            self.session.total_reps,
            self.session.is_achieved,
        )

    def _end_rest(self, cue: bool) -> None:
        self._cancel_timer()
        self.state = WorkoutState.AWAITING_SET_INPUT
        self.seconds_left = 0
        logger.debug("Rest finished, awaiting set {}", self.set_index + 1)
        if cue and self.on_rest_end is not None:
            self.on_rest_end(self.set_index)

    def _start_timer(self) -> None:
        self._cancel_timer()
        if not self.auto_timer:
            return
        self._timer = asyncio.get_running_loop().create_task(self._run_timer())

    async def _run_timer(self) -> None:
        while self.state is WorkoutState.RESTING:
            await asyncio.sleep(self.tick_interval)
            self.tick()

    def _cancel_timer(self) -> None:
        task = self._timer
        self._timer = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()
