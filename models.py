from __future__ import annotations

import datetime
from enum import Enum
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError

TemplateName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
SetCount = Annotated[int, Field(ge=1, le=20)]
TargetTotal = Annotated[int, Field(ge=1, le=200)]
RestSeconds = Annotated[int, Field(ge=10, le=600)]


def validated(model: type[BaseModel], data: dict) -> BaseModel:
    """Validate ``data`` against ``model`` raising :class:`ValidationError`."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(str(e)) from e


class TemplateFields(BaseModel):
    """User-editable template fields with the accepted entry ranges."""

    model_config = ConfigDict(extra="forbid")

    name: TemplateName
    sets: SetCount
    target_total: TargetTotal
    rest_sec: RestSeconds


class Template(TemplateFields):
    id: str
    created_at: datetime.datetime
    updated_at: datetime.datetime


class SessionOverrides(BaseModel):
    """Per-session configuration chosen when a workout is started."""

    model_config = ConfigDict(extra="forbid")

    sets: Optional[SetCount] = None
    rest_sec: Optional[RestSeconds] = None


class TemplateSnapshot(BaseModel):
    """Template parameters frozen into a session at creation time."""

    model_config = ConfigDict(frozen=True)

    name: str
    sets: int = Field(ge=1)
    target_total: int = Field(ge=1)
    rest_sec: int = Field(ge=0)

    @classmethod
    def from_template(
        cls, template: Template, overrides: SessionOverrides | None = None
    ) -> "TemplateSnapshot":
        sets = template.sets
        rest_sec = template.rest_sec
        if overrides is not None:
            if overrides.sets is not None:
                sets = overrides.sets
            if overrides.rest_sec is not None:
                rest_sec = overrides.rest_sec
        return cls(
            name=template.name,
            sets=sets,
            target_total=template.target_total,
            rest_sec=rest_sec,
        )


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Session(BaseModel):
    """One performance of a template."""

    id: str
    template_id: str
    template_snapshot: TemplateSnapshot
    started_at: datetime.datetime
    ended_at: Optional[datetime.datetime] = None
    reps_by_set: List[Annotated[int, Field(ge=0)]] = Field(default_factory=list)
    total_reps: int = 0
    is_achieved: bool = False
    status: SessionStatus = SessionStatus.IN_PROGRESS

    @property
    def current_set_index(self) -> int:
        return len(self.reps_by_set)

    @property
    def is_completed(self) -> bool:
        return self.status is SessionStatus.COMPLETED

    @property
    def max_set_reps(self) -> int:
        return max(self.reps_by_set, default=0)


class RecordSetCommand(BaseModel):
    """Write ``reps`` at position ``index`` of ``reps_by_set``."""

    index: int = Field(ge=0)
    reps: int = Field(ge=0)


class TruncateSetsCommand(BaseModel):
    """Drop every recorded set at position ``length`` and beyond."""

    length: int = Field(ge=0)


class FinishCommand(BaseModel):
    """Mark the session completed at ``ended_at``."""

    ended_at: datetime.datetime


SessionCommand = RecordSetCommand | TruncateSetsCommand | FinishCommand


def apply_command(session: Session, command: SessionCommand) -> Session:
    """Return a copy of ``session`` with ``command`` applied.

    Derived fields are always recomputed from ``reps_by_set`` so the result
    satisfies the session invariants.
    """
    reps = list(session.reps_by_set)
    ended_at = session.ended_at
    status = session.status
    sets = session.template_snapshot.sets
    if isinstance(command, RecordSetCommand):
        if command.index >= sets:
            raise ValidationError(
                f"set index {command.index} exceeds session set count {sets}"
            )
        if command.index > len(reps):
            raise ValidationError(
                f"set index {command.index} skips unrecorded sets"
            )
        if command.index == len(reps):
            reps.append(command.reps)
        else:
            reps[command.index] = command.reps
    elif isinstance(command, TruncateSetsCommand):
        reps = reps[: command.length]
    elif isinstance(command, FinishCommand):
        ended_at = command.ended_at
        status = SessionStatus.COMPLETED
    else:
        raise TypeError(f"unsupported command {command!r}")
    total = sum(reps)
    return session.model_copy(
        update={
            "reps_by_set": reps,
            "total_reps": total,
            "is_achieved": total >= session.template_snapshot.target_total,
            "ended_at": ended_at,
            "status": status,
        }
    )
