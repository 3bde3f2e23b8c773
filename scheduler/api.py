"""Public entry points for generating a school's weekly timetables."""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from importlib import import_module
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional

from .availability import AvailabilityIndex, BusyMatrix
from .constraints import ConstraintEngine, subject_quotas
from .errors import InfeasibleScheduleError, ValidationError
from .models import Grid, Stream, Template, WorkingSet
from .serializer import serialize_assignments, serialize_grid, verify_round_trip

logger = logging.getLogger(__name__)

DEFAULT_RETRY_BUDGET_FACTOR = 50


class ScheduleStatus(str, Enum):
    """Lifecycle of a single stream within a generation run."""

    UNSCHEDULED = "UNSCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    INFEASIBLE = "INFEASIBLE"


@dataclass
class SchedulingContext:
    """Shared state handed to a backend for each stream of one run."""

    working_set: WorkingSet
    index: AvailabilityIndex
    busy: BusyMatrix
    engine: ConstraintEngine
    retry_budget_factor: int = DEFAULT_RETRY_BUDGET_FACTOR
    time_limit: Optional[float] = None

    @property
    def template(self) -> Template:
        return self.working_set.template

    def retry_budget(self) -> int:
        return max(1, self.retry_budget_factor) * self.template.cell_count

    def quotas(self, stream: Stream) -> "OrderedDict[Any, int]":
        return subject_quotas(stream.subject_ids, self.template.cell_count)


@dataclass
class StreamResult:
    """Outcome of scheduling one stream."""

    stream: Stream
    status: ScheduleStatus = ScheduleStatus.UNSCHEDULED
    grid: Optional[Grid] = None
    error: Optional[InfeasibleScheduleError] = None
    backtracks: int = 0
    backend: str = ""
    timetable_data: Optional["OrderedDict[str, List[str]]"] = None
    assignment_data: Optional["OrderedDict[str, List[Dict[str, Any]]]"] = None

    @property
    def complete(self) -> bool:
        return self.status is ScheduleStatus.COMPLETE

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error

    def as_dict(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "stream_id": self.stream.id,
            "stream": self.stream.name,
            "status": self.status.value,
            "backtracks": self.backtracks,
        }
        if self.error is not None:
            entry.update({
                "reason": self.error.message,
                "subject": self.error.subject,
                "day": self.error.day,
                "period": self.error.period,
                "kind": self.error.kind,
            })
        return entry


@dataclass
class RunSummary:
    """Per-run report surfaced to the user after generation."""

    school_id: Any
    backend: str
    generated_at: str
    results: List[StreamResult] = field(default_factory=list)
    progress: List[str] = field(default_factory=list)
    workloads: Dict[Any, int] = field(default_factory=dict)

    @property
    def completed(self) -> List[StreamResult]:
        return [r for r in self.results if r.complete]

    @property
    def infeasible(self) -> List[StreamResult]:
        return [r for r in self.results if r.status is ScheduleStatus.INFEASIBLE]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "school_id": self.school_id,
            "backend": self.backend,
            "generated_at": self.generated_at,
            "succeeded": [r.as_dict() for r in self.completed],
            "infeasible": [r.as_dict() for r in self.infeasible],
            "progress": list(self.progress),
        }


_BACKEND_REGISTRY: Dict[str, str] = {}
_DEFAULT_BACKEND = "backtracking"


def register_backend(identifier: str, module_path: str) -> None:
    """Register a scheduler backend import path under ``identifier``."""

    _BACKEND_REGISTRY[identifier.lower()] = module_path


def available_backends() -> List[str]:
    """Return the list of registered backend identifiers."""

    return sorted(_BACKEND_REGISTRY)


def _resolve_backend_name(identifier: Optional[str]) -> str:
    key = (identifier or _DEFAULT_BACKEND).lower()
    if key not in _BACKEND_REGISTRY:
        available = ", ".join(available_backends()) or "none"
        name = identifier if identifier is not None else _DEFAULT_BACKEND
        raise ValueError(f"Unknown scheduler backend '{name}'. Available options: {available}.")
    return key


def get_backend(identifier: Optional[str] = None) -> ModuleType:
    """Return the module implementing the requested scheduler backend."""

    key = _resolve_backend_name(identifier)
    return import_module(_BACKEND_REGISTRY[key])


def build_context(
    working_set: WorkingSet,
    busy: Optional[BusyMatrix] = None,
    *,
    retry_budget_factor: int = DEFAULT_RETRY_BUDGET_FACTOR,
    time_limit: Optional[float] = None,
) -> SchedulingContext:
    """Build the index, busy matrix and rule engine for one run."""

    busy = busy if busy is not None else BusyMatrix()
    index = AvailabilityIndex(working_set.teachers, working_set.template)
    stream_names = {stream.id: stream.name for stream in working_set.streams}
    engine = ConstraintEngine(
        index,
        busy,
        subject_name=working_set.subject_name,
        teacher_name=working_set.teacher_name,
        stream_name=lambda sid: stream_names.get(sid, str(sid)),
    )
    return SchedulingContext(
        working_set=working_set,
        index=index,
        busy=busy,
        engine=engine,
        retry_budget_factor=retry_budget_factor,
        time_limit=time_limit,
    )


def schedule_stream(stream: Stream, context: SchedulingContext, *, backend: Optional[str] = None) -> StreamResult:
    """Schedule a single stream against ``context.busy``.

    A complete result leaves its bookings in the busy matrix.  An infeasible
    one releases every booking it made before returning.
    """

    key = _resolve_backend_name(backend)
    backend_module = get_backend(key)
    scheduler = getattr(backend_module, "schedule_stream", None)
    if scheduler is None:
        raise ValueError(f"Backend '{key}' does not expose a schedule_stream() function.")
    result = scheduler(stream, context)
    result.backend = key
    if not result.complete:
        context.busy.release_stream(stream.id)
    return result


def schedule_school(
    working_set: WorkingSet,
    *,
    backend: Optional[str] = None,
    busy: Optional[BusyMatrix] = None,
    retry_budget_factor: int = DEFAULT_RETRY_BUDGET_FACTOR,
    time_limit: Optional[float] = None,
    on_stream_complete: Optional[Callable[[StreamResult], None]] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> RunSummary:
    """Schedule every stream of ``working_set`` in order, sharing one busy matrix.

    Streams are processed sequentially.  Each complete stream is audited,
    serialized and handed to ``on_stream_complete`` before the next stream
    starts, so callers can persist it immediately.  An infeasible stream is
    recorded in the summary and does not stop the run.  A
    :class:`ValidationError` means an internal invariant broke and is raised
    to the caller.
    """

    key = _resolve_backend_name(backend)
    context = build_context(
        working_set,
        busy,
        retry_budget_factor=retry_budget_factor,
        time_limit=time_limit,
    )
    template = working_set.template
    summary = RunSummary(
        school_id=working_set.school.id,
        backend=key,
        generated_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
    )

    def report(message: str) -> None:
        summary.progress.append(message)
        logger.info(message)
        if progress_callback is not None:
            progress_callback(message)

    finished: Dict[Any, Grid] = {}
    for stream in working_set.streams:
        result = schedule_stream(stream, context, backend=key)
        summary.results.append(result)
        if not result.complete:
            report(result.error.message if result.error else f"{stream.name}: infeasible")
            continue

        finished[stream.id] = result.grid
        violations = context.engine.audit(finished)
        if violations:
            raise ValidationError(
                f"{stream.name}: generated timetable breaks hard constraints: "
                + "; ".join(v.message for v in violations)
            )
        result.timetable_data = serialize_grid(result.grid, template, working_set.subject_name)
        result.assignment_data = serialize_assignments(result.grid, template, working_set)
        verify_round_trip(
            result.grid, result.timetable_data, template, working_set.subject_name, result.assignment_data
        )
        report(f"{stream.name}: complete after {result.backtracks} backtrack(s)")
        if on_stream_complete is not None:
            on_stream_complete(result)

    summary.workloads = context.busy.workloads()
    return summary


register_backend("backtracking", "scheduler.backtracking")
register_backend("pulp", "scheduler.pulp_backend")


__all__ = [
    "DEFAULT_RETRY_BUDGET_FACTOR",
    "RunSummary",
    "ScheduleStatus",
    "SchedulingContext",
    "StreamResult",
    "available_backends",
    "build_context",
    "get_backend",
    "register_backend",
    "schedule_school",
    "schedule_stream",
]
