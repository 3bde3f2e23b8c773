"""Deterministic backtracking backend.

Cells are visited day-major, period-ascending.  At each cell the subjects
that still owe lessons are tried in round-robin order starting after the
previous cell's subject, and for each subject the least-loaded eligible
teacher first.  A candidate is only kept when the lessons still owed can
be completed in the remaining cells (see
:meth:`ConstraintEngine.completion_shortfall`), so a stream that passes the
check on the empty grid is filled without backtracking.  When a cell has
no valid candidate the previous cell is undone and its next candidate
tried.  Every undo costs one step of the retry budget; running out of
budget, or out of alternatives, makes the stream infeasible.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .api import ScheduleStatus, SchedulingContext, StreamResult
from .constraints import ELIGIBILITY, Violation
from .errors import IncompleteSetupError, InfeasibleScheduleError
from .models import Grid, Lesson, Stream


@dataclass
class _Frame:
    """Candidates computed on first arrival at a cell, and the next one to try."""

    candidates: List[Tuple[Any, Any]]
    position: int = 0
    committed: Optional[Tuple[Any, Any]] = None


@dataclass
class _DeadEnd:
    depth: int
    violation: Violation


@dataclass
class _Search:
    stream: Stream
    context: SchedulingContext
    grid: Grid
    cells: List[Tuple[int, int]]
    remaining: Dict[Any, int]
    frames: List[_Frame] = field(default_factory=list)
    backtracks: int = 0
    deepest: Optional[_DeadEnd] = None

    def rotation(self, depth: int) -> List[Any]:
        """Subjects still owed, starting after the previous cell's subject."""
        order = list(self.stream.subject_ids)
        start = 0
        if depth > 0:
            day, period = self.cells[depth - 1]
            previous = self.grid.get(day, period)
            if previous is not None and previous.subject_id in order:
                start = order.index(previous.subject_id) + 1
        rotated = order[start:] + order[:start]
        return [subject_id for subject_id in rotated if self.remaining.get(subject_id, 0) > 0]

    def record(self, depth: int, violation: Violation) -> None:
        if self.deepest is None or depth > self.deepest.depth:
            self.deepest = _DeadEnd(depth, violation)

    def open_frame(self, depth: int) -> _Frame:
        day, period = self.cells[depth]
        owed = self.rotation(depth)
        candidates = self.context.engine.candidates(self.grid, owed, day, period)
        if not candidates:
            ranked = self.context.engine.rank_subjects(self.grid, owed, day, period)
            self.record(depth, self.context.engine.explain(self.grid, ranked[0], day, period))
        return _Frame(candidates)

    def shortfall(self, depth: int) -> Optional[Violation]:
        """Why the cells from ``depth`` on cannot take the lessons still owed."""
        return self.context.engine.completion_shortfall(self.grid, self.remaining, self.cells[depth:])

    def commit(self, depth: int, subject_id: Any, teacher_id: Any) -> None:
        day, period = self.cells[depth]
        self.grid.assign(day, period, Lesson(subject_id, teacher_id))
        self.context.busy.occupy(teacher_id, day, period, self.stream.id)
        self.remaining[subject_id] -= 1
        self.frames[depth].committed = (subject_id, teacher_id)

    def undo(self, depth: int) -> None:
        frame = self.frames[depth]
        subject_id, teacher_id = frame.committed
        day, period = self.cells[depth]
        self.grid.clear(day, period)
        self.context.busy.release(teacher_id, day, period)
        self.remaining[subject_id] += 1
        frame.committed = None


def _infeasible(stream: Stream, context: SchedulingContext, violation: Violation, reason: str) -> InfeasibleScheduleError:
    template = context.template
    day = period = None
    if violation.day is not None:
        day = template.day_names[violation.day]
        period = violation.period + 1
    subject = None
    if violation.subject_id is not None:
        subject = context.working_set.subject_name(violation.subject_id)
    return InfeasibleScheduleError(
        f"{stream.name}: {reason}",
        stream_id=stream.id,
        stream_name=stream.name,
        subject=subject,
        day=day,
        period=period,
        kind=violation.kind,
    )


def _unteachable(context: SchedulingContext, subject_ids: Sequence[Any]) -> Optional[Violation]:
    for subject_id in subject_ids:
        if not context.index.teachers_for_subject(subject_id):
            name = context.working_set.subject_name(subject_id)
            return Violation(ELIGIBILITY, f"no teacher is eligible to teach {name}", subject_id=subject_id)
    return None


def schedule_stream(stream: Stream, context: SchedulingContext) -> StreamResult:
    """Fill every teachable cell of ``stream`` or report why that failed."""

    template = context.template
    quotas = context.quotas(stream)
    result = StreamResult(stream=stream, status=ScheduleStatus.IN_PROGRESS)

    if not quotas:
        raise IncompleteSetupError(f"{stream.name} has no subjects to schedule.")

    violation = _unteachable(context, [s for s, n in quotas.items() if n > 0])
    if violation is not None:
        result.status = ScheduleStatus.INFEASIBLE
        result.error = _infeasible(stream, context, violation, violation.message)
        return result

    search = _Search(
        stream=stream,
        context=context,
        grid=Grid.for_template(template),
        cells=template.cells(),
        remaining=dict(quotas),
    )
    violation = search.shortfall(0)
    if violation is not None:
        result.status = ScheduleStatus.INFEASIBLE
        result.error = _infeasible(stream, context, violation, violation.message)
        return result

    budget = context.retry_budget()
    depth = 0
    exhausted = False
    while depth < len(search.cells):
        if depth == len(search.frames):
            search.frames.append(search.open_frame(depth))
        frame = search.frames[depth]
        if frame.position < len(frame.candidates):
            subject_id, teacher_id = frame.candidates[frame.position]
            frame.position += 1
            search.commit(depth, subject_id, teacher_id)
            violation = search.shortfall(depth + 1)
            if violation is not None:
                search.undo(depth)
                search.record(depth + 1, violation)
                continue
            depth += 1
            continue

        search.frames.pop()
        if depth == 0:
            break
        depth -= 1
        search.undo(depth)
        search.backtracks += 1
        if search.backtracks >= budget:
            exhausted = True
            break

    result.backtracks = search.backtracks
    if depth == len(search.cells) and search.grid.is_complete():
        result.status = ScheduleStatus.COMPLETE
        result.grid = search.grid
        return result

    result.status = ScheduleStatus.INFEASIBLE
    dead_end = search.deepest.violation
    reason = dead_end.message
    if exhausted:
        reason = f"{reason}; gave up after {budget} backtracks"
    result.error = _infeasible(stream, context, dead_end, reason)
    return result


__all__ = ["schedule_stream"]
