"""Hard and soft scheduling rules.

Hard rules reject a tentative ``(subject, teacher)`` placement; soft rules
only reorder candidates that already passed every hard rule.
"""

from __future__ import annotations

from collections import Counter, OrderedDict, deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .availability import AvailabilityIndex, BusyMatrix
from .models import Grid, Template


CELL_TAKEN = "cell_taken"
ELIGIBILITY = "teacher_eligibility"
AVAILABILITY = "teacher_availability"
DOUBLE_BOOKING = "double_booking"
WORKLOAD_CAP = "workload_cap"

# Order in which hard rules are evaluated for a candidate.
HARD_CONSTRAINTS = (CELL_TAKEN, ELIGIBILITY, AVAILABILITY, DOUBLE_BOOKING, WORKLOAD_CAP)


@dataclass(frozen=True)
class Violation:
    kind: str
    message: str
    teacher_id: Any = None
    subject_id: Any = None
    day: Optional[int] = None
    period: Optional[int] = None


class ConstraintEngine:
    """Evaluate placements against the index and the run's busy matrix."""

    def __init__(
        self,
        index: AvailabilityIndex,
        busy: BusyMatrix,
        *,
        subject_name: Optional[Callable[[Any], str]] = None,
        teacher_name: Optional[Callable[[Any], str]] = None,
        stream_name: Optional[Callable[[Any], str]] = None,
    ):
        self.index = index
        self.busy = busy
        self.template: Template = index.template
        self._subject_name = subject_name or str
        self._teacher_name = teacher_name or str
        self._stream_name = stream_name or str

    def check(self, grid: Grid, subject_id: Any, teacher_id: Any, day: int, period: int) -> Optional[Violation]:
        """Return the first hard rule the placement breaks, or ``None``."""
        label = self.template.slot_label(day, period)
        if grid.is_filled(day, period):
            return Violation(CELL_TAKEN, f"{label} is already filled", teacher_id, subject_id, day, period)
        teacher = self._teacher_name(teacher_id)
        if not self.index.is_eligible(teacher_id, subject_id):
            return Violation(
                ELIGIBILITY,
                f"{teacher} does not teach {self._subject_name(subject_id)}",
                teacher_id, subject_id, day, period,
            )
        if not self.index.is_free(teacher_id, day, period):
            return Violation(
                AVAILABILITY, f"{teacher} is not available at {label}", teacher_id, subject_id, day, period
            )
        if self.busy.is_busy(teacher_id, day, period):
            occupant = self.busy.occupant(teacher_id, day, period)
            return Violation(
                DOUBLE_BOOKING,
                f"{teacher} already teaches {self._stream_name(occupant)} at {label}",
                teacher_id, subject_id, day, period,
            )
        cap = self.index.max_lessons(teacher_id)
        if self.busy.workload(teacher_id) >= cap:
            return Violation(
                WORKLOAD_CAP,
                f"{teacher} has reached the weekly limit of {cap} lessons",
                teacher_id, subject_id, day, period,
            )
        return None

    def rank_teachers(self, subject_id: Any) -> List[Any]:
        """Soft rule: least-loaded eligible teachers first."""
        return self.index.candidate_teachers(subject_id, self.busy)

    def rank_subjects(self, grid: Grid, subject_ids: Sequence[Any], day: int, period: int) -> List[Any]:
        """Soft rule: avoid repeating the previous period's subject on the same day.

        The relative order of ``subject_ids`` is otherwise kept.
        """
        previous = grid.get(day, period - 1) if period > 0 else None
        if previous is None:
            return list(subject_ids)
        fresh = [s for s in subject_ids if s != previous.subject_id]
        repeated = [s for s in subject_ids if s == previous.subject_id]
        return fresh + repeated

    def candidates(
        self, grid: Grid, subject_ids: Sequence[Any], day: int, period: int
    ) -> List[Tuple[Any, Any]]:
        """Every valid ``(subject, teacher)`` pair for the cell, best first."""
        ranked = []
        for subject_id in self.rank_subjects(grid, subject_ids, day, period):
            for teacher_id in self.rank_teachers(subject_id):
                if self.check(grid, subject_id, teacher_id, day, period) is None:
                    ranked.append((subject_id, teacher_id))
        return ranked

    def explain(self, grid: Grid, subject_id: Any, day: int, period: int) -> Violation:
        """Summarise why no teacher can take ``subject_id`` at the cell."""
        subject = self._subject_name(subject_id)
        label = self.template.slot_label(day, period)
        teachers = self.index.teachers_for_subject(subject_id)
        if not teachers:
            return Violation(
                ELIGIBILITY, f"no teacher is eligible to teach {subject}", None, subject_id, day, period
            )
        found = []
        for teacher_id in teachers:
            violation = self.check(grid, subject_id, teacher_id, day, period)
            if violation is not None:
                found.append(violation)
        if not found:
            return Violation(
                CELL_TAKEN, f"{subject} cannot be placed at {label}", None, subject_id, day, period
            )
        kinds = Counter(v.kind for v in found)
        kind = max(kinds, key=lambda k: (kinds[k], -HARD_CONSTRAINTS.index(k)))
        details = "; ".join(v.message for v in found)
        return Violation(
            kind,
            f"no eligible teacher free for {subject} at {label} ({details})",
            None, subject_id, day, period,
        )

    def open_cells(self, grid: Grid, teacher_id: Any, cells: Sequence[Tuple[int, int]]) -> List[Tuple[int, int]]:
        """Cells of ``cells`` where the teacher could still take a lesson."""
        return [
            (day, period)
            for day, period in cells
            if not grid.is_filled(day, period)
            and self.index.is_free(teacher_id, day, period)
            and not self.busy.is_busy(teacher_id, day, period)
        ]

    def placeable(self, grid: Grid, remaining: Mapping[Any, int], cells: Sequence[Tuple[int, int]]) -> Dict[Any, int]:
        """How many of each subject's owed lessons can still be placed in ``cells``.

        Solved as a flow from subjects through teachers to cells: a subject
        sends at most what it owes, a teacher passes on at most what is left
        under their cap and only into cells where they are free and unbooked,
        and every cell takes one lesson.  Lessons of one stream never share a
        cell, so a full flow means the rest of the stream can be completed.
        """
        source, sink = ("source",), ("sink",)
        capacity: Dict[Any, Dict[Any, int]] = {}

        def edge(a, b, amount):
            capacity.setdefault(a, {}).setdefault(b, 0)
            capacity[a][b] += amount
            capacity.setdefault(b, {}).setdefault(a, 0)

        owed = {s: n for s, n in remaining.items() if n > 0}
        teachers: List[Any] = []
        for subject_id, needed in owed.items():
            edge(source, ("subject", subject_id), needed)
            for teacher_id in self.index.teachers_for_subject(subject_id):
                edge(("subject", subject_id), ("in", teacher_id), needed)
                if teacher_id not in teachers:
                    teachers.append(teacher_id)
        for teacher_id in teachers:
            left = self.index.max_lessons(teacher_id) - self.busy.workload(teacher_id)
            if left <= 0:
                continue
            edge(("in", teacher_id), ("out", teacher_id), left)
            for cell in self.open_cells(grid, teacher_id, cells):
                edge(("out", teacher_id), ("cell", cell), 1)
        for day, period in cells:
            if ("cell", (day, period)) in capacity:
                edge(("cell", (day, period)), sink, 1)

        while True:
            parents = {source: None}
            queue = deque([source])
            while queue and sink not in parents:
                node = queue.popleft()
                for nxt, amount in capacity.get(node, {}).items():
                    if amount > 0 and nxt not in parents:
                        parents[nxt] = node
                        queue.append(nxt)
            if sink not in parents:
                break
            path = []
            node = sink
            while parents[node] is not None:
                path.append((parents[node], node))
                node = parents[node]
            push = min(capacity[a][b] for a, b in path)
            for a, b in path:
                capacity[a][b] -= push
                capacity[b][a] += push

        return {s: needed - capacity[source][("subject", s)] for s, needed in owed.items()}

    def completion_shortfall(
        self, grid: Grid, remaining: Mapping[Any, int], cells: Sequence[Tuple[int, int]]
    ) -> Optional[Violation]:
        """Why the owed lessons cannot all fit into ``cells``, or ``None`` when they can."""
        placed = self.placeable(grid, remaining, cells)
        short = [(remaining[s] - n, s) for s, n in placed.items() if n < remaining[s]]
        if not short:
            return None
        owed = [s for s, n in remaining.items() if n > 0]
        for day, period in cells:
            if not grid.is_filled(day, period) and not self.candidates(grid, owed, day, period):
                ranked = self.rank_subjects(grid, owed, day, period)
                return self.explain(grid, ranked[0], day, period)
        subject_id = max(short, key=lambda item: item[0])[1]
        needed = remaining[subject_id]
        subject = self._subject_name(subject_id)
        teachers = self.index.teachers_for_subject(subject_id)
        if not teachers:
            return Violation(ELIGIBILITY, f"no teacher is eligible to teach {subject}", subject_id=subject_id)
        left_total = sum(
            max(0, self.index.max_lessons(t) - self.busy.workload(t)) for t in teachers
        )
        free_cells = {
            (day, period)
            for t in teachers
            for day, period in cells
            if not grid.is_filled(day, period) and self.index.is_free(t, day, period)
        }
        if left_total < needed:
            kind = WORKLOAD_CAP
            reason = f"its eligible teachers have only {left_total} lessons left under their weekly limits"
        elif len(free_cells) < needed:
            kind = AVAILABILITY
            reason = f"its eligible teachers are available in only {len(free_cells)} of the open periods"
        elif any(self.busy.is_busy(t, day, period) for t in teachers for day, period in free_cells):
            kind = DOUBLE_BOOKING
            reason = f"only {placed[subject_id]} fit around its teachers' bookings in other streams"
        else:
            kind = AVAILABILITY
            reason = f"only {placed[subject_id]} fit into its teachers' available periods alongside the other subjects"
        return Violation(kind, f"{subject} still needs {needed} lessons but {reason}", subject_id=subject_id)

    def audit(self, grids: Mapping[Any, Grid]) -> List[Violation]:
        """Re-check finished grids from scratch, independent of the busy matrix."""
        violations: List[Violation] = []
        seen: Dict[Tuple[Any, int, int], Any] = {}
        totals: Counter = Counter()
        for stream_id, grid in grids.items():
            for (day, period), lesson in grid.items():
                label = self.template.slot_label(day, period)
                teacher = self._teacher_name(lesson.teacher_id)
                totals[lesson.teacher_id] += 1
                if not self.index.is_eligible(lesson.teacher_id, lesson.subject_id):
                    violations.append(Violation(
                        ELIGIBILITY,
                        f"{teacher} does not teach {self._subject_name(lesson.subject_id)}",
                        lesson.teacher_id, lesson.subject_id, day, period,
                    ))
                if not self.index.is_free(lesson.teacher_id, day, period):
                    violations.append(Violation(
                        AVAILABILITY, f"{teacher} is not available at {label}",
                        lesson.teacher_id, lesson.subject_id, day, period,
                    ))
                key = (lesson.teacher_id, day, period)
                if key in seen and seen[key] != stream_id:
                    violations.append(Violation(
                        DOUBLE_BOOKING,
                        f"{teacher} teaches {self._stream_name(seen[key])} and "
                        f"{self._stream_name(stream_id)} at {label}",
                        lesson.teacher_id, lesson.subject_id, day, period,
                    ))
                seen.setdefault(key, stream_id)
        for teacher_id, total in totals.items():
            cap = self.index.max_lessons(teacher_id)
            if total > cap:
                violations.append(Violation(
                    WORKLOAD_CAP,
                    f"{self._teacher_name(teacher_id)} teaches {total} lessons, above the limit of {cap}",
                    teacher_id,
                ))
        return violations


def subject_quotas(subject_ids: Iterable[Any], cell_count: int) -> "OrderedDict[Any, int]":
    """Spread ``cell_count`` lessons as evenly as possible over the subjects.

    The first ``cell_count % len(subjects)`` subjects get one extra lesson.
    """
    subject_ids = list(subject_ids)
    if not subject_ids:
        return OrderedDict()
    base, extra = divmod(cell_count, len(subject_ids))
    return OrderedDict(
        (subject_id, base + (1 if position < extra else 0))
        for position, subject_id in enumerate(subject_ids)
    )


__all__ = [
    "AVAILABILITY",
    "CELL_TAKEN",
    "DOUBLE_BOOKING",
    "ELIGIBILITY",
    "HARD_CONSTRAINTS",
    "WORKLOAD_CAP",
    "ConstraintEngine",
    "Violation",
    "subject_quotas",
]
