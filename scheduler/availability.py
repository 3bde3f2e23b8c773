"""Teacher availability, eligibility and the run-wide busy matrix."""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from .errors import AvailabilityConfigError, ValidationError
from .models import Teacher, Template


Cell = Tuple[int, int]


class BusyMatrix:
    """Which teacher is teaching which stream in every ``(day, period)`` cell.

    One matrix is shared by all streams of a generation run and is threaded
    explicitly through the scheduler, so a teacher committed to one stream
    at ``Tue/P3`` is unavailable to every later stream at the same cell.
    Tests can build a partially filled matrix with :meth:`from_assignments`.
    """

    def __init__(self):
        self._cells: Dict[Any, Dict[Cell, Any]] = {}
        self._workload: Counter = Counter()

    @classmethod
    def from_assignments(cls, assignments: Iterable[Tuple[Any, int, int, Any]]) -> "BusyMatrix":
        """Build a matrix from ``(teacher_id, day, period, stream_id)`` tuples."""
        busy = cls()
        for teacher_id, day, period, stream_id in assignments:
            busy.occupy(teacher_id, day, period, stream_id)
        return busy

    def is_busy(self, teacher_id: Any, day: int, period: int) -> bool:
        return (day, period) in self._cells.get(teacher_id, {})

    def occupant(self, teacher_id: Any, day: int, period: int) -> Any:
        """Return the stream id holding ``teacher_id`` at the cell, if any."""
        return self._cells.get(teacher_id, {}).get((day, period))

    def occupy(self, teacher_id: Any, day: int, period: int, stream_id: Any = None) -> None:
        cells = self._cells.setdefault(teacher_id, {})
        if (day, period) in cells:
            raise ValidationError(
                f"Teacher {teacher_id} is already booked at day {day + 1}, period {period + 1}."
            )
        cells[(day, period)] = stream_id
        self._workload[teacher_id] += 1

    def release(self, teacher_id: Any, day: int, period: int) -> None:
        cells = self._cells.get(teacher_id, {})
        if (day, period) not in cells:
            raise ValidationError(
                f"Teacher {teacher_id} is not booked at day {day + 1}, period {period + 1}."
            )
        del cells[(day, period)]
        self._workload[teacher_id] -= 1

    def release_stream(self, stream_id: Any) -> int:
        """Drop every booking held by ``stream_id``; return how many were freed."""
        freed = 0
        for teacher_id, cells in self._cells.items():
            held = [cell for cell, owner in cells.items() if owner == stream_id]
            for cell in held:
                del cells[cell]
            self._workload[teacher_id] -= len(held)
            freed += len(held)
        return freed

    def workload(self, teacher_id: Any) -> int:
        return self._workload.get(teacher_id, 0)

    def workloads(self) -> Dict[Any, int]:
        return {tid: count for tid, count in self._workload.items() if count}

    def busy_cells(self, teacher_id: Any) -> Set[Cell]:
        return set(self._cells.get(teacher_id, {}))

    def copy(self) -> "BusyMatrix":
        clone = BusyMatrix()
        clone._cells = {tid: dict(cells) for tid, cells in self._cells.items()}
        clone._workload = Counter(self._workload)
        return clone


class AvailabilityIndex:
    """Read-only lookups over the teachers of one generation run.

    Built fresh for each run; holds no state that changes during search.
    Dynamic occupancy lives in :class:`BusyMatrix`.
    """

    def __init__(self, teachers: Iterable[Teacher], template: Template):
        self.template = template
        self._teachers: Dict[Any, Teacher] = {}
        self._order: Dict[Any, int] = {}
        self._by_subject: Dict[Any, List[Any]] = {}
        for position, teacher in enumerate(teachers):
            if teacher.availability is not None:
                self._check_mask(teacher)
            self._teachers[teacher.id] = teacher
            self._order[teacher.id] = position
            for subject_id in sorted(teacher.subject_ids, key=str):
                self._by_subject.setdefault(subject_id, []).append(teacher.id)

    def _check_mask(self, teacher: Teacher) -> None:
        mask = teacher.availability
        if len(mask) != self.template.days_per_week or any(
            len(row) != self.template.periods_per_day for row in mask
        ):
            raise AvailabilityConfigError(
                f"Availability of teacher '{teacher.name}' does not match the "
                f"{self.template.days_per_week} x {self.template.periods_per_day} template grid."
            )

    def teacher(self, teacher_id: Any) -> Optional[Teacher]:
        return self._teachers.get(teacher_id)

    def teacher_ids(self) -> List[Any]:
        return list(self._teachers)

    def eligible_subjects(self, teacher_id: Any) -> FrozenSet[Any]:
        teacher = self._teachers.get(teacher_id)
        return teacher.subject_ids if teacher is not None else frozenset()

    def is_eligible(self, teacher_id: Any, subject_id: Any) -> bool:
        return subject_id in self.eligible_subjects(teacher_id)

    def is_free(self, teacher_id: Any, day: int, period: int) -> bool:
        """Whether the teacher's own mask allows the cell (ignores bookings)."""
        teacher = self._teachers.get(teacher_id)
        if teacher is None:
            return False
        if teacher.availability is None:
            return True
        return teacher.availability[day][period]

    def free_cell_count(self, teacher_id: Any) -> int:
        teacher = self._teachers.get(teacher_id)
        if teacher is None:
            return 0
        if teacher.availability is None:
            return self.template.cell_count
        return sum(1 for row in teacher.availability for cell in row if cell)

    def max_lessons(self, teacher_id: Any) -> int:
        teacher = self._teachers.get(teacher_id)
        return teacher.max_lessons_per_week if teacher is not None else 0

    def teachers_for_subject(self, subject_id: Any) -> List[Any]:
        return list(self._by_subject.get(subject_id, []))

    def candidate_teachers(self, subject_id: Any, busy: Optional[BusyMatrix] = None) -> List[Any]:
        """Eligible teachers for ``subject_id``, least loaded first.

        Load is the run's running count when ``busy`` is given, otherwise the
        stored workload.  Ties keep the index's teacher order.
        """
        def load(tid):
            if busy is not None:
                return busy.workload(tid)
            return self._teachers[tid].workload

        return sorted(self._by_subject.get(subject_id, []), key=lambda tid: (load(tid), self._order[tid]))


__all__ = ["AvailabilityIndex", "BusyMatrix"]
