"""Domain types shared by the loader, the scheduler backends and the serializer.

Rows coming out of the database carry JSON columns (``break_config``,
``structure_config``, ``availability``).  They are parsed and validated
here, once, so the scheduler only ever sees typed values.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple

from .errors import AvailabilityConfigError, TemplateConfigError, ValidationError


DEFAULT_DAY_NAMES = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)

MIN_DAYS_PER_WEEK = 5
MAX_DAYS_PER_WEEK = 7


def _get(row: Any, key: str, default: Any = None) -> Any:
    """Read ``key`` from a dict or :class:`sqlite3.Row` without raising."""
    if row is None:
        return default
    if isinstance(row, dict):
        value = row.get(key, default)
    else:
        try:
            value = row[key]
        except (IndexError, KeyError):
            value = default
    return default if value is None else value


def _load_json(value: Any, default: Any, what: str) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (bytes, str)):
        try:
            return json.loads(value)
        except (TypeError, ValueError) as exc:
            raise TemplateConfigError(f"Invalid JSON in {what}: {exc}") from exc
    return value


def _parse_clock(value: str) -> int:
    """Return minutes after midnight for ``HH:MM`` or ``HH:MM:SS``."""
    try:
        parts = str(value).split(":")
        hours, minutes = int(parts[0]), int(parts[1])
    except (IndexError, TypeError, ValueError) as exc:
        raise TemplateConfigError(f"Invalid time of day {value!r}") from exc
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise TemplateConfigError(f"Invalid time of day {value!r}")
    return hours * 60 + minutes


def _format_clock(minutes: int) -> str:
    return f"{(minutes // 60) % 24:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class Break:
    """A non-teachable gap placed after ``after_period`` (1-based)."""

    after_period: int
    duration: int
    label: str = "Break"

    @classmethod
    def from_config(cls, entry: Any) -> "Break":
        if not isinstance(entry, dict):
            raise TemplateConfigError(f"Break entries must be objects, got {entry!r}")
        after = entry.get("after_period", entry.get("afterPeriod"))
        try:
            after = int(after)
            duration = int(entry.get("duration", 0))
        except (TypeError, ValueError) as exc:
            raise TemplateConfigError(f"Invalid break entry {entry!r}") from exc
        label = entry.get("label") or "Break"
        return cls(after_period=after, duration=duration, label=str(label))

    def as_dict(self) -> Dict[str, Any]:
        return {"after_period": self.after_period, "duration": self.duration, "label": self.label}


@dataclass(frozen=True)
class Template:
    """Weekly day/period/break layout used to build every stream's grid.

    Periods and days are addressed by zero-based indexes internally; labels
    shown to users are one-based (``Tue/P3``).  Breaks are markers between
    periods and never occupy a teachable slot.
    """

    id: Any
    name: str
    periods_per_day: int
    period_duration: int
    days_per_week: int
    start_time: str = "08:00"
    end_time: Optional[str] = None
    breaks: Tuple[Break, ...] = ()
    day_names: Tuple[str, ...] = ()
    subject_names: Tuple[str, ...] = ()
    school_type: Optional[str] = None

    def __post_init__(self):
        if not self.day_names and isinstance(self.days_per_week, int):
            object.__setattr__(self, "day_names", DEFAULT_DAY_NAMES[: self.days_per_week])
        object.__setattr__(self, "breaks", tuple(sorted(self.breaks, key=lambda b: b.after_period)))
        self.validate()

    def validate(self) -> None:
        if not isinstance(self.periods_per_day, int) or self.periods_per_day < 1:
            raise TemplateConfigError(
                f"Template '{self.name}': periods_per_day must be at least 1 (got {self.periods_per_day!r})."
            )
        if not isinstance(self.period_duration, int) or self.period_duration < 1:
            raise TemplateConfigError(
                f"Template '{self.name}': period_duration must be a positive number of minutes."
            )
        if not isinstance(self.days_per_week, int) or not (
            MIN_DAYS_PER_WEEK <= self.days_per_week <= MAX_DAYS_PER_WEEK
        ):
            raise TemplateConfigError(
                f"Template '{self.name}': days_per_week must be between "
                f"{MIN_DAYS_PER_WEEK} and {MAX_DAYS_PER_WEEK} (got {self.days_per_week!r})."
            )
        seen = set()
        for brk in self.breaks:
            if not 1 <= brk.after_period <= self.periods_per_day - 1:
                raise TemplateConfigError(
                    f"Template '{self.name}': break '{brk.label}' after period {brk.after_period} "
                    f"must fall between periods 1 and {self.periods_per_day - 1}."
                )
            if brk.after_period in seen:
                raise TemplateConfigError(
                    f"Template '{self.name}': more than one break after period {brk.after_period}."
                )
            if brk.duration < 0:
                raise TemplateConfigError(
                    f"Template '{self.name}': break '{brk.label}' has a negative duration."
                )
            seen.add(brk.after_period)
        if len(self.day_names) != self.days_per_week:
            raise TemplateConfigError(
                f"Template '{self.name}': {len(self.day_names)} day labels given "
                f"for {self.days_per_week} days per week."
            )
        if len(set(self.day_names)) != len(self.day_names):
            raise TemplateConfigError(f"Template '{self.name}': day labels must be unique.")
        _parse_clock(self.start_time)
        if self.end_time:
            _parse_clock(self.end_time)

    @classmethod
    def from_row(cls, row: Any) -> "Template":
        """Build a template from a ``templates`` row, validating its JSON columns."""
        name = str(_get(row, "name", "template"))
        raw_breaks = _load_json(_get(row, "break_config"), [], f"break_config of template '{name}'")
        if not isinstance(raw_breaks, list):
            raise TemplateConfigError(f"Template '{name}': break_config must be a list.")
        structure = _load_json(_get(row, "structure_config"), {}, f"structure_config of template '{name}'")
        if not isinstance(structure, dict):
            raise TemplateConfigError(f"Template '{name}': structure_config must be an object.")
        days = structure.get("days") or ()
        subjects = structure.get("subjects") or ()
        if not isinstance(days, (list, tuple)) or not isinstance(subjects, (list, tuple)):
            raise TemplateConfigError(f"Template '{name}': structure_config days/subjects must be lists.")
        try:
            periods = int(_get(row, "periods_per_day"))
            duration = int(_get(row, "period_duration"))
            days_per_week = int(_get(row, "days_per_week", 5))
        except (TypeError, ValueError) as exc:
            raise TemplateConfigError(f"Template '{name}': numeric layout fields are missing.") from exc
        return cls(
            id=_get(row, "id"),
            name=name,
            periods_per_day=periods,
            period_duration=duration,
            days_per_week=days_per_week,
            start_time=str(_get(row, "start_time", "08:00")),
            end_time=_get(row, "end_time"),
            breaks=tuple(Break.from_config(entry) for entry in raw_breaks),
            day_names=tuple(str(d) for d in days),
            subject_names=tuple(str(s).strip() for s in subjects if str(s).strip()),
            school_type=_get(row, "school_type"),
        )

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "Template":
        """Inverse of :meth:`snapshot`."""
        return cls.from_row({
            "id": data.get("id"),
            "name": data.get("name"),
            "periods_per_day": data.get("periods_per_day"),
            "period_duration": data.get("period_duration"),
            "days_per_week": data.get("days_per_week"),
            "start_time": data.get("start_time"),
            "end_time": data.get("end_time"),
            "break_config": data.get("breaks") or [],
            "structure_config": {"days": data.get("days") or [], "subjects": data.get("subjects") or []},
            "school_type": data.get("school_type"),
        })

    @property
    def cell_count(self) -> int:
        return self.periods_per_day * self.days_per_week

    def cells(self) -> List[Tuple[int, int]]:
        """Teachable ``(day, period)`` cells, day-major then period-ascending."""
        return [
            (day, period)
            for day in range(self.days_per_week)
            for period in range(self.periods_per_day)
        ]

    def slot_label(self, day: int, period: int) -> str:
        return f"{self.day_names[day][:3]}/P{period + 1}"

    def break_after(self, period_number: int) -> Optional[Break]:
        for brk in self.breaks:
            if brk.after_period == period_number:
                return brk
        return None

    def period_times(self) -> List[str]:
        """``HH:MM-HH:MM`` labels for each teachable period, skipping breaks."""
        labels = []
        start = _parse_clock(self.start_time)
        for number in range(1, self.periods_per_day + 1):
            end = start + self.period_duration
            labels.append(f"{_format_clock(start)}-{_format_clock(end)}")
            start = end
            brk = self.break_after(number)
            if brk is not None:
                start += brk.duration
        return labels

    def snapshot(self) -> Dict[str, Any]:
        """JSON-ready copy stored alongside every generated timetable."""
        return {
            "id": self.id,
            "name": self.name,
            "periods_per_day": self.periods_per_day,
            "period_duration": self.period_duration,
            "days_per_week": self.days_per_week,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "breaks": [brk.as_dict() for brk in self.breaks],
            "days": list(self.day_names),
            "subjects": list(self.subject_names),
            "school_type": self.school_type,
        }


DEFAULT_TEMPLATE = Template(
    id=None,
    name="classic",
    periods_per_day=8,
    period_duration=40,
    days_per_week=5,
    start_time="08:00",
    end_time="14:20",
    breaks=(Break(2, 15, "Break"), Break(5, 45, "Lunch")),
)


@dataclass(frozen=True)
class School:
    id: Any
    name: str
    template_id: Any = None
    school_type: Optional[str] = None


@dataclass(frozen=True)
class Subject:
    id: Any
    name: str


@dataclass(frozen=True)
class Teacher:
    """A teacher as seen by one generation run.

    ``availability`` is ``None`` when the teacher is free in every cell,
    otherwise a ``days x periods`` matrix of booleans (``True`` = free).
    """

    id: Any
    name: str
    max_lessons_per_week: int
    subject_ids: FrozenSet[Any] = frozenset()
    email: str = ""
    workload: int = 0
    availability: Optional[Tuple[Tuple[bool, ...], ...]] = None


@dataclass(frozen=True)
class Stream:
    id: Any
    grade: int
    stream_name: str
    subject_ids: Tuple[Any, ...] = ()
    class_teacher_id: Any = None

    @property
    def name(self) -> str:
        return f"Grade {self.grade} - {self.stream_name}"


@dataclass(frozen=True)
class Lesson:
    """What a single grid cell holds."""

    subject_id: Any
    teacher_id: Any


def parse_availability(raw: Any, template: Template, teacher_name: str = "") -> Optional[Tuple[Tuple[bool, ...], ...]]:
    """Turn a stored availability mask into a ``days x periods`` matrix.

    Accepted shapes are ``None`` (always free), ``{"Monday": [1, 2], ...}``
    listing the free one-based periods per day (days not listed are not
    free), or a nested list of booleans with one row per day.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise AvailabilityConfigError(f"Teacher '{teacher_name}' has an unreadable availability mask.") from exc
    if raw is None:
        return None
    days, periods = template.days_per_week, template.periods_per_day
    if isinstance(raw, dict):
        unknown = [day for day in raw if day not in template.day_names]
        if unknown:
            raise AvailabilityConfigError(
                f"Teacher '{teacher_name}' availability names unknown day(s): {', '.join(map(str, unknown))}."
            )
        rows = []
        for day_name in template.day_names:
            free = raw.get(day_name) or []
            if not isinstance(free, (list, tuple)):
                raise AvailabilityConfigError(f"Teacher '{teacher_name}' availability for {day_name} must be a list.")
            try:
                numbers = {int(p) for p in free}
            except (TypeError, ValueError) as exc:
                raise AvailabilityConfigError(
                    f"Teacher '{teacher_name}' availability for {day_name} must list period numbers."
                ) from exc
            rows.append(tuple(p + 1 in numbers for p in range(periods)))
        return tuple(rows)
    if isinstance(raw, list):
        if len(raw) != days or any(not isinstance(row, list) or len(row) != periods for row in raw):
            raise AvailabilityConfigError(
                f"Teacher '{teacher_name}' availability matrix must be {days} x {periods}."
            )
        return tuple(tuple(bool(cell) for cell in row) for row in raw)
    raise AvailabilityConfigError(f"Teacher '{teacher_name}' availability mask has an unsupported shape.")


class Grid:
    """One stream's ``days x periods`` assignment grid."""

    def __init__(self, days: int, periods: int):
        self.days = days
        self.periods = periods
        self._cells: Dict[Tuple[int, int], Lesson] = {}

    @classmethod
    def for_template(cls, template: Template) -> "Grid":
        return cls(template.days_per_week, template.periods_per_day)

    def get(self, day: int, period: int) -> Optional[Lesson]:
        return self._cells.get((day, period))

    def is_filled(self, day: int, period: int) -> bool:
        return (day, period) in self._cells

    def assign(self, day: int, period: int, lesson: Lesson) -> None:
        if not (0 <= day < self.days and 0 <= period < self.periods):
            raise ValidationError(f"Cell ({day}, {period}) lies outside the grid.")
        if (day, period) in self._cells:
            raise ValidationError(f"Cell ({day}, {period}) is already assigned.")
        self._cells[(day, period)] = lesson

    def clear(self, day: int, period: int) -> Lesson:
        return self._cells.pop((day, period))

    def is_complete(self) -> bool:
        return len(self._cells) == self.days * self.periods

    def items(self) -> Iterator[Tuple[Tuple[int, int], Lesson]]:
        for key in sorted(self._cells):
            yield key, self._cells[key]

    def rows(self) -> List[List[Optional[Lesson]]]:
        return [[self._cells.get((d, p)) for p in range(self.periods)] for d in range(self.days)]

    def subject_counts(self) -> Counter:
        return Counter(lesson.subject_id for lesson in self._cells.values())

    def teacher_counts(self) -> Counter:
        return Counter(lesson.teacher_id for lesson in self._cells.values())

    def __len__(self) -> int:
        return len(self._cells)


@dataclass
class WorkingSet:
    """Everything one generation run needs for a single school."""

    school: School
    template: Template
    teachers: Tuple[Teacher, ...]
    subjects: Tuple[Subject, ...]
    streams: Tuple[Stream, ...]
    subject_lookup: Dict[Any, Subject] = field(init=False, repr=False)
    teacher_lookup: Dict[Any, Teacher] = field(init=False, repr=False)

    def __post_init__(self):
        self.subject_lookup = {subject.id: subject for subject in self.subjects}
        self.teacher_lookup = {teacher.id: teacher for teacher in self.teachers}

    def subject_name(self, subject_id: Any) -> str:
        subject = self.subject_lookup.get(subject_id)
        return subject.name if subject is not None else str(subject_id)

    def teacher_name(self, teacher_id: Any) -> str:
        teacher = self.teacher_lookup.get(teacher_id)
        return teacher.name if teacher is not None else str(teacher_id)


__all__ = [
    "DEFAULT_DAY_NAMES",
    "DEFAULT_TEMPLATE",
    "Break",
    "Template",
    "School",
    "Subject",
    "Teacher",
    "Stream",
    "Lesson",
    "Grid",
    "WorkingSet",
    "parse_availability",
]
