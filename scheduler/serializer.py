"""Conversion between internal grids and the stored ``timetable_data`` JSON.

The display layer expects ``{"Monday": ["Maths", "English", ...], ...}``:
one key per day in template order and one subject name per teachable
period.  Breaks never appear in this shape.
"""

from __future__ import annotations

import json
from collections import Counter, OrderedDict
from typing import Any, Callable, Dict, List, Mapping

from .errors import ValidationError
from .models import Grid, Lesson, Template


def validate_timetable_data(data: Mapping[str, List[str]], template: Template) -> None:
    """Raise :class:`ValidationError` unless ``data`` fits ``template`` exactly."""
    if not isinstance(data, Mapping):
        raise ValidationError("Timetable data must be an object keyed by day.")
    days = list(data.keys())
    if days != list(template.day_names):
        raise ValidationError(
            f"Timetable days {days} do not match template days {list(template.day_names)}."
        )
    for day, subjects in data.items():
        if not isinstance(subjects, list):
            raise ValidationError(f"{day}: expected a list of subjects.")
        if len(subjects) != template.periods_per_day:
            raise ValidationError(
                f"{day}: expected {template.periods_per_day} periods, found {len(subjects)}."
            )
        for position, subject in enumerate(subjects, start=1):
            if not isinstance(subject, str) or not subject.strip():
                raise ValidationError(f"{day}: period {position} is empty.")


def serialize_grid(
    grid: Grid,
    template: Template,
    subject_name: Callable[[Any], str],
) -> "OrderedDict[str, List[str]]":
    """Render a complete grid as ``{day: [subject, ...]}``."""
    if (grid.days, grid.periods) != (template.days_per_week, template.periods_per_day):
        raise ValidationError(
            f"Grid is {grid.days} x {grid.periods} but the template is "
            f"{template.days_per_week} x {template.periods_per_day}."
        )
    data: "OrderedDict[str, List[str]]" = OrderedDict()
    for day, row in enumerate(grid.rows()):
        subjects = []
        for period, lesson in enumerate(row):
            if lesson is None:
                raise ValidationError(
                    f"Cannot serialize an incomplete timetable: {template.slot_label(day, period)} is empty."
                )
            subjects.append(subject_name(lesson.subject_id))
        data[template.day_names[day]] = subjects
    validate_timetable_data(data, template)
    return data


def serialize_assignments(grid: Grid, template: Template, working_set: Any) -> "OrderedDict[str, List[Dict[str, Any]]]":
    """Internal companion of :func:`serialize_grid` that keeps teacher ids."""
    data: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
    for day, row in enumerate(grid.rows()):
        data[template.day_names[day]] = [
            {
                "subject_id": lesson.subject_id,
                "subject": working_set.subject_name(lesson.subject_id),
                "teacher_id": lesson.teacher_id,
            }
            for lesson in row
            if lesson is not None
        ]
    return data


def grid_from_assignments(data: Mapping[str, List[Mapping[str, Any]]], template: Template) -> Grid:
    """Rebuild a :class:`Grid` from stored ``assignment_data``."""
    grid = Grid.for_template(template)
    for day, day_name in enumerate(template.day_names):
        for period, entry in enumerate(data.get(day_name, [])):
            grid.assign(day, period, Lesson(entry["subject_id"], entry["teacher_id"]))
    return grid


def dumps(data: Mapping[str, Any]) -> str:
    return json.dumps(data)


def loads(text: str) -> "OrderedDict[str, Any]":
    try:
        return json.loads(text, object_pairs_hook=OrderedDict)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Stored timetable is not valid JSON: {exc}") from exc


def tally_subjects(data: Mapping[str, List[str]]) -> Counter:
    return Counter(subject for subjects in data.values() for subject in subjects)


def tally_teachers(data: Mapping[str, List[str]], assignments: Mapping[str, List[Mapping[str, Any]]]) -> Counter:
    """Count lessons per teacher, checking each cell against ``data``."""
    counts: Counter = Counter()
    for day, subjects in data.items():
        entries = assignments.get(day, [])
        if len(entries) != len(subjects):
            raise ValidationError(f"{day}: subject and teacher rows differ in length.")
        for subject, entry in zip(subjects, entries):
            if entry.get("subject") != subject:
                raise ValidationError(f"{day}: teacher row disagrees with subject {subject!r}.")
            counts[entry["teacher_id"]] += 1
    return counts


def verify_round_trip(
    grid: Grid,
    data: Mapping[str, List[str]],
    template: Template,
    subject_name: Callable[[Any], str],
    assignments: Mapping[str, List[Mapping[str, Any]]],
) -> None:
    """Reload ``data`` and ``assignments`` from JSON and check they reproduce the grid.

    Subject and teacher tallies must match the grid exactly, and rebuilding a
    grid from the reloaded assignments must give back the same lessons.
    """
    reloaded = loads(dumps(data))
    validate_timetable_data(reloaded, template)
    expected: Counter = Counter()
    for subject_id, count in grid.subject_counts().items():
        expected[subject_name(subject_id)] += count
    if tally_subjects(reloaded) != expected:
        raise ValidationError(
            f"Serialized subject counts {dict(tally_subjects(reloaded))} differ from the grid's {dict(expected)}."
        )
    for (day, period), lesson in grid.items():
        if reloaded[template.day_names[day]][period] != subject_name(lesson.subject_id):
            raise ValidationError(f"{template.slot_label(day, period)} changed during serialization.")

    reloaded_assignments = loads(dumps(assignments))
    teachers = tally_teachers(reloaded, reloaded_assignments)
    if teachers != grid.teacher_counts():
        raise ValidationError(
            f"Serialized teacher counts {dict(teachers)} differ from the grid's {dict(grid.teacher_counts())}."
        )
    rebuilt = grid_from_assignments(reloaded_assignments, template)
    if dict(rebuilt.items()) != dict(grid.items()):
        raise ValidationError("Stored assignments do not rebuild the generated timetable.")


__all__ = [
    "dumps",
    "grid_from_assignments",
    "loads",
    "serialize_assignments",
    "serialize_grid",
    "tally_subjects",
    "tally_teachers",
    "validate_timetable_data",
    "verify_round_trip",
]
