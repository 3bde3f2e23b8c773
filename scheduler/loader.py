"""Load the working set for one school from the relational store.

Only plain DB-API calls are used so the scheduler can run against any
``sqlite3`` connection, including the temporary databases used in tests.
Rows are read with ``sqlite3.Row`` style name access.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set

from .errors import IncompleteSetupError, NotFoundError, ValidationError
from .models import (
    DEFAULT_TEMPLATE,
    School,
    Stream,
    Subject,
    Teacher,
    Template,
    WorkingSet,
    parse_availability,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_LESSONS = 30


def _rows(conn, sql: str, params=()) -> List[Any]:
    cur = conn.execute(sql, params)
    return cur.fetchall()


def load_template(conn, template_ref: Optional[str]) -> Template:
    """Resolve a school's ``timetable_template`` value to a :class:`Template`.

    ``None`` (or the built-in ``classic`` name) selects the default layout;
    anything else must be the id of a row in ``templates``.
    """
    if not template_ref or template_ref == DEFAULT_TEMPLATE.name:
        return DEFAULT_TEMPLATE
    rows = _rows(conn, "SELECT * FROM templates WHERE id=?", (template_ref,))
    if not rows:
        raise NotFoundError(f"Template '{template_ref}' does not exist.")
    return Template.from_row(rows[0])


def required_subjects(template: Template, subjects: List[Subject]) -> List[Any]:
    """Subjects every stream must be taught, in round-robin order.

    The template's subject list wins when it names any of the school's
    subjects; otherwise all school subjects are used in name order.
    """
    if not template.subject_names:
        return [subject.id for subject in subjects]
    by_name = {subject.name.lower(): subject.id for subject in subjects}
    chosen: List[Any] = []
    for name in template.subject_names:
        subject_id = by_name.get(name.lower())
        if subject_id is None:
            logger.warning("Template '%s' lists subject %r which the school does not offer", template.name, name)
            continue
        if subject_id not in chosen:
            chosen.append(subject_id)
    return chosen


def load_working_set(conn, school_id: Any, *, default_max_lessons: int = DEFAULT_MAX_LESSONS) -> WorkingSet:
    """Return everything needed to generate timetables for ``school_id``.

    Raises :class:`NotFoundError` for an unknown school or template and
    :class:`IncompleteSetupError` when there are no teachers, streams or
    subjects to work with.  Nothing is written.
    """
    rows = _rows(conn, "SELECT * FROM schools WHERE id=?", (school_id,))
    if not rows:
        raise NotFoundError(f"School '{school_id}' does not exist.")
    row = rows[0]
    school = School(
        id=row["id"],
        name=row["name"],
        template_id=row["timetable_template"],
        school_type=row["type"],
    )
    template = load_template(conn, school.template_id)

    subjects = [
        Subject(id=r["id"], name=r["name"])
        for r in _rows(conn, "SELECT id, name FROM subjects WHERE school_id=? ORDER BY name, id", (school_id,))
    ]
    subject_ids: Set[Any] = {subject.id for subject in subjects}

    links: Dict[Any, Set[Any]] = {}
    for r in _rows(
        conn,
        "SELECT ts.teacher_id, ts.subject_id FROM teacher_subjects ts "
        "JOIN teachers t ON t.id = ts.teacher_id WHERE t.school_id=?",
        (school_id,),
    ):
        if r["subject_id"] in subject_ids:
            links.setdefault(r["teacher_id"], set()).add(r["subject_id"])

    teachers = []
    for r in _rows(conn, "SELECT * FROM teachers WHERE school_id=? ORDER BY name, id", (school_id,)):
        cap = r["max_lessons_per_week"]
        try:
            cap = int(cap) if cap is not None else int(default_max_lessons)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Teacher '{r['name']}' has an invalid max_lessons_per_week.") from exc
        if cap < 0:
            raise ValidationError(f"Teacher '{r['name']}' has a negative max_lessons_per_week.")
        teachers.append(Teacher(
            id=r["id"],
            name=r["name"],
            email=r["email"] or "",
            max_lessons_per_week=cap,
            workload=r["workload"] or 0,
            subject_ids=frozenset(links.get(r["id"], ())),
            availability=parse_availability(r["availability"], template, r["name"]),
        ))

    stream_rows = _rows(conn, "SELECT * FROM streams WHERE school_id=? ORDER BY grade, stream_name, id", (school_id,))
    if not teachers:
        raise IncompleteSetupError("Please add teachers before generating timetables.")
    if not stream_rows:
        raise IncompleteSetupError("Please create streams before generating timetables.")

    class_teachers: Dict[Any, Any] = {}
    for r in _rows(
        conn,
        "SELECT tr.stream_id, tr.teacher_id FROM teacher_responsibilities tr "
        "JOIN streams s ON s.id = tr.stream_id WHERE s.school_id=? ORDER BY tr.id",
        (school_id,),
    ):
        class_teachers.setdefault(r["stream_id"], r["teacher_id"])

    required = tuple(required_subjects(template, subjects))
    if not required:
        raise IncompleteSetupError("Please add subjects before generating timetables.")

    streams = tuple(
        Stream(
            id=r["id"],
            grade=r["grade"],
            stream_name=r["stream_name"],
            subject_ids=required,
            class_teacher_id=class_teachers.get(r["id"]),
        )
        for r in stream_rows
    )
    logger.debug(
        "Loaded school %s: %d teachers, %d subjects, %d streams, template %s",
        school_id, len(teachers), len(subjects), len(streams), template.name,
    )
    return WorkingSet(
        school=school,
        template=template,
        teachers=tuple(teachers),
        subjects=tuple(subjects),
        streams=streams,
    )


__all__ = ["DEFAULT_MAX_LESSONS", "load_template", "load_working_set", "required_subjects"]
