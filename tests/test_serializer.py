import os
import sys
import json

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from scheduler import api
from scheduler.errors import ValidationError
from scheduler.models import Break, Grid, Lesson, School, Stream, Subject, Teacher, Template, WorkingSet
from scheduler.serializer import (
    dumps,
    grid_from_assignments,
    loads,
    serialize_assignments,
    serialize_grid,
    tally_subjects,
    tally_teachers,
    validate_timetable_data,
    verify_round_trip,
)


NAMES = {'maths': 'Maths', 'art': 'Art'}
TEMPLATE = Template(id=None, name='short', periods_per_day=2, period_duration=40, days_per_week=5)
WORKING_SET = WorkingSet(
    school=School(id=1, name='Hillside'),
    template=TEMPLATE,
    teachers=(),
    subjects=(Subject('maths', 'Maths'), Subject('art', 'Art')),
    streams=(),
)


def full_grid(template=TEMPLATE):
    grid = Grid.for_template(template)
    for day, period in template.cells():
        subject = 'maths' if (day + period) % 2 == 0 else 'art'
        grid.assign(day, period, Lesson(subject, 't-' + subject))
    return grid


def test_serialize_grid_keys_days_in_template_order():
    data = serialize_grid(full_grid(), TEMPLATE, NAMES.get)
    assert list(data) == ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday']
    assert data['Monday'] == ['Maths', 'Art']
    assert data['Tuesday'] == ['Art', 'Maths']


def test_break_takes_no_subject_slot():
    template = Template(id=None, name='with-break', periods_per_day=6, period_duration=40,
                        days_per_week=5, breaks=(Break(3, 20, 'Recess'),))
    ws = WorkingSet(
        school=School(id=1, name='Hillside'),
        template=template,
        teachers=(
            Teacher(id='ann', name='Ann', max_lessons_per_week=30, subject_ids=frozenset({'maths'})),
            Teacher(id='ben', name='Ben', max_lessons_per_week=30, subject_ids=frozenset({'art'})),
        ),
        subjects=(Subject('maths', 'Maths'), Subject('art', 'Art')),
        streams=(Stream(id='s1', grade=1, stream_name='A', subject_ids=('maths', 'art')),),
    )
    summary = api.schedule_school(ws)
    data = summary.completed[0].timetable_data
    assert all(len(subjects) == 6 for subjects in data.values())
    assert 'Recess' not in json.dumps(data)


def test_incomplete_grid_is_not_serialized():
    grid = full_grid()
    grid.clear(2, 1)
    with pytest.raises(ValidationError) as excinfo:
        serialize_grid(grid, TEMPLATE, NAMES.get)
    assert 'Wed/P2' in str(excinfo.value)


def test_grid_shape_must_match_template():
    with pytest.raises(ValidationError):
        serialize_grid(Grid(5, 3), TEMPLATE, NAMES.get)


@pytest.mark.parametrize('data', [
    {'Monday': ['Maths', 'Art']},
    {day: ['Maths'] for day in ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday']},
    {day: ['Maths', ''] for day in ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday']},
    {day: ['Maths', None] for day in ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday']},
    ['Maths', 'Art'],
])
def test_validate_rejects_malformed_data(data):
    with pytest.raises(ValidationError):
        validate_timetable_data(data, TEMPLATE)


def test_round_trip_reproduces_tallies():
    grid = full_grid()
    data = serialize_grid(grid, TEMPLATE, NAMES.get)
    assignments = serialize_assignments(grid, TEMPLATE, WORKING_SET)
    verify_round_trip(grid, data, TEMPLATE, NAMES.get, assignments)
    reloaded = loads(dumps(data))
    assert tally_subjects(reloaded) == {'Maths': 5, 'Art': 5}


def test_round_trip_detects_tampering():
    grid = full_grid()
    data = serialize_grid(grid, TEMPLATE, NAMES.get)
    assignments = serialize_assignments(grid, TEMPLATE, WORKING_SET)
    data['Friday'] = ['Art', 'Art']
    with pytest.raises(ValidationError):
        verify_round_trip(grid, data, TEMPLATE, NAMES.get, assignments)


def test_round_trip_checks_teacher_assignments():
    grid = full_grid()
    data = serialize_grid(grid, TEMPLATE, NAMES.get)
    assignments = serialize_assignments(grid, TEMPLATE, WORKING_SET)
    assignments['Monday'][0]['teacher_id'] = 't-art'
    with pytest.raises(ValidationError) as excinfo:
        verify_round_trip(grid, data, TEMPLATE, NAMES.get, assignments)
    assert 'teacher counts' in str(excinfo.value)


def test_round_trip_checks_assignment_placement():
    # Swapping two maths lessons keeps every tally but moves a teacher.
    grid = Grid.for_template(TEMPLATE)
    for day, period in TEMPLATE.cells():
        grid.assign(day, period, Lesson('maths', 'ann' if period == 0 else 'ben'))
    data = serialize_grid(grid, TEMPLATE, NAMES.get)
    assignments = serialize_assignments(grid, TEMPLATE, WORKING_SET)
    assignments['Monday'].reverse()
    with pytest.raises(ValidationError) as excinfo:
        verify_round_trip(grid, data, TEMPLATE, NAMES.get, assignments)
    assert 'rebuild' in str(excinfo.value)


def test_assignments_keep_teachers():
    grid = full_grid()
    ws = WORKING_SET
    data = serialize_grid(grid, TEMPLATE, ws.subject_name)
    assignments = serialize_assignments(grid, TEMPLATE, ws)
    assert assignments['Monday'][0] == {'subject_id': 'maths', 'subject': 'Maths', 'teacher_id': 't-maths'}
    assert tally_teachers(data, assignments) == grid.teacher_counts()

    rebuilt = grid_from_assignments(loads(dumps(assignments)), TEMPLATE)
    assert list(rebuilt.items()) == list(grid.items())


def test_loads_rejects_bad_json():
    with pytest.raises(ValidationError):
        loads('{"Monday": [')
