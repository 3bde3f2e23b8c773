import os
import sys
import json

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from scheduler.errors import AvailabilityConfigError, TemplateConfigError, ValidationError
from scheduler.models import (
    DEFAULT_TEMPLATE,
    Break,
    Grid,
    Lesson,
    Stream,
    Template,
    parse_availability,
)


def template_row(**overrides):
    row = {
        'id': 'tpl-1',
        'name': 'Primary',
        'periods_per_day': 6,
        'period_duration': 45,
        'days_per_week': 5,
        'start_time': '08:30',
        'end_time': None,
        'break_config': json.dumps([{'afterPeriod': 3, 'duration': 20, 'label': 'Recess'}]),
        'structure_config': json.dumps({'subjects': ['Maths', 'English']}),
        'school_type': 'primary',
    }
    row.update(overrides)
    return row


def test_from_row_parses_json_columns():
    tpl = Template.from_row(template_row())
    assert tpl.periods_per_day == 6
    assert tpl.breaks == (Break(3, 20, 'Recess'),)
    assert tpl.subject_names == ('Maths', 'English')
    assert tpl.day_names == ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday')
    assert tpl.cell_count == 30


def test_break_config_accepts_snake_case_keys():
    tpl = Template.from_row(template_row(break_config=[{'after_period': 2, 'duration': 10}]))
    assert tpl.break_after(2).label == 'Break'
    assert tpl.break_after(3) is None


@pytest.mark.parametrize('overrides', [
    {'periods_per_day': 0},
    {'days_per_week': 4},
    {'days_per_week': 8},
    {'period_duration': 0},
    {'break_config': json.dumps([{'afterPeriod': 6, 'duration': 10}])},
    {'break_config': json.dumps([{'afterPeriod': 0, 'duration': 10}])},
    {'break_config': json.dumps([{'afterPeriod': 2, 'duration': 10}, {'afterPeriod': 2, 'duration': 5}])},
    {'break_config': '{not json'},
    {'break_config': json.dumps({'afterPeriod': 2})},
    {'structure_config': json.dumps({'days': ['Mon', 'Tue']})},
    {'start_time': '25:00'},
])
def test_invalid_templates_are_rejected(overrides):
    with pytest.raises(TemplateConfigError):
        Template.from_row(template_row(**overrides))


def test_template_config_error_is_a_validation_error():
    assert issubclass(TemplateConfigError, ValidationError)


def test_custom_day_labels():
    days = ['Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri']
    tpl = Template.from_row(template_row(days_per_week=6, structure_config={'days': days}))
    assert tpl.day_names == tuple(days)
    assert tpl.slot_label(2, 2) == 'Tue/P3'


def test_default_template_times_skip_breaks():
    times = DEFAULT_TEMPLATE.period_times()
    assert len(times) == 8
    assert times[0] == '08:00-08:40'
    assert times[2] == '09:35-10:15'
    assert times[5] == '12:20-13:00'
    assert times[-1] == '13:40-14:20'


def test_snapshot_round_trip():
    tpl = Template.from_row(template_row())
    again = Template.from_snapshot(json.loads(json.dumps(tpl.snapshot())))
    assert again == tpl


def test_stream_display_name():
    assert Stream(id=1, grade=7, stream_name='East').name == 'Grade 7 - East'


def test_parse_availability_by_day_name():
    tpl = Template.from_row(template_row(break_config=None))
    mask = parse_availability(json.dumps({'Monday': [1, 2], 'Friday': [6]}), tpl, 'Ann')
    assert mask[0] == (True, True, False, False, False, False)
    assert mask[1] == (False,) * 6
    assert mask[4][5] is True


def test_parse_availability_matrix_and_null():
    tpl = Template.from_row(template_row())
    assert parse_availability(None, tpl) is None
    assert parse_availability('null', tpl) is None
    matrix = [[True] * 6 for _ in range(5)]
    matrix[2][0] = False
    mask = parse_availability(matrix, tpl)
    assert mask[2][0] is False
    assert mask[0][0] is True


@pytest.mark.parametrize('raw', [
    '{"Caturday": [1]}',
    '[[true, false]]',
    '"always"',
    '{"Monday": "1,2"}',
    'not json',
])
def test_parse_availability_rejects_bad_masks(raw):
    tpl = Template.from_row(template_row())
    with pytest.raises(AvailabilityConfigError) as excinfo:
        parse_availability(raw, tpl, 'Ann')
    assert 'Ann' in str(excinfo.value)
    assert excinfo.value.status_code == 422


def test_grid_refuses_double_assignment_and_out_of_range():
    grid = Grid(5, 2)
    grid.assign(0, 0, Lesson('s1', 't1'))
    with pytest.raises(ValidationError):
        grid.assign(0, 0, Lesson('s2', 't2'))
    with pytest.raises(ValidationError):
        grid.assign(5, 0, Lesson('s2', 't2'))
    assert grid.clear(0, 0) == Lesson('s1', 't1')
    assert len(grid) == 0
    assert not grid.is_complete()
