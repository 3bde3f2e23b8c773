import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from scheduler.availability import AvailabilityIndex, BusyMatrix
from scheduler.constraints import (
    AVAILABILITY,
    CELL_TAKEN,
    DOUBLE_BOOKING,
    ELIGIBILITY,
    WORKLOAD_CAP,
    ConstraintEngine,
    subject_quotas,
)
from scheduler.models import Grid, Lesson, Teacher, Template


TEMPLATE = Template(id=None, name='small', periods_per_day=4, period_duration=40, days_per_week=5)
NAMES = {
    'maths': 'Maths', 'art': 'Art', 'science': 'Science',
    'ann': 'Ann', 'ben': 'Ben', 'cy': 'Cy',
    's1': 'Grade 1 - A', 's2': 'Grade 1 - B',
}


def make_engine(teachers, busy=None):
    index = AvailabilityIndex(teachers, TEMPLATE)
    busy = busy if busy is not None else BusyMatrix()
    return ConstraintEngine(
        index, busy,
        subject_name=NAMES.get, teacher_name=NAMES.get, stream_name=NAMES.get,
    )


def ann(**kwargs):
    fields = dict(id='ann', name='Ann', max_lessons_per_week=20, subject_ids=frozenset({'maths'}))
    fields.update(kwargs)
    return Teacher(**fields)


def test_check_accepts_valid_placement():
    engine = make_engine([ann()])
    assert engine.check(Grid.for_template(TEMPLATE), 'maths', 'ann', 0, 0) is None


def test_check_reports_each_hard_rule():
    teacher = ann(availability=tuple(tuple(not (d == 1 and p == 2) for p in range(4)) for d in range(5)))
    busy = BusyMatrix.from_assignments([('ann', 0, 1, 's2')])
    engine = make_engine([teacher], busy)
    grid = Grid.for_template(TEMPLATE)
    grid.assign(0, 0, Lesson('maths', 'ann'))

    assert engine.check(grid, 'maths', 'ann', 0, 0).kind == CELL_TAKEN
    assert engine.check(grid, 'art', 'ann', 0, 2).kind == ELIGIBILITY
    unavailable = engine.check(grid, 'maths', 'ann', 1, 2)
    assert unavailable.kind == AVAILABILITY
    assert 'Tue/P3' in unavailable.message
    booked = engine.check(grid, 'maths', 'ann', 0, 1)
    assert booked.kind == DOUBLE_BOOKING
    assert 'Grade 1 - B' in booked.message


def test_workload_cap_allows_reaching_the_limit():
    busy = BusyMatrix.from_assignments([('ann', 0, 0, 's2')])
    engine = make_engine([ann(max_lessons_per_week=2)], busy)
    grid = Grid.for_template(TEMPLATE)
    assert engine.check(grid, 'maths', 'ann', 0, 1) is None
    busy.occupy('ann', 0, 1, 's1')
    violation = engine.check(grid, 'maths', 'ann', 0, 2)
    assert violation.kind == WORKLOAD_CAP
    assert 'limit of 2' in violation.message


def test_rank_subjects_demotes_back_to_back_repeat():
    engine = make_engine([ann()])
    grid = Grid.for_template(TEMPLATE)
    grid.assign(0, 0, Lesson('maths', 'ann'))
    assert engine.rank_subjects(grid, ['maths', 'art'], 0, 1) == ['art', 'maths']
    # A new day has no previous period.
    assert engine.rank_subjects(grid, ['maths', 'art'], 1, 0) == ['maths', 'art']


def test_candidates_are_ranked_by_workload():
    ben = Teacher(id='ben', name='Ben', max_lessons_per_week=20, subject_ids=frozenset({'maths'}))
    busy = BusyMatrix.from_assignments([('ann', 4, 3, 's2')])
    engine = make_engine([ann(), ben], busy)
    assert engine.candidates(Grid.for_template(TEMPLATE), ['maths'], 0, 0) == [('maths', 'ben'), ('maths', 'ann')]


def test_explain_names_subject_and_slot():
    busy = BusyMatrix.from_assignments([('ann', 1, 2, 's2')])
    engine = make_engine([ann()], busy)
    violation = engine.explain(Grid.for_template(TEMPLATE), 'maths', 1, 2)
    assert violation.kind == DOUBLE_BOOKING
    assert violation.message.startswith('no eligible teacher free for Maths at Tue/P3')

    missing = engine.explain(Grid.for_template(TEMPLATE), 'art', 0, 0)
    assert missing.kind == ELIGIBILITY
    assert 'Art' in missing.message


def test_completion_check_reports_cap_and_missing_teacher():
    cells = TEMPLATE.cells()[:10]
    grid = Grid.for_template(TEMPLATE)
    capped = make_engine([ann(max_lessons_per_week=2)])
    violation = capped.completion_shortfall(grid, {'maths': 10}, cells)
    assert violation.kind == WORKLOAD_CAP
    assert violation.subject_id == 'maths'
    assert capped.completion_shortfall(grid, {'maths': 2}, cells[:2]) is None

    missing = make_engine([ann()]).completion_shortfall(grid, {'maths': 9, 'art': 1}, cells)
    assert missing.kind == ELIGIBILITY
    assert 'Art' in missing.message


MONDAY_ONLY = tuple((day == 0,) * 4 for day in range(5))


def monday_school(busy=None):
    teachers = [
        ann(availability=MONDAY_ONLY),
        Teacher(id='ben', name='Ben', max_lessons_per_week=20, subject_ids=frozenset({'art'}),
                availability=MONDAY_ONLY),
        Teacher(id='cy', name='Cy', max_lessons_per_week=20, subject_ids=frozenset({'science'})),
    ]
    return make_engine(teachers, busy)


def test_completion_check_accepts_fitting_quotas():
    engine = monday_school()
    remaining = {'maths': 2, 'art': 2, 'science': 16}
    grid = Grid.for_template(TEMPLATE)
    assert engine.placeable(grid, remaining, TEMPLATE.cells()) == remaining
    assert engine.completion_shortfall(grid, remaining, TEMPLATE.cells()) is None


def test_completion_check_sees_subjects_competing_for_periods():
    # Maths and art each fit into Monday alone but not together.
    engine = monday_school()
    remaining = {'maths': 3, 'art': 3, 'science': 14}
    grid = Grid.for_template(TEMPLATE)
    placed = engine.placeable(grid, remaining, TEMPLATE.cells())
    assert placed['maths'] + placed['art'] == 4
    assert placed['science'] == 14
    violation = engine.completion_shortfall(grid, remaining, TEMPLATE.cells())
    assert violation.kind == AVAILABILITY
    assert violation.subject_id in ('maths', 'art')
    assert 'still needs 3 lessons' in violation.message


def test_completion_check_names_bookings_in_other_streams():
    engine = monday_school(BusyMatrix.from_assignments([('ann', 0, 0, 's2')]))
    remaining = {'maths': 4, 'science': 16}
    violation = engine.completion_shortfall(Grid.for_template(TEMPLATE), remaining, TEMPLATE.cells())
    assert violation.kind == DOUBLE_BOOKING
    assert violation.subject_id == 'maths'


def test_completion_check_only_counts_open_cells():
    engine = monday_school()
    grid = Grid.for_template(TEMPLATE)
    grid.assign(0, 0, Lesson('science', 'cy'))
    cells = TEMPLATE.cells()[1:]
    assert engine.placeable(grid, {'maths': 3, 'science': 16}, cells) == {'maths': 3, 'science': 16}
    violation = engine.completion_shortfall(grid, {'maths': 4, 'science': 15}, cells)
    assert violation.kind == AVAILABILITY
    assert 'available in only 3' in violation.message


def test_audit_flags_cross_stream_clash_and_cap():
    engine = make_engine([ann(max_lessons_per_week=1)])
    first = Grid.for_template(TEMPLATE)
    first.assign(0, 0, Lesson('maths', 'ann'))
    second = Grid.for_template(TEMPLATE)
    second.assign(0, 0, Lesson('maths', 'ann'))
    second.assign(0, 1, Lesson('art', 'ann'))
    kinds = sorted(v.kind for v in engine.audit({'s1': first, 's2': second}))
    assert kinds == sorted([DOUBLE_BOOKING, ELIGIBILITY, WORKLOAD_CAP])
    assert engine.audit({'s1': first}) == []


def test_subject_quotas_spread_evenly():
    assert list(subject_quotas(['a', 'b', 'c'], 30).values()) == [10, 10, 10]
    assert list(subject_quotas(['a', 'b', 'c', 'd'], 30).values()) == [8, 8, 7, 7]
    assert subject_quotas([], 30) == {}
