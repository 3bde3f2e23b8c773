"""Tests for the backend selection helpers exposed by :mod:`scheduler.api`."""

from __future__ import annotations

import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from scheduler import api, backtracking
from scheduler.models import School, Stream, Subject, Teacher, Template, WorkingSet


def tiny_working_set():
    return WorkingSet(
        school=School(id=1, name='Hillside'),
        template=Template(id=None, name='tiny', periods_per_day=1, period_duration=40, days_per_week=5),
        teachers=(Teacher(id='ann', name='Ann', max_lessons_per_week=5, subject_ids=frozenset({'maths'})),),
        subjects=(Subject('maths', 'Maths'),),
        streams=(Stream(id='s1', grade=1, stream_name='A', subject_ids=('maths',)),),
    )


def test_default_backend_is_backtracking():
    """The default backend should resolve to the backtracking implementation."""

    assert api.get_backend() is backtracking


def test_unknown_backend_raises_clear_error():
    """Requesting an unsupported backend should raise a descriptive error."""

    with pytest.raises(ValueError) as excinfo:
        api.get_backend("unknown")
    message = str(excinfo.value)
    assert "unknown" in message
    assert "backtracking" in message
    assert "pulp" in message


def test_backend_names_are_case_insensitive():
    assert api.get_backend("BackTracking") is backtracking


def test_available_backends_includes_registered_values():
    """The helper exposing available backends should list known identifiers."""

    choices = api.available_backends()
    assert "backtracking" in choices
    assert "pulp" in choices


def test_schedule_school_uses_requested_backend(monkeypatch):
    """``schedule_school`` should dispatch every stream to the selected backend."""

    calls = []

    def fake_schedule_stream(stream, context):
        calls.append(stream.id)
        return api.StreamResult(stream=stream, status=api.ScheduleStatus.INFEASIBLE)

    monkeypatch.setattr(backtracking, "schedule_stream", fake_schedule_stream)

    summary = api.schedule_school(tiny_working_set(), backend="backtracking")
    assert calls == ['s1']
    assert summary.results[0].backend == "backtracking"
    assert summary.infeasible[0].stream.id == 's1'


def test_registered_module_must_expose_schedule_stream(monkeypatch):
    monkeypatch.setitem(api._BACKEND_REGISTRY, "broken", "scheduler.errors")
    ws = tiny_working_set()
    with pytest.raises(ValueError) as excinfo:
        api.schedule_stream(ws.streams[0], api.build_context(ws), backend="broken")
    assert "schedule_stream" in str(excinfo.value)
