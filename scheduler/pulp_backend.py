"""Mixed-integer linear programming backend implemented with PuLP/HiGHS.

Solves the same per-stream problem as the backtracking backend in one
model: every cell gets exactly one ``(subject, teacher)`` pair, every
subject meets its quota and no teacher exceeds the lessons they have left.
Placements already ruled out by the hard constraints (eligibility, the
teacher's mask, bookings made by earlier streams) never become variables.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pulp

from .api import ScheduleStatus, SchedulingContext, StreamResult
from .constraints import Violation
from .errors import IncompleteSetupError, InfeasibleScheduleError
from .models import Grid, Lesson, Stream


ADJACENCY_WEIGHT = 1.0
LOAD_WEIGHT = 0.001
UNSATISFIABLE = "unsatisfiable"

VarKey = Tuple[int, int, Any, Any]


def _make_solver(time_limit: Optional[float]) -> pulp.apis.core.LpSolver:
    solver_cmd = pulp.apis.HiGHS_CMD(msg=False, timeLimit=time_limit)
    if solver_cmd.available():
        return solver_cmd
    solver = pulp.apis.HiGHS(msg=False, timeLimit=time_limit)
    if solver.available():
        return solver
    return pulp.apis.PULP_CBC_CMD(msg=False, timeLimit=time_limit)


_STATUS_MAP = {
    "Optimal": ScheduleStatus.COMPLETE,
    "Feasible": ScheduleStatus.COMPLETE,
    "Integer Feasible": ScheduleStatus.COMPLETE,
    "Infeasible": ScheduleStatus.INFEASIBLE,
    "Unbounded": ScheduleStatus.INFEASIBLE,
    "Undefined": ScheduleStatus.INFEASIBLE,
    "Not Solved": ScheduleStatus.INFEASIBLE,
}


def build_model(stream: Stream, context: SchedulingContext) -> Tuple[pulp.LpProblem, Dict[VarKey, pulp.LpVariable]]:
    """Build the assignment model for ``stream`` against the current bookings."""

    template = context.template
    engine = context.engine
    quotas = context.quotas(stream)
    empty = Grid.for_template(template)

    problem = pulp.LpProblem("stream_timetable", pulp.LpMinimize)
    vars_: Dict[VarKey, pulp.LpVariable] = {}
    var_weights: Dict[pulp.LpVariable, float] = {}
    teacher_positions = {tid: pos for pos, tid in enumerate(context.index.teacher_ids())}

    for s_pos, subject_id in enumerate(quotas):
        ranked = engine.rank_teachers(subject_id)
        for day, period in template.cells():
            for rank, teacher_id in enumerate(ranked):
                if engine.check(empty, subject_id, teacher_id, day, period) is not None:
                    continue
                var = pulp.LpVariable(
                    f"x_{day}_{period}_{s_pos}_{teacher_positions[teacher_id]}",
                    cat=pulp.LpBinary,
                )
                vars_[(day, period, subject_id, teacher_id)] = var
                var_weights[var] = LOAD_WEIGHT * rank

    for day, period in template.cells():
        cell_vars = [v for (d, p, _, _), v in vars_.items() if (d, p) == (day, period)]
        if cell_vars:
            problem += pulp.lpSum(cell_vars) == 1

    for subject_id, quota in quotas.items():
        subject_vars = [v for (_, _, s, _), v in vars_.items() if s == subject_id]
        if subject_vars:
            problem += pulp.lpSum(subject_vars) == quota

    for teacher_id in context.index.teacher_ids():
        teacher_vars = [v for (_, _, _, t), v in vars_.items() if t == teacher_id]
        if teacher_vars:
            left = context.index.max_lessons(teacher_id) - context.busy.workload(teacher_id)
            problem += pulp.lpSum(teacher_vars) <= max(left, 0)

    adjacency_vars: List[pulp.LpVariable] = []
    for s_pos, subject_id in enumerate(quotas):
        for day in range(template.days_per_week):
            for period in range(template.periods_per_day - 1):
                here = [v for (d, p, s, _), v in vars_.items() if (d, p, s) == (day, period, subject_id)]
                after = [v for (d, p, s, _), v in vars_.items() if (d, p, s) == (day, period + 1, subject_id)]
                if not here or not after:
                    continue
                adjacent = pulp.LpVariable(f"adj_{day}_{period}_{s_pos}", lowBound=0, upBound=1)
                problem += adjacent >= pulp.lpSum(here) + pulp.lpSum(after) - 1
                adjacency_vars.append(adjacent)

    objective_terms = [var * weight for var, weight in var_weights.items() if weight]
    if adjacency_vars:
        objective_terms.append(ADJACENCY_WEIGHT * pulp.lpSum(adjacency_vars))
    if objective_terms:
        problem += pulp.lpSum(objective_terms)
    else:
        problem += 0
    return problem, vars_


def _diagnose(stream: Stream, context: SchedulingContext, vars_: Dict[VarKey, pulp.LpVariable]) -> Violation:
    engine = context.engine
    quotas = context.quotas(stream)
    empty = Grid.for_template(context.template)
    shortfall = engine.completion_shortfall(empty, quotas, context.template.cells())
    if shortfall is not None:
        return shortfall
    covered = {(d, p) for (d, p, _, _) in vars_}
    for day, period in context.template.cells():
        if (day, period) not in covered:
            return engine.explain(empty, next(iter(quotas)), day, period)
    return Violation(UNSATISFIABLE, "no assignment satisfies every hard constraint at once")


def schedule_stream(stream: Stream, context: SchedulingContext) -> StreamResult:
    """Solve ``stream`` with a MILP model and commit the result to the busy matrix."""

    template = context.template
    if not stream.subject_ids:
        raise IncompleteSetupError(f"{stream.name} has no subjects to schedule.")

    result = StreamResult(stream=stream, status=ScheduleStatus.IN_PROGRESS)
    model, vars_ = build_model(stream, context)
    covered = {(d, p) for (d, p, _, _) in vars_}
    placeable = {s for (_, _, s, _) in vars_}
    owed = {s for s, quota in context.quotas(stream).items() if quota > 0}
    if len(covered) < template.cell_count or not owed <= placeable:
        status_str = "Not Solved"
    else:
        model.solve(_make_solver(context.time_limit))
        status_str = pulp.LpStatus.get(model.status, "Undefined")
    status = _STATUS_MAP.get(status_str, ScheduleStatus.INFEASIBLE)

    grid = Grid.for_template(template)
    if status is ScheduleStatus.COMPLETE:
        for (day, period, subject_id, teacher_id), var in sorted(vars_.items(), key=lambda item: item[1].name):
            value = pulp.value(var)
            if value is not None and value > 0.5 and not grid.is_filled(day, period):
                grid.assign(day, period, Lesson(subject_id, teacher_id))
        if not grid.is_complete():
            status = ScheduleStatus.INFEASIBLE

    if status is ScheduleStatus.COMPLETE:
        for (day, period), lesson in grid.items():
            context.busy.occupy(lesson.teacher_id, day, period, stream.id)
        result.status = status
        result.grid = grid
        return result

    violation = _diagnose(stream, context, vars_)
    day = template.day_names[violation.day] if violation.day is not None else None
    period = violation.period + 1 if violation.period is not None else None
    subject = context.working_set.subject_name(violation.subject_id) if violation.subject_id is not None else None
    result.status = ScheduleStatus.INFEASIBLE
    result.error = InfeasibleScheduleError(
        f"{stream.name}: {violation.message} (solver status: {status_str})",
        stream_id=stream.id,
        stream_name=stream.name,
        subject=subject,
        day=day,
        period=period,
        kind=violation.kind,
    )
    return result


__all__ = ["build_model", "schedule_stream"]
