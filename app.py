"""Flask service that generates weekly class timetables for schools.

Schools, teachers, subjects, streams and templates are stored in a local
SQLite database.  When a generation is requested for a school its data is
loaded into the :mod:`scheduler` package, every stream is scheduled in turn
and each completed timetable is written back to the ``timetables`` table as
soon as it is ready.  Streams that cannot be scheduled are reported in the
run summary without affecting the others.
"""

from flask import Flask, jsonify, request, Response
import sqlite3
import json
import os
import csv
import io
import logging
from collections import OrderedDict
from datetime import datetime, timezone

from scheduler.api import available_backends, schedule_school, DEFAULT_RETRY_BUDGET_FACTOR
from scheduler.constraints import (
    AVAILABILITY,
    DOUBLE_BOOKING,
    ELIGIBILITY,
    WORKLOAD_CAP,
)
from scheduler.errors import SchedulerError, NotFoundError, ValidationError
from scheduler.loader import load_working_set, DEFAULT_MAX_LESSONS
from scheduler.models import Template
from scheduler.serializer import dumps, loads, validate_timetable_data

app = Flask(__name__)
# Day keys of timetable_data must keep template order.
app.json.sort_keys = False

# The SQLite database lives in a dedicated ``data`` directory next to this
# file. Tests point ``DB_PATH`` at a temporary file instead.
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.path.join(BASE_DIR, "data")
os.makedirs(DATA_DIR, exist_ok=True)
DB_PATH = os.path.join(DATA_DIR, "timetable.db")

DEFAULT_HISTORY_LIMIT = 5
DEFAULT_SOLVER_TIME_LIMIT = 60


def get_db():
    """Return a connection to the SQLite database.

    Rows behave like dictionaries and foreign keys are enforced so deletes
    cascade to dependent rows.
    """
    dir_ = os.path.dirname(DB_PATH)
    if dir_:
        os.makedirs(dir_, exist_ok=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def init_db():
    """Create the SQLite tables and the default configuration row.

    Databases created by older versions gain any missing columns."""
    conn = get_db()
    c = conn.cursor()

    def table_exists(name):
        c.execute("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,))
        return c.fetchone() is not None

    def column_exists(table, column):
        c.execute(f"PRAGMA table_info({table})")
        return column in [row[1] for row in c.fetchall()]

    if not table_exists('config'):
        c.execute('''CREATE TABLE config (
            id INTEGER PRIMARY KEY,
            solver_backend TEXT DEFAULT 'backtracking',
            retry_budget_factor INTEGER DEFAULT 50,
            default_max_lessons INTEGER DEFAULT 30,
            history_limit INTEGER DEFAULT 5,
            solver_time_limit INTEGER DEFAULT 60
        )''')
    else:
        if not column_exists('config', 'history_limit'):
            c.execute('ALTER TABLE config ADD COLUMN history_limit INTEGER DEFAULT 5')
        if not column_exists('config', 'solver_time_limit'):
            c.execute('ALTER TABLE config ADD COLUMN solver_time_limit INTEGER DEFAULT 60')

    if not table_exists('schools'):
        c.execute('''CREATE TABLE schools (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            type TEXT,
            location TEXT,
            timetable_template TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )''')

    if not table_exists('profiles'):
        c.execute('''CREATE TABLE profiles (
            id TEXT PRIMARY KEY,
            school_id TEXT NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            email TEXT,
            full_name TEXT
        )''')

    if not table_exists('user_roles'):
        c.execute('''CREATE TABLE user_roles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('admin', 'user')),
            UNIQUE(user_id, role)
        )''')

    if not table_exists('templates'):
        c.execute('''CREATE TABLE templates (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            school_type TEXT,
            periods_per_day INTEGER NOT NULL,
            period_duration INTEGER NOT NULL,
            days_per_week INTEGER NOT NULL DEFAULT 5,
            start_time TEXT NOT NULL DEFAULT '08:00',
            end_time TEXT,
            break_config TEXT,
            structure_config TEXT,
            rules TEXT,
            is_active INTEGER DEFAULT 1,
            is_deployed INTEGER DEFAULT 0
        )''')

    if not table_exists('subjects'):
        c.execute('''CREATE TABLE subjects (
            id TEXT PRIMARY KEY,
            school_id TEXT NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            UNIQUE(school_id, name)
        )''')

    if not table_exists('teachers'):
        c.execute('''CREATE TABLE teachers (
            id TEXT PRIMARY KEY,
            school_id TEXT NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            email TEXT,
            max_lessons_per_week INTEGER,
            workload INTEGER DEFAULT 0,
            availability TEXT
        )''')
    elif not column_exists('teachers', 'availability'):
        c.execute('ALTER TABLE teachers ADD COLUMN availability TEXT')

    if not table_exists('teacher_subjects'):
        c.execute('''CREATE TABLE teacher_subjects (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            teacher_id TEXT NOT NULL REFERENCES teachers(id) ON DELETE CASCADE,
            subject_id TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
            UNIQUE(teacher_id, subject_id)
        )''')

    if not table_exists('streams'):
        c.execute('''CREATE TABLE streams (
            id TEXT PRIMARY KEY,
            school_id TEXT NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            grade INTEGER NOT NULL,
            stream_name TEXT NOT NULL,
            UNIQUE(school_id, grade, stream_name)
        )''')

    if not table_exists('teacher_responsibilities'):
        c.execute('''CREATE TABLE teacher_responsibilities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            teacher_id TEXT NOT NULL REFERENCES teachers(id) ON DELETE CASCADE,
            stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE
        )''')

    if not table_exists('timetables'):
        c.execute('''CREATE TABLE timetables (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            school_id TEXT NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
            stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
            generated_at TEXT,
            generated_by TEXT,
            template_type TEXT,
            timetable_data TEXT NOT NULL,
            assignment_data TEXT,
            template_snapshot TEXT,
            is_latest INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )''')
    else:
        if not column_exists('timetables', 'assignment_data'):
            c.execute('ALTER TABLE timetables ADD COLUMN assignment_data TEXT')
        if not column_exists('timetables', 'template_snapshot'):
            c.execute('ALTER TABLE timetables ADD COLUMN template_snapshot TEXT')
        if not column_exists('timetables', 'is_latest'):
            c.execute('ALTER TABLE timetables ADD COLUMN is_latest INTEGER DEFAULT 1')

    c.execute('CREATE INDEX IF NOT EXISTS idx_timetables_stream ON timetables(stream_id, is_latest)')

    if not table_exists('activity_logs'):
        c.execute('''CREATE TABLE activity_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            school_id TEXT REFERENCES schools(id) ON DELETE CASCADE,
            user_id TEXT,
            activity_type TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            metadata TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )''')

    c.execute('SELECT 1 FROM config WHERE id=1')
    if c.fetchone() is None:
        c.execute(
            'INSERT INTO config (id, solver_backend, retry_budget_factor, default_max_lessons, '
            'history_limit, solver_time_limit) VALUES (1, ?, ?, ?, ?, ?)',
            ('backtracking', DEFAULT_RETRY_BUDGET_FACTOR, DEFAULT_MAX_LESSONS,
             DEFAULT_HISTORY_LIMIT, DEFAULT_SOLVER_TIME_LIMIT),
        )

    conn.commit()
    conn.close()


def get_config(c):
    """Return the scheduler configuration row, falling back to defaults."""
    c.execute('SELECT * FROM config WHERE id=1')
    row = c.fetchone()
    cfg = {
        'solver_backend': 'backtracking',
        'retry_budget_factor': DEFAULT_RETRY_BUDGET_FACTOR,
        'default_max_lessons': DEFAULT_MAX_LESSONS,
        'history_limit': DEFAULT_HISTORY_LIMIT,
        'solver_time_limit': DEFAULT_SOLVER_TIME_LIMIT,
    }
    if row is not None:
        for key in cfg:
            if row[key] is not None:
                cfg[key] = row[key]
    if cfg['solver_backend'] not in available_backends():
        app.logger.warning('Unknown solver backend %r in config; using backtracking', cfg['solver_backend'])
        cfg['solver_backend'] = 'backtracking'
    return cfg


def prune_timetable_history(c, keep, stream_id=None):
    """Delete old timetables so at most ``keep`` rows remain per stream.

    The latest row of a stream is never deleted. Returns the number of rows
    removed.
    """
    keep = max(1, int(keep))
    if stream_id is None:
        c.execute('SELECT DISTINCT stream_id FROM timetables')
        stream_ids = [r['stream_id'] for r in c.fetchall()]
    else:
        stream_ids = [stream_id]
    removed = 0
    for sid in stream_ids:
        c.execute(
            '''DELETE FROM timetables
               WHERE stream_id=? AND is_latest=0 AND id NOT IN (
                   SELECT id FROM timetables WHERE stream_id=?
                   ORDER BY is_latest DESC, generated_at DESC, id DESC LIMIT ?
               )''',
            (sid, sid, keep),
        )
        removed += c.rowcount
    return removed


def store_timetable(c, working_set, result, generated_at, generated_by=None, history_limit=DEFAULT_HISTORY_LIMIT):
    """Insert ``result`` as the stream's latest timetable and return its id."""
    stream = result.stream
    school = working_set.school
    template = working_set.template
    c.execute('UPDATE timetables SET is_latest=0 WHERE stream_id=? AND is_latest=1', (stream.id,))
    c.execute(
        '''INSERT INTO timetables (
               school_id, stream_id, generated_at, generated_by, template_type,
               timetable_data, assignment_data, template_snapshot, is_latest
           ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)''',
        (
            school.id,
            stream.id,
            generated_at,
            generated_by,
            school.template_id or template.name,
            dumps(result.timetable_data),
            dumps(result.assignment_data),
            json.dumps(template.snapshot()),
        ),
    )
    timetable_id = c.lastrowid
    prune_timetable_history(c, history_limit, stream.id)
    return timetable_id


INFEASIBLE_REASON_MAP = {
    ELIGIBILITY: 'No teacher is linked to a required subject.',
    AVAILABILITY: 'Teacher availability leaves required lessons without a free slot.',
    DOUBLE_BOOKING: 'Teachers are already booked by other streams at the needed times.',
    WORKLOAD_CAP: 'Teacher weekly lesson limits are too low.',
}


def summarize_run(summary):
    """Turn a :class:`RunSummary` into short messages for notifications."""
    messages = []
    completed = summary.completed
    if completed:
        noun = 'timetable' if len(completed) == 1 else 'timetables'
        messages.append(f"Generated {len(completed)} {noun}.")
    for result in summary.infeasible:
        error = result.error
        hint = INFEASIBLE_REASON_MAP.get(getattr(error, 'kind', None))
        text = error.message if error is not None else f"{result.stream.name}: could not be scheduled"
        if hint:
            text = f"{text} {hint}"
        messages.append(text)
    return messages


def _log_activity(c, school_id, user_id, summary):
    succeeded = len(summary.completed)
    failed = len(summary.infeasible)
    description = f"{succeeded} stream(s) scheduled"
    if failed:
        description += f", {failed} infeasible"
    c.execute(
        'INSERT INTO activity_logs (school_id, user_id, activity_type, title, description, metadata) '
        'VALUES (?, ?, ?, ?, ?, ?)',
        (school_id, user_id, 'timetable_generated', 'Timetables generated', description,
         json.dumps(summary.as_dict())),
    )


def generate_timetables(school_id, user_id=None):
    """Generate and store timetables for every stream of ``school_id``.

    Setup problems (unknown school, no teachers or streams, a broken
    template) raise before anything is written. Each completed stream is
    committed on its own, so a stream that fails later does not undo the
    ones before it. Returns the :class:`RunSummary`.
    """
    conn = get_db()
    c = conn.cursor()
    try:
        cfg = get_config(c)
        working_set = load_working_set(conn, school_id, default_max_lessons=cfg['default_max_lessons'])
        generated_at = datetime.now(timezone.utc).isoformat(timespec='seconds')

        def persist(result):
            timetable_id = store_timetable(
                c, working_set, result, generated_at, user_id, cfg['history_limit'],
            )
            conn.commit()
            app.logger.info('Stored timetable %s for %s', timetable_id, result.stream.name)

        def progress_cb(msg):
            app.logger.info(msg)

        try:
            summary = schedule_school(
                working_set,
                backend=cfg['solver_backend'],
                retry_budget_factor=cfg['retry_budget_factor'],
                time_limit=cfg['solver_time_limit'],
                on_stream_complete=persist,
                progress_callback=progress_cb,
            )
        except ValidationError as exc:
            if exc.status_code >= 500:
                app.logger.exception('Timetable generation for school %s hit an internal error', school_id)
            raise

        for result in summary.infeasible:
            # Keep the previous timetable as history only; the latest set
            # must come from a single run.
            c.execute('UPDATE timetables SET is_latest=0 WHERE stream_id=? AND is_latest=1', (result.stream.id,))
        for teacher in working_set.teachers:
            c.execute(
                'UPDATE teachers SET workload=? WHERE id=?',
                (summary.workloads.get(teacher.id, 0), teacher.id),
            )
        _log_activity(c, school_id, user_id, summary)
        conn.commit()
        return summary
    finally:
        conn.close()


def _current_user():
    """Return ``(user_id, is_admin, school_id)`` for the calling user.

    Authentication happens upstream; the user id arrives in the
    ``X-User-Id`` header and is trusted as-is.
    """
    user_id = request.headers.get('X-User-Id')
    if not user_id:
        return None, False, None
    conn = get_db()
    c = conn.cursor()
    c.execute("SELECT 1 FROM user_roles WHERE user_id=? AND role='admin'", (user_id,))
    is_admin = c.fetchone() is not None
    c.execute('SELECT school_id FROM profiles WHERE id=?', (user_id,))
    row = c.fetchone()
    conn.close()
    return user_id, is_admin, row['school_id'] if row else None


def _authorize(school_id):
    """Return an error response tuple, or ``None`` when access is allowed."""
    user_id, is_admin, user_school = _current_user()
    if user_id is None:
        return jsonify({'error': 'Authentication required.'}), 401
    if not is_admin and str(user_school) != str(school_id):
        return jsonify({'error': 'You do not have access to this school.'}), 403
    return None


@app.errorhandler(SchedulerError)
def handle_scheduler_error(exc):
    return jsonify(exc.to_dict()), exc.status_code


@app.route('/generate-timetable', methods=['POST'])
def generate():
    """Generate timetables for the school named in the JSON body.

    Responds with the run summary. Streams that could not be scheduled are
    listed under ``infeasible``; when no stream succeeds the response also
    carries an ``error`` so clients treat it as a failure.
    """
    payload = request.get_json(silent=True) or {}
    school_id = payload.get('schoolId') or payload.get('school_id')
    if not school_id:
        return jsonify({'error': 'schoolId is required.'}), 400
    denied = _authorize(school_id)
    if denied is not None:
        return denied
    user_id = request.headers.get('X-User-Id')
    summary = generate_timetables(school_id, user_id)
    body = {
        'success': bool(summary.completed),
        'summary': summary.as_dict(),
        'messages': summarize_run(summary),
    }
    if not summary.completed:
        body['error'] = 'No stream could be scheduled. ' + ' '.join(body['messages'])
        return jsonify(body), 422
    return jsonify(body)


def _timetable_row(row):
    return OrderedDict([
        ('id', row['id']),
        ('school_id', row['school_id']),
        ('stream_id', row['stream_id']),
        ('grade', row['grade']),
        ('stream_name', row['stream_name']),
        ('generated_at', row['generated_at']),
        ('template_type', row['template_type']),
        ('is_latest', bool(row['is_latest'])),
        ('timetable_data', loads(row['timetable_data'])),
    ])


def _fetch_timetable(timetable_id):
    conn = get_db()
    c = conn.cursor()
    c.execute(
        '''SELECT t.*, s.grade, s.stream_name FROM timetables t
           JOIN streams s ON s.id = t.stream_id WHERE t.id=?''',
        (timetable_id,),
    )
    row = c.fetchone()
    conn.close()
    if row is None:
        raise NotFoundError(f"Timetable {timetable_id} does not exist.")
    return row


@app.route('/timetables')
def list_timetables():
    """List a school's timetables, newest first.

    Only the latest timetable per stream is returned unless ``history=1``.
    """
    school_id = request.args.get('schoolId') or request.args.get('school_id')
    if not school_id:
        return jsonify({'error': 'schoolId is required.'}), 400
    denied = _authorize(school_id)
    if denied is not None:
        return denied
    history = request.args.get('history') in ('1', 'true', 'yes')
    sql = '''SELECT t.*, s.grade, s.stream_name FROM timetables t
             JOIN streams s ON s.id = t.stream_id WHERE t.school_id=?'''
    if not history:
        sql += ' AND t.is_latest=1'
    sql += ' ORDER BY t.generated_at DESC, t.id DESC'
    conn = get_db()
    rows = conn.execute(sql, (school_id,)).fetchall()
    conn.close()
    return jsonify({'timetables': [_timetable_row(r) for r in rows]})


@app.route('/timetables/<int:timetable_id>')
def get_timetable(timetable_id):
    row = _fetch_timetable(timetable_id)
    denied = _authorize(row['school_id'])
    if denied is not None:
        return denied
    return jsonify(_timetable_row(row))


@app.route('/timetables/<int:timetable_id>/export')
def export_timetable(timetable_id):
    """Download a timetable as CSV with one row per day.

    Break columns from the template used at generation time are included so
    the sheet matches the printed layout.
    """
    row = _fetch_timetable(timetable_id)
    denied = _authorize(row['school_id'])
    if denied is not None:
        return denied
    data = loads(row['timetable_data'])
    template = Template.from_snapshot(json.loads(row['template_snapshot'])) if row['template_snapshot'] else None
    if template is not None:
        validate_timetable_data(data, template)
        times = template.period_times()

    buf = io.StringIO()
    writer = csv.writer(buf)
    header = ['Day']
    periods = len(next(iter(data.values()), []))
    for number in range(1, periods + 1):
        header.append(f"Period {number} ({times[number - 1]})" if template else f"Period {number}")
        brk = template.break_after(number) if template else None
        if brk is not None:
            header.append(brk.label)
    writer.writerow(header)
    for day, subjects in data.items():
        line = [day]
        for number, subject in enumerate(subjects, start=1):
            line.append(subject)
            brk = template.break_after(number) if template else None
            if brk is not None:
                line.append('')
        writer.writerow(line)

    filename = f"timetable_grade{row['grade']}_{row['stream_name']}.csv".replace(' ', '_')
    return Response(
        buf.getvalue(),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    init_db()
    app.run(debug=True)
