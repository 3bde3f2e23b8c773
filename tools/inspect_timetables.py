import os
import sys
import sqlite3
from collections import Counter

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
sys.path.insert(0, BASE_DIR)
import app
from scheduler.serializer import loads


def inspect(db_path=None):
    """Print stored timetable counts and check the latest set for clashes.

    Returns the list of problems found.
    """
    conn = sqlite3.connect(db_path or app.DB_PATH)
    conn.row_factory = sqlite3.Row
    c = conn.cursor()

    print('DB:', db_path or app.DB_PATH)
    total = c.execute('SELECT COUNT(*) AS c FROM timetables').fetchone()['c']
    latest = c.execute('SELECT COUNT(*) AS c FROM timetables WHERE is_latest = 1').fetchone()['c']
    print('Total timetable rows:', total, 'latest:', latest)

    problems = []
    rows = c.execute(
        'SELECT id, school_id, stream_id, assignment_data FROM timetables '
        'WHERE is_latest = 1 ORDER BY school_id, id'
    ).fetchall()
    booked = {}
    totals = Counter()
    for row in rows:
        if not row['assignment_data']:
            continue
        for day, entries in loads(row['assignment_data']).items():
            for period, entry in enumerate(entries, start=1):
                key = (row['school_id'], entry['teacher_id'], day, period)
                totals[(row['school_id'], entry['teacher_id'])] += 1
                if key in booked:
                    problems.append(
                        f"teacher {entry['teacher_id']} booked twice at {day} P{period} "
                        f"(timetables {booked[key]} and {row['id']})"
                    )
                else:
                    booked[key] = row['id']

    for teacher in c.execute('SELECT id, school_id, name, max_lessons_per_week FROM teachers').fetchall():
        cap = teacher['max_lessons_per_week']
        count = totals.get((teacher['school_id'], teacher['id']), 0)
        if cap is not None and count > cap:
            problems.append(f"{teacher['name']} has {count} lessons, above the limit of {cap}")

    print('Problems in latest timetables:', len(problems))
    for problem in problems[:10]:
        print(problem)

    conn.close()
    return problems


if __name__ == '__main__':
    inspect()
