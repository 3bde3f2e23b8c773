import os
import sys
import json
import sqlite3

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
sys.path.insert(0, BASE_DIR)
import app
from scheduler.errors import ValidationError
from scheduler.models import Template
from scheduler.serializer import loads, validate_timetable_data


def _is_outdated(row):
    """Whether a stored timetable no longer fits the template it was built with."""
    try:
        data = loads(row["timetable_data"])
    except ValidationError:
        return True
    snapshot = row["template_snapshot"]
    if not snapshot:
        return False
    try:
        template = Template.from_snapshot(json.loads(snapshot))
        validate_timetable_data(data, template)
    except (ValueError, ValidationError):
        return True
    return False


def prune(db_path=None, keep=None):
    conn = sqlite3.connect(db_path or app.DB_PATH)
    conn.row_factory = sqlite3.Row
    c = conn.cursor()

    if keep is None:
        keep = app.get_config(c)["history_limit"]

    # Streams with more than one latest row keep only the newest one
    c.execute(
        """
        UPDATE timetables SET is_latest = 0
        WHERE is_latest = 1 AND id NOT IN (
            SELECT MAX(id) FROM timetables WHERE is_latest = 1 GROUP BY stream_id
        )
        """
    )
    demoted = c.rowcount

    rows = c.execute(
        "SELECT id, timetable_data, template_snapshot FROM timetables WHERE is_latest = 0"
    ).fetchall()
    outdated = [row["id"] for row in rows if _is_outdated(row)]
    if outdated:
        c.executemany("DELETE FROM timetables WHERE id = ?", [(i,) for i in outdated])

    removed = app.prune_timetable_history(c, keep)

    conn.commit()
    print(
        "Demoted {0} duplicate latest rows, removed {1} unreadable and {2} surplus history rows".format(
            demoted, len(outdated), removed
        )
    )
    conn.close()
    return demoted, len(outdated), removed


if __name__ == "__main__":
    prune()
