import json
import logging
import uuid
from datetime import datetime, timedelta

from .errors import ImportSessionNotFound
from .mapping import mapping_from_payload, mapping_to_payload
from .reference import ReferenceSnapshot
from .session import ImportRow, ImportSession

logger = logging.getLogger(__name__)


def new_import_id():
    return uuid.uuid4().hex


def cleanup_expired_import_staging(db, max_age_hours=24):
    cutoff = (datetime.utcnow() - timedelta(hours=max_age_hours)).isoformat()
    expired = db.execute("SELECT id FROM import_sessions WHERE updated_at < ?", (cutoff,)).fetchall()
    for row in expired:
        db.execute("DELETE FROM import_staging WHERE import_id = ?", (row["id"],))
        db.execute("DELETE FROM import_sessions WHERE id = ?", (row["id"],))
    db.execute("DELETE FROM import_staging WHERE created_at < ?", (cutoff,))
    if expired:
        logger.info("Purged %d expired import sessions", len(expired))
    return len(expired)


def stage_import_session(db, user_id, session):
    """Persist a freshly parsed session and all of its rows."""
    if session.import_id is None:
        session.import_id = new_import_id()
    now = datetime.utcnow().isoformat()
    db.execute(
        """
        INSERT INTO import_sessions
            (id, user_id, headers_json, mapping_json, stage, warning, total_rows, snapshot_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            session.import_id,
            user_id,
            json.dumps(session.headers),
            json.dumps(mapping_to_payload(session.mapping)),
            session.stage,
            session.warning,
            len(session.rows),
            json.dumps(session.ref.to_dict()) if session.ref else None,
            now,
            now,
        ),
    )
    for row in session.rows:
        db.execute(
            """
            INSERT INTO import_staging (import_id, user_id, row_index, created_at, row_json, status)
            VALUES (?, ?, ?, ?, ?, 'preview')
            """,
            (session.import_id, user_id, row.row_index, now, json.dumps(row.to_dict())),
        )
    db.commit()
    return session.import_id


def load_import_session(db, user_id, import_id):
    record = db.execute(
        "SELECT * FROM import_sessions WHERE id = ? AND user_id = ?",
        (import_id, user_id),
    ).fetchone()
    if record is None:
        raise ImportSessionNotFound("Import session expired. Please re-upload the file.")

    staged = db.execute(
        "SELECT row_json FROM import_staging WHERE import_id = ? AND user_id = ? ORDER BY row_index ASC",
        (import_id, user_id),
    ).fetchall()
    rows = [ImportRow.from_dict(json.loads(row["row_json"])) for row in staged]
    headers = json.loads(record["headers_json"])
    snapshot = json.loads(record["snapshot_json"]) if record["snapshot_json"] else None
    return ImportSession(
        headers,
        rows,
        mapping=mapping_from_payload(json.loads(record["mapping_json"]), headers=headers),
        ref=ReferenceSnapshot.from_dict(snapshot) if snapshot else None,
        stage=record["stage"],
        warning=record["warning"],
        import_id=import_id,
    )


def save_import_session(db, session, rows=None):
    """Write session metadata plus the given rows (all rows when omitted)."""
    db.execute(
        """
        UPDATE import_sessions
        SET mapping_json = ?, stage = ?, snapshot_json = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            json.dumps(mapping_to_payload(session.mapping)),
            session.stage,
            json.dumps(session.ref.to_dict()) if session.ref else None,
            datetime.utcnow().isoformat(),
            session.import_id,
        ),
    )
    for row in session.rows if rows is None else rows:
        db.execute(
            "UPDATE import_staging SET row_json = ? WHERE import_id = ? AND row_index = ?",
            (json.dumps(row.to_dict()), session.import_id, row.row_index),
        )
    db.commit()


def discard_import_session(db, user_id, import_id):
    cursor = db.execute("DELETE FROM import_sessions WHERE id = ? AND user_id = ?", (import_id, user_id))
    db.execute("DELETE FROM import_staging WHERE import_id = ? AND user_id = ?", (import_id, user_id))
    db.commit()
    return cursor.rowcount > 0
