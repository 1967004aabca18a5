import os
from functools import wraps

import click
from flask import Flask, Response, g, jsonify, request
from flask import session as flask_session
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.security import check_password_hash, generate_password_hash

from .csv_parser import (
    ALLOWED_EXTENSIONS,
    MAX_FILE_BYTES,
    MAX_IMPORT_ROWS,
    parse_csv,
    read_upload,
    sample_csv,
)
from .db import DB_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .errors import (
    DatabaseInitError,
    ImportPipelineError,
    ImportSessionNotFound,
    MappingIncompleteError,
    ParseError,
    WriteError,
)
from .session import ImportSession
from .staging import (
    cleanup_expired_import_staging,
    discard_import_session,
    load_import_session,
    new_import_id,
    save_import_session,
    stage_import_session,
)
from .store import SqlTransactionStore

IMPORT_PREVIEW_DEFAULT_LIMIT = 25
SELECTION_ACTIONS = ("select_all", "unselect_all", "unselect_error_rows", "toggle", "include", "exclude")


def parse_has_header(value):
    cleaned = (value or "").strip().lower()
    if cleaned in ("1", "true", "yes", "on"):
        return True
    if cleaned in ("0", "false", "no", "off"):
        return False
    return None


def preview_rows_for_display(rows, show_all=False, limit=IMPORT_PREVIEW_DEFAULT_LIMIT):
    total_rows = len(rows)
    if show_all:
        return rows, total_rows, total_rows
    displayed_rows = rows[:limit]
    return displayed_rows, len(displayed_rows), total_rows


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "finance_tracker.sqlite"),
        IMPORT_MAX_ROWS=MAX_IMPORT_ROWS,
        IMPORT_MAX_FILE_BYTES=MAX_FILE_BYTES,
        IMPORT_ALLOWED_EXTENSIONS=ALLOWED_EXTENSIONS,
        IMPORT_STAGING_MAX_AGE_HOURS=24,
        IMPORT_PREVIEW_LIMIT=IMPORT_PREVIEW_DEFAULT_LIMIT,
        DEFAULT_CURRENCY="USD",
    )

    if test_config is not None:
        app.config.update(test_config)

    if app.config.get("MAX_CONTENT_LENGTH") is None:
        # Room for multipart framing on top of the file itself.
        app.config["MAX_CONTENT_LENGTH"] = app.config["IMPORT_MAX_FILE_BYTES"] + 64 * 1024

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(app.config["DATABASE"])

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except DB_ERRORS + (OSError, RuntimeError) as exc:
                message = f"Unable to open database {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except DB_ERRORS + (OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    def get_store():
        return SqlTransactionStore(get_db(), g.user["id"])

    def load_session_or_404(import_id):
        return load_import_session(get_db(), g.user["id"], import_id)

    def request_payload():
        payload = request.get_json(silent=True)
        if isinstance(payload, dict):
            return payload
        return request.form.to_dict()

    def session_payload(import_session, show_all=False, errors_only=False):
        rows = import_session.error_rows() if errors_only else import_session.rows
        displayed, displayed_count, total = preview_rows_for_display(
            rows, show_all=show_all, limit=app.config["IMPORT_PREVIEW_LIMIT"]
        )
        payload = import_session.to_dict(rows=displayed)
        payload.update(
            {
                "show_all": show_all,
                "errors_only": errors_only,
                "displayed_rows": displayed_count,
                "matching_rows": total,
                "available_fields": {
                    column: [field.value for field in import_session.available_fields(column)]
                    for column in import_session.headers
                },
            }
        )
        return payload

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.cli.command("import-csv")
    @click.argument("path", type=click.Path(exists=True, dir_okay=False))
    @click.option("--username", required=True, help="Owner of the imported transactions.")
    @click.option("--dry-run", is_flag=True, help="Validate only; write nothing.")
    @click.option("--no-header", is_flag=True, help="Treat the first line as data.")
    def import_csv_command(path, username, dry_run, no_header):
        """Parse, auto-map, validate and commit a CSV file."""
        db = get_db()
        user = db.execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone()
        if user is None:
            raise click.ClickException(f"Unknown user: {username}")

        with open(path, "rb") as handle:
            file_bytes = handle.read()

        store = SqlTransactionStore(db, user["id"])
        try:
            text = read_upload(
                os.path.basename(path),
                file_bytes,
                max_bytes=app.config["IMPORT_MAX_FILE_BYTES"],
                allowed_extensions=app.config["IMPORT_ALLOWED_EXTENSIONS"],
            )
            result = parse_csv(text, has_header=False if no_header else None, max_rows=app.config["IMPORT_MAX_ROWS"])
            import_session = ImportSession.from_parse_result(result, import_id=new_import_id())
            counts = import_session.validate_all(store.load_reference_snapshot())
        except ImportPipelineError as exc:
            raise click.ClickException(str(exc)) from exc

        if result.warning:
            click.echo(f"Warning: {result.warning}")
        click.echo(f"{counts['valid']} of {counts['total']} rows are valid.")
        for row in import_session.error_rows():
            for error in row.errors:
                click.echo(f"  Row {row.row_number} [{error['field']}]: {error['message']}")

        if dry_run:
            click.echo("Dry run: nothing was written.")
            return

        import_session.unselect_error_rows()
        outcome = import_session.commit(store, currency=app.config["DEFAULT_CURRENCY"])
        store.record_audit("import_csv", "import", import_session.import_id, outcome.to_dict())
        click.echo(outcome.summary)
        for error in outcome.errors:
            click.echo(f"  Row {error['row_number']}: {error['message']}")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except DB_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.errorhandler(ParseError)
    def handle_parse_error(exc):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(MappingIncompleteError)
    def handle_mapping_incomplete(exc):
        return jsonify({"error": str(exc), "problems": exc.problems}), 400

    @app.errorhandler(ImportSessionNotFound)
    def handle_session_not_found(exc):
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(_exc):
        limit_mb = app.config["IMPORT_MAX_FILE_BYTES"] / 1024 / 1024
        return jsonify({"error": f"File exceeds maximum of {limit_mb:.0f}MB"}), 413

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return jsonify({"error": "Authentication required."}), 401
            return view(**kwargs)

        return wrapped_view

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            return jsonify({"error": app.config["DB_INIT_ERROR"]}), 500

        user_id = flask_session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_db().execute("SELECT id, username FROM users WHERE id = ?", (user_id,)).fetchone()

    @app.post("/register")
    def register():
        payload = request_payload()
        username = (payload.get("username") or "").strip()
        password = payload.get("password") or ""
        if not username:
            return jsonify({"error": "Username is required."}), 400
        if not password:
            return jsonify({"error": "Password is required."}), 400

        db = get_db()
        if db.execute("SELECT 1 FROM users WHERE username = ?", (username,)).fetchone() is not None:
            return jsonify({"error": "User already exists."}), 409
        user_id = db.insert(
            "INSERT INTO users (username, password_hash) VALUES (?, ?)",
            (username, generate_password_hash(password)),
        )
        db.commit()
        app.logger.info("Registered user_id=%s", user_id)
        return jsonify({"id": user_id, "username": username}), 201

    @app.post("/login")
    def login():
        payload = request_payload()
        username = (payload.get("username") or "").strip()
        password = payload.get("password") or ""
        user = get_db().execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        if user is None or not check_password_hash(user["password_hash"], password):
            return jsonify({"error": "Incorrect username or password."}), 401

        flask_session.clear()
        flask_session["user_id"] = user["id"]
        return jsonify({"id": user["id"], "username": user["username"]})

    @app.get("/logout")
    def logout():
        flask_session.clear()
        return jsonify({"ok": True})

    @app.get("/api/reference")
    @login_required
    def reference_data():
        return jsonify(get_store().load_reference_snapshot().to_dict())

    @app.get("/import/sample.csv")
    def import_sample_csv():
        return Response(
            sample_csv(),
            mimetype="text/csv",
            headers={"Content-Disposition": "attachment; filename=transactions_sample.csv"},
        )

    @app.post("/import/csv")
    @login_required
    def import_csv():
        db = get_db()
        cleanup_expired_import_staging(db, max_age_hours=app.config["IMPORT_STAGING_MAX_AGE_HOURS"])
        db.commit()

        uploaded = request.files.get("csv_file")
        if uploaded is not None and uploaded.filename:
            text = read_upload(
                uploaded.filename,
                uploaded.read(),
                max_bytes=app.config["IMPORT_MAX_FILE_BYTES"],
                allowed_extensions=app.config["IMPORT_ALLOWED_EXTENSIONS"],
            )
        else:
            text = request_payload().get("csv_text") or ""

        has_header = parse_has_header(request_payload().get("has_header"))
        result = parse_csv(text, has_header=has_header, max_rows=app.config["IMPORT_MAX_ROWS"])
        import_session = ImportSession.from_parse_result(result)
        import_id = stage_import_session(db, g.user["id"], import_session)
        app.logger.info(
            "Staged import import_id=%s user_id=%s rows=%s total_rows=%s",
            import_id,
            g.user["id"],
            len(result.rows),
            result.total_rows,
        )

        payload = session_payload(import_session)
        payload["total_rows"] = result.total_rows
        return jsonify(payload), 201

    @app.get("/import/<import_id>")
    @login_required
    def import_session_detail(import_id):
        import_session = load_session_or_404(import_id)
        return jsonify(
            session_payload(
                import_session,
                show_all=request.args.get("show_all") == "1",
                errors_only=request.args.get("errors_only") == "1",
            )
        )

    @app.post("/import/<import_id>/mapping")
    @login_required
    def update_import_mapping(import_id):
        import_session = load_session_or_404(import_id)
        payload = request_payload()
        try:
            if isinstance(payload.get("mapping"), dict):
                import_session.replace_mapping(payload["mapping"])
            else:
                import_session.set_mapping(payload.get("column"), payload.get("field"))
        except (KeyError, ValueError) as exc:
            return jsonify({"error": exc.args[0] if exc.args else str(exc)}), 400

        save_import_session(get_db(), import_session)
        return jsonify(session_payload(import_session))

    @app.post("/import/<import_id>/validate")
    @login_required
    def validate_import(import_id):
        import_session = load_session_or_404(import_id)
        import_session.validate_all(get_store().load_reference_snapshot())
        save_import_session(get_db(), import_session)
        return jsonify(session_payload(import_session, errors_only=request.args.get("errors_only") == "1"))

    @app.post("/import/<import_id>/rows/<int:row_index>")
    @login_required
    def edit_import_row(import_id, row_index):
        import_session = load_session_or_404(import_id)
        payload = request_payload()
        try:
            row = import_session.edit_cell(row_index, payload.get("column"), payload.get("value"))
        except IndexError as exc:
            return jsonify({"error": str(exc)}), 404
        except KeyError as exc:
            return jsonify({"error": exc.args[0]}), 400

        save_import_session(get_db(), import_session, rows=[row])
        return jsonify({"row": row.to_dict(), "counts": import_session.counts()})

    @app.post("/import/<import_id>/selection")
    @login_required
    def update_import_selection(import_id):
        import_session = load_session_or_404(import_id)
        payload = request_payload()
        action = payload.get("action")
        if action not in SELECTION_ACTIONS:
            return jsonify({"error": f"Unknown selection action: {action}"}), 400

        try:
            if action in ("include", "exclude"):
                row_indices = [int(value) for value in payload.get("rows") or []]
                getattr(import_session, action)(row_indices)
            elif action == "toggle":
                import_session.toggle(int(payload.get("row_index")))
            else:
                getattr(import_session, action)()
        except (TypeError, ValueError):
            return jsonify({"error": "Row indices must be integers."}), 400
        except IndexError as exc:
            return jsonify({"error": str(exc)}), 404

        save_import_session(get_db(), import_session)
        return jsonify(
            {
                "included": sorted(import_session.included_indices),
                "counts": import_session.counts(),
            }
        )

    @app.post("/import/<import_id>/commit")
    @login_required
    def commit_import_session(import_id):
        import_session = load_session_or_404(import_id)
        import_session.require_review()
        store = get_store()
        # Once rows may have been written the session must not be committed again.
        try:
            result = import_session.commit(store, currency=app.config["DEFAULT_CURRENCY"])
        finally:
            discard_import_session(get_db(), g.user["id"], import_id)

        try:
            store.record_audit("import_csv", "import", import_id, result.to_dict())
        except WriteError as exc:
            app.logger.warning("Audit log failed for import_id=%s: %s", import_id, exc)
        app.logger.info("Committed import import_id=%s user_id=%s: %s", import_id, g.user["id"], result.summary)
        return jsonify(result.to_dict())

    @app.delete("/import/<import_id>")
    @login_required
    def delete_import_session(import_id):
        if not discard_import_session(get_db(), g.user["id"], import_id):
            raise ImportSessionNotFound("Import session expired. Please re-upload the file.")
        return jsonify({"ok": True})

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
