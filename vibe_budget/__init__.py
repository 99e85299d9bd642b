import json
import os
import re
import uuid
from datetime import date, datetime, timedelta, timezone
from functools import wraps

from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from .categorization import (
    DEFAULT_SYSTEM_CATEGORIES,
    SOURCE_GLOBAL_RULE,
    SOURCE_MANUAL,
    SOURCE_USER_KEYWORD,
    categorize_transaction,
    is_balance_snapshot_description,
    normalize_description,
    recategorize,
)
from .db import DATABASE_ERRORS, INTEGRITY_ERRORS, connect_db, parse_database_config, row_to_dict
from .db_migrations import apply_migrations, get_db_health
from .insights import (
    DEFAULT_MODEL,
    InsightsUnavailableError,
    build_client,
    calculate_health_score,
    detect_anomalies,
    generate_budget_recommendations,
    suggest_categories,
)
from .parsers import StatementParseError, format_date, parse_amount, parse_statement
from .reports import (
    ANOMALY_HISTORY_DAYS,
    RECOMMENDATION_MONTHS,
    build_pivot,
    build_stats,
    months_ago,
    pivot_months,
    resolve_period,
    summarize_for_anomalies,
    summarize_for_health_score,
    summarize_for_recommendations,
)


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
NATIVE_CURRENCIES = {"RON", "MDL"}
CURRENCY_SYMBOLS = {"RON": "lei", "MDL": "L", "EUR": "€", "USD": "$", "GBP": "£"}
CATEGORY_TYPES = {"income", "expense", "savings"}
TRANSACTION_SOURCES = {"csv", "excel", "pdf", "manual"}
DEFAULT_BANK_COLOR = "#6366f1"
MIN_PASSWORD_LENGTH = 6
MAX_TRANSACTIONS_LIMIT = 1000
MAX_PIVOT_MONTHS = 36


def utc_now_text():
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def serialize_user(row):
    return {
        "id": row["id"],
        "email": row["email"],
        "name": row["name"],
        "native_currency": row["native_currency"],
        "created_at": row["created_at"],
    }


def serialize_category(row):
    data = row_to_dict(row)
    data["is_system_category"] = bool(data.get("is_system_category"))
    return data


def serialize_transaction(row):
    data = row_to_dict(row)
    data["amount"] = float(data["amount"])
    raw_original = data.pop("original_data", None)
    if raw_original:
        try:
            data["original_data"] = json.loads(raw_original)
        except ValueError:
            data["original_data"] = raw_original
    else:
        data["original_data"] = None
    return data


def parse_id_list(values):
    ids = []
    for raw_id in values or []:
        try:
            ids.append(int(raw_id))
        except (TypeError, ValueError):
            return None
    return list(dict.fromkeys(ids))


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("VIBE_BUDGET_SECRET_KEY", "dev"),
        DATABASE=os.path.join(app.instance_path, "vibe_budget.sqlite"),
        DEFAULT_CURRENCY="RON",
        ANTHROPIC_API_KEY=os.environ.get("ANTHROPIC_API_KEY"),
        ANTHROPIC_MODEL=os.environ.get("ANTHROPIC_MODEL", DEFAULT_MODEL),
        ANTHROPIC_MAX_TOKENS=int(os.environ.get("ANTHROPIC_MAX_TOKENS", "2000")),
        ENABLE_AI_CATEGORIZATION=os.environ.get("ENABLE_AI_CATEGORIZATION", "").lower() in {"1", "true", "yes"},
        MAX_CONTENT_LENGTH=10 * 1024 * 1024,
        TRANSACTIONS_DEFAULT_LIMIT=100,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(parse_database_config(app.config["DATABASE"]))
            except (*DATABASE_ERRORS, OSError) as exc:
                message = f"Unable to open database at {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(parse_database_config(app.config["DATABASE"]))
            app.config["DB_INIT_ERROR"] = None
        except (*DATABASE_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database at {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    def get_anthropic_client():
        client = app.extensions.get("anthropic_client")
        if client is None:
            client = build_client(app.config.get("ANTHROPIC_API_KEY"))
            app.extensions["anthropic_client"] = client
        return client

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.cli.command("recategorize")
    def recategorize_command():
        db = get_db()
        households = db.execute("SELECT id FROM households ORDER BY id").fetchall()
        for household in households:
            result = recategorize_household(db, household["id"])
            db.commit()
            print(
                f"Household {household['id']}: {result['recategorized']} of "
                f"{result['total']} uncategorized transactions categorized."
            )

    @app.errorhandler(InsightsUnavailableError)
    def insights_unavailable(exc):
        return jsonify({"error": str(exc) or "AI insights are not configured."}), 503

    @app.errorhandler(DatabaseInitError)
    def database_init_failed(exc):
        return jsonify({"error": str(exc)}), 500

    @app.errorhandler(HTTPException)
    def http_error(exc):
        return jsonify({"error": exc.description}), exc.code

    def database_error(exc):
        db = g.get("db")
        if db is not None:
            db.rollback()
        app.logger.exception("Database error on %s %s", request.method, request.path)
        return jsonify({"error": "Unexpected database error."}), 500

    for error_class in DATABASE_ERRORS:
        app.register_error_handler(error_class, database_error)

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(parse_database_config(app.config["DATABASE"])))
        except DATABASE_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.get("/api/health")
    def api_health():
        try:
            get_db().execute("SELECT 1").fetchone()
        except (*DATABASE_ERRORS, DatabaseInitError) as exc:
            app.logger.warning("Health check failed: %s", exc)
            return jsonify({"status": "error", "database": "unavailable", "timestamp": utc_now_text()}), 503
        return jsonify({"status": "ok", "database": "ok", "timestamp": utc_now_text()})

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return jsonify({"error": "Authentication required."}), 401
            return view(**kwargs)

        return wrapped_view

    def ensure_default_categories(household_id, user_id, db):
        existing = {
            row["name"]
            for row in db.execute("SELECT name FROM categories WHERE household_id = ?", (household_id,)).fetchall()
        }
        for category in DEFAULT_SYSTEM_CATEGORIES:
            if category["name"] in existing:
                continue
            db.execute(
                """
                INSERT INTO categories (household_id, user_id, name, type, color, icon, description, is_system_category)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1)
                """,
                (
                    household_id,
                    user_id,
                    category["name"],
                    category["type"],
                    category["color"],
                    category["icon"],
                    category["description"],
                ),
            )

    def ensure_currency(household_id, user_id, code, db, is_native=False):
        existing = db.execute(
            "SELECT id FROM currencies WHERE household_id = ? AND code = ?", (household_id, code)
        ).fetchone()
        if existing is not None:
            return existing["id"]
        return db.insert(
            "INSERT INTO currencies (household_id, user_id, code, symbol, name, is_native) VALUES (?, ?, ?, ?, ?, ?)",
            (household_id, user_id, code, CURRENCY_SYMBOLS.get(code, code), code, 1 if is_native else 0),
        )

    def ensure_user_household(user_id, db=None):
        db = db or get_db()
        membership = db.execute(
            "SELECT household_id, role FROM household_members WHERE user_id = ? ORDER BY id ASC LIMIT 1",
            (user_id,),
        ).fetchone()
        if membership is not None:
            return membership["household_id"], membership["role"]

        user = db.execute("SELECT name, native_currency FROM users WHERE id = ?", (user_id,)).fetchone()
        household_id = db.insert("INSERT INTO households (name) VALUES (?)", (f"{user['name']} household",))
        db.execute(
            "INSERT INTO household_members (household_id, user_id, role) VALUES (?, ?, 'owner')",
            (household_id, user_id),
        )
        ensure_default_categories(household_id, user_id, db)
        ensure_currency(household_id, user_id, user["native_currency"], db, is_native=True)
        db.commit()
        return household_id, "owner"

    def log_audit(action, entity=None, entity_id=None, details=None, db=None):
        actor_id = g.user["id"] if getattr(g, "user", None) else None
        db = db or get_db()
        db.execute(
            """
            INSERT INTO audit_logs (household_id, user_id, action, entity, entity_id, meta_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (getattr(g, "household_id", None), actor_id, action, entity, entity_id, json.dumps(details or {})),
        )

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            return jsonify({"error": app.config["DB_INIT_ERROR"]}), 500

        user_id = session.get("user_id")
        g.user = None
        g.household_id = None
        g.household_role = None
        if user_id is None:
            return None

        g.user = get_db().execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if g.user is None:
            session.clear()
            return None
        g.household_id, g.household_role = ensure_user_household(g.user["id"])
        return None

    def household_categories(db):
        rows = db.execute(
            "SELECT * FROM categories WHERE household_id = ? ORDER BY is_system_category DESC, name ASC",
            (g.household_id,),
        ).fetchall()
        return [serialize_category(row) for row in rows]

    def household_keywords(db, household_id=None):
        rows = db.execute(
            """
            SELECT uk.id, uk.keyword, uk.category_id, uk.created_at, c.name AS category_name
            FROM user_keywords uk
            JOIN categories c ON c.id = uk.category_id
            WHERE uk.household_id = ?
            ORDER BY uk.id ASC
            """,
            (household_id or g.household_id,),
        ).fetchall()
        return [row_to_dict(row) for row in rows]

    def categories_by_name(db, household_id=None):
        rows = db.execute(
            "SELECT id, name, type FROM categories WHERE household_id = ?",
            (household_id or g.household_id,),
        ).fetchall()
        return {row["name"]: row_to_dict(row) for row in rows}

    def get_household_row(db, table, row_id):
        return db.execute(
            f"SELECT * FROM {table} WHERE id = ? AND household_id = ?",
            (row_id, g.household_id),
        ).fetchone()

    def fetch_transaction(db, transaction_id):
        return db.execute(
            """
            SELECT t.*, c.name AS category_name, c.color AS category_color, c.icon AS category_icon,
                   b.name AS bank_name
            FROM transactions t
            LEFT JOIN categories c ON c.id = t.category_id
            LEFT JOIN banks b ON b.id = t.bank_id
            WHERE t.id = ? AND t.household_id = ?
            """,
            (transaction_id, g.household_id),
        ).fetchone()

    def resolve_bank_id(db, raw_bank_id):
        if raw_bank_id in (None, ""):
            return None, None
        try:
            bank_id = int(raw_bank_id)
        except (TypeError, ValueError):
            return None, (jsonify({"error": "Invalid bank_id."}), 400)
        if get_household_row(db, "banks", bank_id) is None:
            return None, (jsonify({"error": "Bank not found."}), 404)
        return bank_id, None

    def recategorize_household(db, household_id):
        rows = db.execute(
            "SELECT id, description, category_id FROM transactions WHERE household_id = ? AND category_id IS NULL",
            (household_id,),
        ).fetchall()
        result = recategorize(
            [row_to_dict(row) for row in rows],
            household_keywords(db, household_id),
            categories_by_name(db, household_id),
        )
        for assignment in result["assignments"]:
            db.execute(
                """
                UPDATE transactions
                SET category_id = ?, category_source = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND category_id IS NULL
                """,
                (assignment["category_id"], assignment["source"], assignment["transaction_id"]),
            )
        return result

    def import_transactions(db, rows, bank_id=None, source="csv"):
        kept = [row for row in rows if isinstance(row, dict) and not is_balance_snapshot_description(row.get("description"))]
        snapshots = len(rows) - len(kept)
        if not kept:
            return None, "No transactions to import: the file only contains balance lines."

        default_currency = g.user["native_currency"] or app.config["DEFAULT_CURRENCY"]
        prepared = []
        invalid = 0
        for row in kept:
            date_iso = format_date(row.get("date"))
            amount = parse_amount(row.get("amount"))
            description = " ".join(str(row.get("description") or "").split())
            if date_iso is None or amount is None or not description:
                invalid += 1
                continue
            currency = str(row.get("currency") or default_currency).strip().upper() or default_currency
            prepared.append((date_iso, round(amount, 2), description, currency, row))

        if not prepared:
            return None, "No valid transactions: every row is missing a date, an amount or a description."

        dates = [item[0] for item in prepared]
        stored = db.execute(
            "SELECT date, amount, description FROM transactions WHERE household_id = ? AND date BETWEEN ? AND ?",
            (g.household_id, min(dates), max(dates)),
        ).fetchall()
        existing = {
            (row["date"], round(float(row["amount"]), 2), normalize_description(row["description"]))
            for row in stored
        }

        keywords = household_keywords(db)
        categories = categories_by_name(db)
        category_ids = {category["id"] for category in categories.values()}

        created = []
        duplicates = 0
        auto_categorized = 0
        for date_iso, amount, description, currency, row in prepared:
            if (date_iso, amount, normalize_description(description)) in existing:
                duplicates += 1
                continue

            explicit_category = row.get("category_id")
            if explicit_category is not None and explicit_category in category_ids:
                category_id, category_source = explicit_category, SOURCE_MANUAL
            else:
                result = categorize_transaction(description, keywords, categories)
                category_id = result["category_id"]
                category_source = result["source"] if category_id is not None else None
                if category_source in (SOURCE_USER_KEYWORD, SOURCE_GLOBAL_RULE):
                    auto_categorized += 1

            original_data = row.get("original_data")
            transaction_id = db.insert(
                """
                INSERT INTO transactions (
                    household_id, user_id, bank_id, category_id, date, description, amount, currency,
                    type, source, original_data, category_source
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    g.household_id,
                    g.user["id"],
                    bank_id,
                    category_id,
                    date_iso,
                    description,
                    amount,
                    currency,
                    "debit" if amount < 0 else "credit",
                    source,
                    json.dumps(original_data) if original_data is not None else None,
                    category_source,
                ),
            )
            created.append(transaction_id)

        log_audit(
            "import",
            entity="transaction",
            details={
                "count": len(created),
                "duplicates": duplicates,
                "invalid": invalid,
                "balance_snapshots": snapshots,
                "bank_id": bank_id,
                "source": source,
            },
            db=db,
        )
        db.commit()
        app.logger.info(
            "Imported %s transactions for household_id=%s (auto=%s duplicates=%s invalid=%s)",
            len(created),
            g.household_id,
            auto_categorized,
            duplicates,
            invalid,
        )
        return {
            "count": len(created),
            "auto_categorized_count": auto_categorized,
            "duplicates": duplicates,
            "invalid": invalid,
            "balance_snapshots": snapshots,
            "transactions": [serialize_transaction(fetch_transaction(db, tid)) for tid in created],
        }, None

    @app.post("/api/auth/register")
    def register():
        payload = request.get_json(silent=True) or {}
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""
        name = (payload.get("name") or "").strip()
        native_currency = (payload.get("native_currency") or app.config["DEFAULT_CURRENCY"]).strip().upper()

        error = None
        if not email or not password or not name:
            error = "Email, password and name are required."
        elif not EMAIL_RE.match(email):
            error = "Invalid email address."
        elif len(password) < MIN_PASSWORD_LENGTH:
            error = f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
        elif native_currency not in NATIVE_CURRENCIES:
            error = "Native currency must be RON or MDL."
        if error is not None:
            return jsonify({"error": error}), 400

        db = get_db()
        if db.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone() is not None:
            return jsonify({"error": "An account with this email already exists."}), 409

        try:
            user_id = db.insert(
                "INSERT INTO users (email, password_hash, name, native_currency) VALUES (?, ?, ?, ?)",
                (email, generate_password_hash(password), name, native_currency),
            )
            db.commit()
        except INTEGRITY_ERRORS:
            db.rollback()
            return jsonify({"error": "An account with this email already exists."}), 409

        ensure_user_household(user_id, db)
        user = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        session.clear()
        session["user_id"] = user_id
        app.logger.info("Registered user_id=%s", user_id)
        return jsonify({"user": serialize_user(user)}), 201

    @app.post("/api/auth/login")
    def login():
        payload = request.get_json(silent=True) or {}
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""
        user = get_db().execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        if user is None or not check_password_hash(user["password_hash"], password):
            return jsonify({"error": "Incorrect email or password."}), 401

        session.clear()
        session["user_id"] = user["id"]
        return jsonify({"user": serialize_user(user)})

    @app.post("/api/auth/logout")
    def logout():
        session.clear()
        return jsonify({"success": True})

    @app.get("/api/auth/me")
    @login_required
    def me():
        return jsonify({
            "user": serialize_user(g.user),
            "household": {"id": g.household_id, "role": g.household_role},
        })

    @app.get("/api/household")
    @login_required
    def household_detail():
        db = get_db()
        household = db.execute("SELECT id, name, created_at FROM households WHERE id = ?", (g.household_id,)).fetchone()
        members = db.execute(
            """
            SELECT u.id, u.name, u.email, hm.role
            FROM household_members hm
            JOIN users u ON u.id = hm.user_id
            WHERE hm.household_id = ?
            ORDER BY hm.id ASC
            """,
            (g.household_id,),
        ).fetchall()
        invites = []
        if g.household_role == "owner":
            invites = db.execute(
                "SELECT code, email, created_at FROM household_invites WHERE household_id = ? ORDER BY id DESC LIMIT 10",
                (g.household_id,),
            ).fetchall()
        return jsonify({
            "household": row_to_dict(household),
            "role": g.household_role,
            "members": [row_to_dict(member) for member in members],
            "invites": [row_to_dict(invite) for invite in invites],
        })

    @app.post("/api/household/invites")
    @login_required
    def create_invite():
        if g.household_role != "owner":
            return jsonify({"error": "Only the household owner can invite members."}), 403
        payload = request.get_json(silent=True) or {}
        invite_email = (payload.get("email") or "").strip().lower()
        invite_code = uuid.uuid4().hex[:8].upper()
        db = get_db()
        db.execute(
            "INSERT INTO household_invites (household_id, created_by_user_id, email, code) VALUES (?, ?, ?, ?)",
            (g.household_id, g.user["id"], invite_email or None, invite_code),
        )
        db.commit()
        return jsonify({"code": invite_code, "email": invite_email or None}), 201

    @app.post("/api/household/join")
    @login_required
    def join_household():
        payload = request.get_json(silent=True) or {}
        code = (payload.get("code") or "").strip().upper()
        if not code:
            return jsonify({"error": "Invite code is required."}), 400

        db = get_db()
        invite = db.execute("SELECT * FROM household_invites WHERE code = ?", (code,)).fetchone()
        if invite is None:
            return jsonify({"error": "Invalid invite code."}), 404

        new_household_id = invite["household_id"]
        old_household_id = g.household_id
        if new_household_id == old_household_id:
            return jsonify({"error": "You are already a member of this household."}), 400

        user_id = g.user["id"]
        db.execute("DELETE FROM household_members WHERE user_id = ?", (user_id,))
        db.execute(
            "INSERT INTO household_members (household_id, user_id, role) VALUES (?, ?, 'member')",
            (new_household_id, user_id),
        )
        db.execute(
            "UPDATE banks SET household_id = ? WHERE household_id = ? AND user_id = ?",
            (new_household_id, old_household_id, user_id),
        )

        target_categories = categories_by_name(db, new_household_id)
        moved = db.execute(
            """
            SELECT t.id, t.category_source, c.name AS category_name
            FROM transactions t
            LEFT JOIN categories c ON c.id = t.category_id
            WHERE t.household_id = ? AND t.user_id = ?
            """,
            (old_household_id, user_id),
        ).fetchall()
        for row in moved:
            target = target_categories.get(row["category_name"]) if row["category_name"] else None
            db.execute(
                "UPDATE transactions SET household_id = ?, category_id = ?, category_source = ? WHERE id = ?",
                (
                    new_household_id,
                    target["id"] if target else None,
                    row["category_source"] if target else None,
                    row["id"],
                ),
            )
        ensure_currency(new_household_id, user_id, g.user["native_currency"], db)

        g.household_id = new_household_id
        g.household_role = "member"
        log_audit("join_household", entity="household", entity_id=new_household_id, details={"moved": len(moved)}, db=db)
        db.commit()
        app.logger.info("user_id=%s joined household_id=%s with %s transactions", user_id, new_household_id, len(moved))
        return jsonify({"household_id": new_household_id, "role": "member", "moved_transactions": len(moved)})

    @app.route("/api/categories", methods=("GET", "POST"))
    @login_required
    def categories():
        db = get_db()
        if request.method == "GET":
            return jsonify({"categories": household_categories(db)})

        payload = request.get_json(silent=True) or {}
        name = (payload.get("name") or "").strip()
        category_type = (payload.get("type") or "expense").strip().lower()
        if not name:
            return jsonify({"error": "Category name is required."}), 400
        if category_type not in CATEGORY_TYPES:
            return jsonify({"error": "Category type must be income, expense or savings."}), 400
        if name in categories_by_name(db):
            return jsonify({"error": "Category already exists."}), 409

        category_id = db.insert(
            """
            INSERT INTO categories (household_id, user_id, name, type, color, icon, description, is_system_category)
            VALUES (?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                g.household_id,
                g.user["id"],
                name,
                category_type,
                payload.get("color") or DEFAULT_BANK_COLOR,
                payload.get("icon") or "📁",
                payload.get("description"),
            ),
        )
        db.commit()
        return jsonify({"category": serialize_category(get_household_row(db, "categories", category_id))}), 201

    @app.route("/api/categories/<int:category_id>", methods=("PUT", "DELETE"))
    @login_required
    def category_detail(category_id):
        db = get_db()
        category = get_household_row(db, "categories", category_id)
        if category is None:
            return jsonify({"error": "Category not found."}), 404

        if request.method == "DELETE":
            if category["is_system_category"]:
                return jsonify({"error": "System categories cannot be deleted."}), 403
            result = db.execute(
                """
                UPDATE transactions SET category_id = NULL, category_source = NULL, updated_at = CURRENT_TIMESTAMP
                WHERE category_id = ? AND household_id = ?
                """,
                (category_id, g.household_id),
            )
            db.execute("DELETE FROM user_keywords WHERE category_id = ?", (category_id,))
            db.execute("DELETE FROM categories WHERE id = ?", (category_id,))
            log_audit(
                "delete",
                entity="category",
                entity_id=category_id,
                details={"name": category["name"], "uncategorized": result.rowcount},
                db=db,
            )
            db.commit()
            return jsonify({"success": True, "uncategorized_transactions": result.rowcount})

        payload = request.get_json(silent=True) or {}
        name = (payload.get("name") or category["name"]).strip()
        category_type = (payload.get("type") or category["type"]).strip().lower()
        if not name:
            return jsonify({"error": "Category name is required."}), 400
        if category_type not in CATEGORY_TYPES:
            return jsonify({"error": "Category type must be income, expense or savings."}), 400
        other = categories_by_name(db).get(name)
        if other is not None and other["id"] != category_id:
            return jsonify({"error": "Category already exists."}), 409

        db.execute(
            "UPDATE categories SET name = ?, type = ?, color = ?, icon = ?, description = ? WHERE id = ?",
            (
                name,
                category_type,
                payload.get("color", category["color"]),
                payload.get("icon", category["icon"]),
                payload.get("description", category["description"]),
                category_id,
            ),
        )
        db.commit()
        return jsonify({"category": serialize_category(get_household_row(db, "categories", category_id))})

    @app.route("/api/banks", methods=("GET", "POST"))
    @login_required
    def banks():
        db = get_db()
        if request.method == "GET":
            rows = db.execute("SELECT * FROM banks WHERE household_id = ? ORDER BY name", (g.household_id,)).fetchall()
            return jsonify({"banks": [row_to_dict(row) for row in rows]})

        payload = request.get_json(silent=True) or {}
        name = (payload.get("name") or "").strip()
        if not name:
            return jsonify({"error": "Bank name is required."}), 400
        bank_id = db.insert(
            "INSERT INTO banks (household_id, user_id, name, color) VALUES (?, ?, ?, ?)",
            (g.household_id, g.user["id"], name, payload.get("color") or DEFAULT_BANK_COLOR),
        )
        db.commit()
        return jsonify({"bank": row_to_dict(get_household_row(db, "banks", bank_id))}), 201

    @app.route("/api/banks/<int:bank_id>", methods=("PUT", "DELETE"))
    @login_required
    def bank_detail(bank_id):
        db = get_db()
        bank = get_household_row(db, "banks", bank_id)
        if bank is None:
            return jsonify({"error": "Bank not found."}), 404

        if request.method == "DELETE":
            db.execute("UPDATE transactions SET bank_id = NULL WHERE bank_id = ? AND household_id = ?", (bank_id, g.household_id))
            db.execute("DELETE FROM banks WHERE id = ?", (bank_id,))
            log_audit("delete", entity="bank", entity_id=bank_id, details={"name": bank["name"]}, db=db)
            db.commit()
            return jsonify({"success": True})

        payload = request.get_json(silent=True) or {}
        name = (payload.get("name") or bank["name"]).strip()
        if not name:
            return jsonify({"error": "Bank name is required."}), 400
        db.execute(
            "UPDATE banks SET name = ?, color = ? WHERE id = ?",
            (name, payload.get("color") or bank["color"] or DEFAULT_BANK_COLOR, bank_id),
        )
        db.commit()
        return jsonify({"bank": row_to_dict(get_household_row(db, "banks", bank_id))})

    @app.route("/api/currencies", methods=("GET", "POST"))
    @login_required
    def currencies():
        db = get_db()
        if request.method == "GET":
            rows = db.execute(
                "SELECT * FROM currencies WHERE household_id = ? ORDER BY is_native DESC, code ASC",
                (g.household_id,),
            ).fetchall()
            return jsonify({"currencies": [row_to_dict(row) for row in rows]})

        payload = request.get_json(silent=True) or {}
        code = (payload.get("code") or "").strip().upper()
        symbol = (payload.get("symbol") or "").strip()
        if not re.fullmatch(r"[A-Z]{3}", code):
            return jsonify({"error": "Currency code must be three letters."}), 400
        if not symbol:
            return jsonify({"error": "Currency symbol is required."}), 400
        if db.execute(
            "SELECT id FROM currencies WHERE household_id = ? AND code = ?", (g.household_id, code)
        ).fetchone() is not None:
            return jsonify({"error": "Currency already exists."}), 409

        currency_id = db.insert(
            "INSERT INTO currencies (household_id, user_id, code, symbol, name, is_native) VALUES (?, ?, ?, ?, ?, 0)",
            (g.household_id, g.user["id"], code, symbol, (payload.get("name") or "").strip() or code),
        )
        db.commit()
        return jsonify({"currency": row_to_dict(get_household_row(db, "currencies", currency_id))}), 201

    @app.delete("/api/currencies/<int:currency_id>")
    @login_required
    def delete_currency(currency_id):
        db = get_db()
        if get_household_row(db, "currencies", currency_id) is None:
            return jsonify({"error": "Currency not found."}), 404
        db.execute("DELETE FROM currencies WHERE id = ?", (currency_id,))
        db.commit()
        return jsonify({"success": True})

    @app.route("/api/user-keywords", methods=("GET", "POST"))
    @login_required
    def user_keywords():
        db = get_db()
        if request.method == "GET":
            return jsonify({"keywords": household_keywords(db)})

        payload = request.get_json(silent=True) or {}
        keyword = " ".join((payload.get("keyword") or "").lower().split())
        if not keyword:
            return jsonify({"error": "Keyword is required."}), 400
        try:
            category_id = int(payload.get("category_id"))
        except (TypeError, ValueError):
            return jsonify({"error": "category_id is required."}), 400
        if get_household_row(db, "categories", category_id) is None:
            return jsonify({"error": "Category not found."}), 404

        existing = db.execute(
            "SELECT id FROM user_keywords WHERE household_id = ? AND keyword = ?",
            (g.household_id, keyword),
        ).fetchone()
        if existing is not None:
            db.execute("UPDATE user_keywords SET category_id = ? WHERE id = ?", (category_id, existing["id"]))
            keyword_id, status = existing["id"], 200
        else:
            keyword_id = db.insert(
                "INSERT INTO user_keywords (household_id, user_id, keyword, category_id) VALUES (?, ?, ?, ?)",
                (g.household_id, g.user["id"], keyword, category_id),
            )
            status = 201
        db.commit()
        saved = next(item for item in household_keywords(db) if item["id"] == keyword_id)
        return jsonify({"keyword": saved, "updated": status == 200}), status

    @app.delete("/api/user-keywords/<int:keyword_id>")
    @login_required
    def delete_user_keyword(keyword_id):
        db = get_db()
        if get_household_row(db, "user_keywords", keyword_id) is None:
            return jsonify({"error": "Keyword not found."}), 404
        db.execute("DELETE FROM user_keywords WHERE id = ?", (keyword_id,))
        db.commit()
        return jsonify({"success": True})

    @app.route("/api/transactions", methods=("GET", "POST"))
    @login_required
    def transactions():
        db = get_db()
        if request.method == "POST":
            payload = request.get_json(silent=True) or {}
            rows = payload.get("transactions")
            if not isinstance(rows, list) or not rows:
                return jsonify({"error": "No transactions provided."}), 400
            bank_id, error_response = resolve_bank_id(db, payload.get("bank_id"))
            if error_response is not None:
                return error_response
            source = payload.get("source") if payload.get("source") in TRANSACTION_SOURCES else "csv"
            result, error = import_transactions(db, rows, bank_id, source)
            if error is not None:
                return jsonify({"error": error}), 400
            return jsonify(result), 201

        filters = ["t.household_id = ?"]
        params = [g.household_id]
        for arg, column in (("bank_id", "t.bank_id"), ("category_id", "t.category_id")):
            value = request.args.get(arg)
            if value:
                try:
                    params.append(int(value))
                except ValueError:
                    return jsonify({"error": f"Invalid {arg}."}), 400
                filters.append(f"{column} = ?")
        if request.args.get("start_date"):
            filters.append("t.date >= ?")
            params.append(request.args["start_date"])
        if request.args.get("end_date"):
            filters.append("t.date <= ?")
            params.append(request.args["end_date"])

        limit = request.args.get("limit", type=int) or app.config["TRANSACTIONS_DEFAULT_LIMIT"]
        limit = max(1, min(limit, MAX_TRANSACTIONS_LIMIT))

        rows = db.execute(
            f"""
            SELECT t.*, c.name AS category_name, c.color AS category_color, c.icon AS category_icon,
                   b.name AS bank_name
            FROM transactions t
            LEFT JOIN categories c ON c.id = t.category_id
            LEFT JOIN banks b ON b.id = t.bank_id
            WHERE {' AND '.join(filters)}
            ORDER BY t.date DESC, t.id DESC
            """,
            params,
        ).fetchall()
        visible = [row for row in rows if not is_balance_snapshot_description(row["description"])]
        return jsonify({
            "transactions": [serialize_transaction(row) for row in visible[:limit]],
            "total": len(visible),
        })

    @app.post("/api/parse")
    @login_required
    def parse_upload():
        upload = request.files.get("file")
        if upload is None or not upload.filename:
            return jsonify({"error": "A statement file is required."}), 400
        currency = (request.form.get("currency") or g.user["native_currency"]).strip().upper()
        try:
            parsed = parse_statement(upload.filename, upload.read(), currency)
        except StatementParseError as exc:
            app.logger.info("Rejected statement %s: %s", upload.filename, exc)
            return jsonify({"error": str(exc)}), 400
        return jsonify(parsed)

    @app.post("/api/transactions/import")
    @login_required
    def import_upload():
        upload = request.files.get("file")
        if upload is None or not upload.filename:
            return jsonify({"error": "A statement file is required."}), 400
        db = get_db()
        bank_id, error_response = resolve_bank_id(db, request.form.get("bank_id"))
        if error_response is not None:
            return error_response
        currency = (request.form.get("currency") or g.user["native_currency"]).strip().upper()
        try:
            parsed = parse_statement(upload.filename, upload.read(), currency)
        except StatementParseError as exc:
            app.logger.info("Rejected statement %s: %s", upload.filename, exc)
            return jsonify({"error": str(exc)}), 400
        if not parsed["transactions"]:
            return jsonify({"error": "No transactions were found in the statement.", "parsed": parsed}), 400

        result, error = import_transactions(db, parsed["transactions"], bank_id, parsed["format"])
        if error is not None:
            return jsonify({"error": error}), 400
        result["parsed"] = {key: parsed[key] for key in ("row_count", "skipped", "format")}
        return jsonify(result), 201

    @app.route("/api/transactions/<int:transaction_id>", methods=("PATCH", "DELETE"))
    @login_required
    def transaction_detail(transaction_id):
        db = get_db()
        transaction = fetch_transaction(db, transaction_id)
        if transaction is None:
            return jsonify({"error": "Transaction not found."}), 404

        if request.method == "DELETE":
            db.execute("DELETE FROM transactions WHERE id = ?", (transaction_id,))
            log_audit(
                "delete",
                entity="transaction",
                entity_id=transaction_id,
                details={"description": transaction["description"], "amount": transaction["amount"]},
                db=db,
            )
            db.commit()
            app.logger.info("Deleted transaction_id=%s household_id=%s", transaction_id, g.household_id)
            return jsonify({"success": True})

        payload = request.get_json(silent=True) or {}
        if "category_id" not in payload and "notes" not in payload:
            return jsonify({"error": "Nothing to update."}), 400

        if "category_id" in payload:
            category_id = payload["category_id"]
            if category_id is not None:
                try:
                    category_id = int(category_id)
                except (TypeError, ValueError):
                    return jsonify({"error": "Invalid category_id."}), 400
                if get_household_row(db, "categories", category_id) is None:
                    return jsonify({"error": "Category not found."}), 404
            db.execute(
                "UPDATE transactions SET category_id = ?, category_source = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (category_id, SOURCE_MANUAL if category_id is not None else None, transaction_id),
            )
            log_audit(
                "categorize",
                entity="transaction",
                entity_id=transaction_id,
                details={"from": transaction["category_id"], "to": category_id},
                db=db,
            )
        if "notes" in payload:
            notes = payload["notes"]
            db.execute(
                "UPDATE transactions SET notes = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                ((str(notes).strip() or None) if notes is not None else None, transaction_id),
            )
        db.commit()
        return jsonify({"transaction": serialize_transaction(fetch_transaction(db, transaction_id))})

    @app.post("/api/transactions/bulk-delete")
    @login_required
    def bulk_delete_transactions():
        payload = request.get_json(silent=True) or {}
        raw_ids = payload.get("transaction_ids")
        ids = parse_id_list(raw_ids) if isinstance(raw_ids, list) else None
        if not ids:
            return jsonify({"error": "transaction_ids must be a non-empty list of ids."}), 400

        db = get_db()
        placeholders = ", ".join(["?"] * len(ids))
        found = db.execute(
            f"SELECT id FROM transactions WHERE household_id = ? AND id IN ({placeholders})",
            [g.household_id, *ids],
        ).fetchall()
        found_ids = {row["id"] for row in found}
        if len(found_ids) != len(ids):
            missing = [transaction_id for transaction_id in ids if transaction_id not in found_ids]
            app.logger.warning("Bulk delete rejected for household_id=%s missing=%s", g.household_id, missing)
            return jsonify({"error": "One or more transactions were not found.", "missing_ids": missing}), 404

        result = db.execute(
            f"DELETE FROM transactions WHERE household_id = ? AND id IN ({placeholders})",
            [g.household_id, *ids],
        )
        log_audit("bulk_delete", entity="transaction", details={"ids": ids}, db=db)
        db.commit()
        app.logger.info("Bulk delete succeeded for household_id=%s deleted=%s", g.household_id, result.rowcount)
        return jsonify({"success": True, "deleted": result.rowcount})

    @app.post("/api/transactions/recategorize")
    @login_required
    def recategorize_transactions():
        db = get_db()
        result = recategorize_household(db, g.household_id)
        log_audit(
            "recategorize",
            entity="transaction",
            details={"total": result["total"], "recategorized": result["recategorized"]},
            db=db,
        )
        db.commit()
        return jsonify({
            "total": result["total"],
            "recategorized": result["recategorized"],
            "unchanged": result["unchanged"],
        })

    def household_transactions(db, start_date=None, end_date=None):
        filters = ["household_id = ?"]
        params = [g.household_id]
        if start_date:
            filters.append("date >= ?")
            params.append(start_date)
        if end_date:
            filters.append("date <= ?")
            params.append(end_date)
        rows = db.execute(
            f"SELECT id, date, description, amount, category_id, bank_id FROM transactions WHERE {' AND '.join(filters)}",
            params,
        ).fetchall()
        return [row_to_dict(row) for row in rows]

    @app.get("/api/reports/stats")
    @login_required
    def report_stats():
        start_date, end_date, period = resolve_period(
            request.args.get("start_date"),
            request.args.get("end_date"),
            request.args.get("period", "month"),
        )
        db = get_db()
        banks_rows = db.execute("SELECT id, name, color FROM banks WHERE household_id = ?", (g.household_id,)).fetchall()
        stats = build_stats(
            household_transactions(db, start_date, end_date),
            household_categories(db),
            [row_to_dict(row) for row in banks_rows],
        )
        stats["period"] = {"start_date": start_date, "end_date": end_date, "type": period}
        stats["currency"] = g.user["native_currency"]
        return jsonify(stats)

    @app.get("/api/reports/pivot")
    @login_required
    def report_pivot():
        months_count = request.args.get("months", "12")
        try:
            months_count = int(months_count)
        except ValueError:
            return jsonify({"error": "months must be a number."}), 400
        if not 1 <= months_count <= MAX_PIVOT_MONTHS:
            return jsonify({"error": f"months must be between 1 and {MAX_PIVOT_MONTHS}."}), 400

        today = date.today()
        first_month = pivot_months(months_count, today)[0]
        db = get_db()
        pivot = build_pivot(
            household_transactions(db, f"{first_month}-01"),
            household_categories(db),
            months_count,
            today,
        )
        pivot["currency"] = g.user["native_currency"]
        return jsonify(pivot)

    @app.get("/api/ai/budget-recommendations")
    @login_required
    def ai_budget_recommendations():
        client = get_anthropic_client()
        db = get_db()
        today = date.today()
        data = summarize_for_recommendations(
            household_transactions(db, months_ago(today, RECOMMENDATION_MONTHS).isoformat()),
            household_categories(db),
            today,
            g.user["native_currency"],
        )
        if data is None:
            return jsonify({
                "message": "Not enough data. Import at least 10 transactions to get recommendations.",
                "recommendations": [],
                "summary": {"total_potential_savings": 0, "monthly_income": 0, "monthly_expenses": 0},
            })

        recommendations = generate_budget_recommendations(
            client, app.config["ANTHROPIC_MODEL"], data, app.config["ANTHROPIC_MAX_TOKENS"]
        )
        return jsonify({
            "recommendations": recommendations,
            "summary": {
                "total_potential_savings": round(sum(item["potential_savings"] for item in recommendations)),
                "monthly_income": data["monthly_income"],
                "monthly_expenses": data["monthly_expenses"],
                "period": data["period"],
            },
        })

    @app.get("/api/ai/anomaly-detection")
    @login_required
    def ai_anomaly_detection():
        client = get_anthropic_client()
        db = get_db()
        today = date.today()
        data = summarize_for_anomalies(
            household_transactions(db, (today - timedelta(days=ANOMALY_HISTORY_DAYS)).isoformat()),
            household_categories(db),
            today,
            g.user["native_currency"],
        )
        if data is None:
            return jsonify({"anomalies": [], "message": "Insufficient data for anomaly detection."})

        anomalies = detect_anomalies(client, app.config["ANTHROPIC_MODEL"], data, app.config["ANTHROPIC_MAX_TOKENS"])
        return jsonify({"anomalies": anomalies[:5], "total_transactions": data["total_transactions"]})

    @app.get("/api/ai/health-score")
    @login_required
    def ai_health_score():
        client = get_anthropic_client()
        db = get_db()
        today = date.today()
        data = summarize_for_health_score(
            household_transactions(db, months_ago(today, RECOMMENDATION_MONTHS).isoformat()),
            household_categories(db),
            today,
            g.user["native_currency"],
        )
        if data is None:
            return jsonify({"message": "Not enough data. At least 10 transactions are needed.", "score": None})

        score = calculate_health_score(client, app.config["ANTHROPIC_MODEL"], data, app.config["ANTHROPIC_MAX_TOKENS"])
        score["metrics"] = data["metrics"]
        score["period"] = data["period"]
        score["updated_at"] = utc_now_text()
        return jsonify(score)

    @app.post("/api/ai/suggest-categories")
    @login_required
    def ai_suggest_categories():
        if not app.config.get("ENABLE_AI_CATEGORIZATION"):
            return jsonify({"error": "AI categorization is disabled."}), 403
        client = get_anthropic_client()
        db = get_db()

        payload = request.get_json(silent=True) or {}
        filters = ["household_id = ?", "category_id IS NULL"]
        params = [g.household_id]
        if payload.get("transaction_ids") is not None:
            ids = parse_id_list(payload["transaction_ids"]) if isinstance(payload["transaction_ids"], list) else None
            if not ids:
                return jsonify({"error": "transaction_ids must be a non-empty list of ids."}), 400
            filters.append(f"id IN ({', '.join(['?'] * len(ids))})")
            params.extend(ids)
        rows = db.execute(
            f"SELECT id, description, amount FROM transactions WHERE {' AND '.join(filters)} ORDER BY date DESC",
            params,
        ).fetchall()
        candidates = [row_to_dict(row) for row in rows if not is_balance_snapshot_description(row["description"])]

        names = [category["name"] for category in household_categories(db)]
        suggestions = suggest_categories(
            client, app.config["ANTHROPIC_MODEL"], candidates, names, app.config["ANTHROPIC_MAX_TOKENS"]
        )
        for transaction_id, category_name in suggestions.items():
            db.execute("UPDATE transactions SET ai_suggestion = ? WHERE id = ?", (category_name, transaction_id))
        db.commit()
        return jsonify({
            "suggestions": [
                {"transaction_id": transaction_id, "category_name": category_name}
                for transaction_id, category_name in suggestions.items()
            ],
            "count": len(suggestions),
        })

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            # Already logged; requests answer 500 with DB_INIT_ERROR.
            pass

    app.get_db = get_db
    app.init_db = init_db

    return app
