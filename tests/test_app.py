from pathlib import Path
import io
import json
from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from vibe_budget import create_app


@pytest.fixture()
def app(tmp_path: Path):
    db_path = tmp_path / "test.sqlite"
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "DATABASE": str(db_path),
            "ANTHROPIC_API_KEY": None,
        }
    )

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


class FakeMessages:
    def __init__(self, text):
        self.text = text
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.text)])


class FakeAnthropic:
    def __init__(self, text):
        self.messages = FakeMessages(text)


def register(client, email="ana@example.com", password="secret1", name="Ana", native_currency="RON"):
    return client.post(
        "/api/auth/register",
        json={"email": email, "password": password, "name": name, "native_currency": native_currency},
    )


def login(client, email="ana@example.com", password="secret1"):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def import_rows(client, rows, **extra):
    payload = {"transactions": rows}
    payload.update(extra)
    return client.post("/api/transactions", json=payload)


def category_id(client, name):
    categories = client.get("/api/categories").get_json()["categories"]
    return next(category["id"] for category in categories if category["name"] == name)


def list_transactions(client, **params):
    return client.get("/api/transactions", query_string=params).get_json()


def recent_rows(count, prefix="Kaufland", amount=-50):
    today = date.today()
    return [
        {"date": (today - timedelta(days=i)).isoformat(), "description": f"{prefix} {i}", "amount": amount}
        for i in range(count)
    ]


def test_register_login_logout(client):
    response = register(client)
    assert response.status_code == 201
    assert response.get_json()["user"]["email"] == "ana@example.com"

    with client.application.app_context():
        db = client.application.get_db()
        user = db.execute("SELECT password_hash FROM users WHERE email = ?", ("ana@example.com",)).fetchone()
    assert user["password_hash"] != "secret1"
    assert user["password_hash"].startswith("scrypt:")

    me = client.get("/api/auth/me").get_json()
    assert me["user"]["name"] == "Ana"
    assert me["household"]["role"] == "owner"

    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/auth/me").status_code == 401

    response = login(client)
    assert response.status_code == 200
    assert client.get("/api/auth/me").status_code == 200


def test_register_creates_household_categories_and_native_currency(client):
    register(client, native_currency="MDL")

    categories = client.get("/api/categories").get_json()["categories"]
    assert len(categories) == 12
    assert all(category["is_system_category"] for category in categories)
    assert {"Transport", "Venituri", "Cash", "Taxe și Impozite"} <= {c["name"] for c in categories}

    currencies = client.get("/api/currencies").get_json()["currencies"]
    assert [(c["code"], c["is_native"]) for c in currencies] == [("MDL", 1)]


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"email": "", "password": "secret1", "name": "Ana"}, "required"),
        ({"email": "not-an-email", "password": "secret1", "name": "Ana"}, "Invalid email"),
        ({"email": "ana@example.com", "password": "123", "name": "Ana"}, "at least 6"),
        ({"email": "ana@example.com", "password": "secret1", "name": "Ana", "native_currency": "EUR"}, "RON or MDL"),
    ],
)
def test_register_validation(client, payload, message):
    response = client.post("/api/auth/register", json=payload)
    assert response.status_code == 400
    assert message in response.get_json()["error"]


def test_register_duplicate_email_conflicts(client):
    register(client)
    client.post("/api/auth/logout")
    response = register(client, email="ANA@example.com")
    assert response.status_code == 409


def test_login_rejects_incorrect_password(client):
    register(client)
    client.post("/api/auth/logout")
    response = login(client, password="wrong-password")
    assert response.status_code == 401
    assert client.get("/api/auth/me").status_code == 401


def test_api_requires_login(client):
    assert client.get("/api/transactions").status_code == 401
    assert client.post("/api/transactions/recategorize").status_code == 401
    assert client.get("/api/reports/stats").status_code == 401


def test_import_categorizes_skips_invalid_and_balance_lines(client):
    register(client)
    response = import_rows(
        client,
        [
            {"date": "15.01.2025", "description": "KAUFLAND BUCURESTI", "amount": "-120,50"},
            {"date": "2025-01-16", "description": "SALARIU IANUARIE", "amount": 5000},
            {"date": "2025-01-17", "description": "Random merchant", "amount": -10},
            {"date": "2025-01-18", "description": "Sold final", "amount": 4869.5},
            {"date": "not a date", "description": "Broken row", "amount": -1},
        ],
    )
    assert response.status_code == 201
    body = response.get_json()
    assert body["count"] == 3
    assert body["auto_categorized_count"] == 2
    assert body["duplicates"] == 0
    assert body["invalid"] == 1
    assert body["balance_snapshots"] == 1

    listed = list_transactions(client)
    assert listed["total"] == 3
    assert [t["description"] for t in listed["transactions"]] == [
        "Random merchant",
        "SALARIU IANUARIE",
        "KAUFLAND BUCURESTI",
    ]
    kaufland = listed["transactions"][2]
    assert kaufland["date"] == "2025-01-15"
    assert kaufland["amount"] == -120.5
    assert kaufland["type"] == "debit"
    assert kaufland["category_name"] == "Cumpărături"
    assert kaufland["category_source"] == "global_rule"
    assert listed["transactions"][0]["category_id"] is None


def test_import_skips_duplicates_already_stored(client):
    register(client)
    rows = [
        {"date": "2025-02-01", "description": "Lidl  Pipera", "amount": -30},
        {"date": "2025-02-02", "description": "Netflix", "amount": -49.99},
    ]
    import_rows(client, rows)

    rows[0]["description"] = "LIDL PIPERA"
    response = import_rows(client, rows + [{"date": "2025-02-03", "description": "Spotify", "amount": -25}])
    body = response.get_json()
    assert body["count"] == 1
    assert body["duplicates"] == 2
    assert list_transactions(client)["total"] == 3


def test_import_rejects_only_balance_lines(client):
    register(client)
    response = import_rows(
        client,
        [
            {"date": "2025-01-01", "description": "Sold initial", "amount": 100},
            {"date": "2025-01-31", "description": "Closing balance", "amount": 90},
        ],
    )
    assert response.status_code == 400
    assert list_transactions(client)["total"] == 0


def test_import_requires_rows_and_known_bank(client):
    register(client)
    assert import_rows(client, []).status_code == 400
    response = import_rows(client, [{"date": "2025-01-01", "description": "Lidl", "amount": -1}], bank_id=999)
    assert response.status_code == 404


def test_user_keyword_beats_global_rule_and_upserts(client):
    register(client)
    fun_id = category_id(client, "Divertisment")
    shop_id = category_id(client, "Cumpărături")

    response = client.post("/api/user-keywords", json={"keyword": "  Kaufland ", "category_id": fun_id})
    assert response.status_code == 201
    assert response.get_json()["keyword"]["keyword"] == "kaufland"

    import_rows(client, [{"date": "2025-03-01", "description": "KAUFLAND VITAN", "amount": -80}])
    transaction = list_transactions(client)["transactions"][0]
    assert transaction["category_name"] == "Divertisment"
    assert transaction["category_source"] == "user_keyword"

    response = client.post("/api/user-keywords", json={"keyword": "KAUFLAND", "category_id": shop_id})
    assert response.status_code == 200
    assert response.get_json()["updated"] is True
    keywords = client.get("/api/user-keywords").get_json()["keywords"]
    assert [(k["keyword"], k["category_name"]) for k in keywords] == [("kaufland", "Cumpărături")]

    assert client.delete(f"/api/user-keywords/{keywords[0]['id']}").status_code == 200
    assert client.get("/api/user-keywords").get_json()["keywords"] == []


def test_user_keyword_validation(client):
    register(client)
    assert client.post("/api/user-keywords", json={"keyword": "", "category_id": 1}).status_code == 400
    assert client.post("/api/user-keywords", json={"keyword": "lidl"}).status_code == 400
    assert client.post("/api/user-keywords", json={"keyword": "lidl", "category_id": 9999}).status_code == 404
    assert client.delete("/api/user-keywords/9999").status_code == 404


def test_recategorize_only_touches_uncategorized_and_is_idempotent(client):
    register(client)
    import_rows(
        client,
        [
            {"date": "2025-04-01", "description": "Random merchant 42", "amount": -15},
            {"date": "2025-04-02", "description": "LIDL DRISTOR", "amount": -60},
        ],
    )
    listed = {t["description"]: t for t in list_transactions(client)["transactions"]}
    lidl_id = listed["LIDL DRISTOR"]["id"]
    cash_id = category_id(client, "Cash")
    client.patch(f"/api/transactions/{lidl_id}", json={"category_id": cash_id})

    client.post("/api/user-keywords", json={"keyword": "random merchant", "category_id": category_id(client, "Transport")})
    client.post("/api/user-keywords", json={"keyword": "lidl", "category_id": category_id(client, "Educație")})

    response = client.post("/api/transactions/recategorize")
    assert response.get_json() == {"total": 1, "recategorized": 1, "unchanged": 0}

    listed = {t["description"]: t for t in list_transactions(client)["transactions"]}
    assert listed["Random merchant 42"]["category_name"] == "Transport"
    assert listed["Random merchant 42"]["category_source"] == "user_keyword"
    assert listed["LIDL DRISTOR"]["category_name"] == "Cash"
    assert listed["LIDL DRISTOR"]["category_source"] == "manual"

    response = client.post("/api/transactions/recategorize")
    assert response.get_json() == {"total": 0, "recategorized": 0, "unchanged": 0}


def test_patch_transaction_category_and_notes(client):
    register(client)
    import_rows(client, [{"date": "2025-05-05", "description": "Magazin de colt", "amount": -12}])
    transaction_id = list_transactions(client)["transactions"][0]["id"]
    health_id = category_id(client, "Sănătate")

    response = client.patch(
        f"/api/transactions/{transaction_id}",
        json={"category_id": health_id, "notes": "  vitamine "},
    )
    assert response.status_code == 200
    updated = response.get_json()["transaction"]
    assert updated["category_id"] == health_id
    assert updated["category_source"] == "manual"
    assert updated["notes"] == "vitamine"

    response = client.patch(f"/api/transactions/{transaction_id}", json={"category_id": None})
    assert response.get_json()["transaction"]["category_id"] is None
    assert response.get_json()["transaction"]["category_source"] is None

    assert client.patch(f"/api/transactions/{transaction_id}", json={}).status_code == 400
    assert client.patch(f"/api/transactions/{transaction_id}", json={"category_id": 9999}).status_code == 404
    assert client.patch("/api/transactions/9999", json={"notes": "x"}).status_code == 404

    with client.application.app_context():
        db = client.application.get_db()
        actions = [row["action"] for row in db.execute("SELECT action FROM audit_logs ORDER BY id").fetchall()]
    assert actions.count("categorize") == 2


def test_delete_and_bulk_delete_transactions(client):
    register(client)
    import_rows(
        client,
        [
            {"date": "2025-06-01", "description": "Lidl", "amount": -1},
            {"date": "2025-06-02", "description": "Profi", "amount": -2},
            {"date": "2025-06-03", "description": "Penny", "amount": -3},
        ],
    )
    ids = [t["id"] for t in list_transactions(client)["transactions"]]

    response = client.post("/api/transactions/bulk-delete", json={"transaction_ids": [ids[0], 9999]})
    assert response.status_code == 404
    assert response.get_json()["missing_ids"] == [9999]
    assert list_transactions(client)["total"] == 3

    assert client.post("/api/transactions/bulk-delete", json={"transaction_ids": "1,2"}).status_code == 400

    response = client.post("/api/transactions/bulk-delete", json={"transaction_ids": [ids[0], ids[1], ids[0]]})
    assert response.get_json() == {"success": True, "deleted": 2}

    assert client.delete(f"/api/transactions/{ids[2]}").status_code == 200
    assert client.delete(f"/api/transactions/{ids[2]}").status_code == 404
    assert list_transactions(client)["total"] == 0

    with client.application.app_context():
        db = client.application.get_db()
        rows = db.execute("SELECT action, meta_json FROM audit_logs WHERE action = 'bulk_delete'").fetchall()
    assert len(rows) == 1
    assert json.loads(rows[0]["meta_json"])["ids"] == [ids[0], ids[1]]


def test_list_transactions_filters_and_limit(client):
    register(client)
    response = client.post("/api/banks", json={"name": "ING"})
    bank_id = response.get_json()["bank"]["id"]
    import_rows(client, [{"date": "2025-01-10", "description": "Lidl", "amount": -1}], bank_id=bank_id)
    import_rows(
        client,
        [
            {"date": "2025-02-10", "description": "Profi", "amount": -2},
            {"date": "2025-03-10", "description": "Netflix", "amount": -3},
        ],
    )

    assert list_transactions(client, bank_id=bank_id)["total"] == 1
    assert list_transactions(client, start_date="2025-02-01", end_date="2025-02-28")["total"] == 1
    shopping = list_transactions(client, category_id=category_id(client, "Cumpărături"))
    assert {t["description"] for t in shopping["transactions"]} == {"Lidl", "Profi"}
    limited = list_transactions(client, limit=1)
    assert limited["total"] == 3
    assert [t["description"] for t in limited["transactions"]] == ["Netflix"]
    assert client.get("/api/transactions?bank_id=abc").status_code == 400


def test_category_crud(client):
    register(client)
    response = client.post("/api/categories", json={"name": "Animale", "type": "expense", "icon": "🐶"})
    assert response.status_code == 201
    pets = response.get_json()["category"]
    assert pets["is_system_category"] is False

    assert client.post("/api/categories", json={"name": "Animale"}).status_code == 409
    assert client.post("/api/categories", json={"name": "Altceva", "type": "other"}).status_code == 400
    assert client.post("/api/categories", json={"name": " "}).status_code == 400

    response = client.put(f"/api/categories/{pets['id']}", json={"name": "Animale de companie", "color": "#000000"})
    assert response.get_json()["category"]["name"] == "Animale de companie"
    assert response.get_json()["category"]["color"] == "#000000"

    import_rows(client, [{"date": "2025-07-01", "description": "Pet shop", "amount": -100}])
    transaction_id = list_transactions(client)["transactions"][0]["id"]
    client.patch(f"/api/transactions/{transaction_id}", json={"category_id": pets["id"]})
    client.post("/api/user-keywords", json={"keyword": "pet shop", "category_id": pets["id"]})

    response = client.delete(f"/api/categories/{pets['id']}")
    assert response.get_json() == {"success": True, "uncategorized_transactions": 1}
    assert list_transactions(client)["transactions"][0]["category_id"] is None
    assert client.get("/api/user-keywords").get_json()["keywords"] == []
    assert client.delete(f"/api/categories/{pets['id']}").status_code == 404


def test_system_category_cannot_be_deleted_but_can_be_renamed(client):
    register(client)
    transport_id = category_id(client, "Transport")
    assert client.delete(f"/api/categories/{transport_id}").status_code == 403

    response = client.put(f"/api/categories/{transport_id}", json={"name": "Mașină"})
    assert response.status_code == 200
    assert response.get_json()["category"]["is_system_category"] is True


def test_bank_crud_and_delete_keeps_transactions(client):
    register(client)
    assert client.post("/api/banks", json={"name": ""}).status_code == 400
    bank = client.post("/api/banks", json={"name": "BT"}).get_json()["bank"]
    assert bank["color"] == "#6366f1"

    response = client.put(f"/api/banks/{bank['id']}", json={"name": "Banca Transilvania", "color": "#123456"})
    assert response.get_json()["bank"]["name"] == "Banca Transilvania"

    import_rows(client, [{"date": "2025-08-01", "description": "Lidl", "amount": -5}], bank_id=bank["id"])
    assert client.delete(f"/api/banks/{bank['id']}").status_code == 200
    assert client.get("/api/banks").get_json()["banks"] == []
    transaction = list_transactions(client)["transactions"][0]
    assert transaction["bank_id"] is None
    assert client.put("/api/banks/9999", json={"name": "x"}).status_code == 404


def test_currency_crud(client):
    register(client)
    response = client.post("/api/currencies", json={"code": "eur", "symbol": "€"})
    assert response.status_code == 201
    euro = response.get_json()["currency"]
    assert euro["code"] == "EUR"
    assert euro["is_native"] == 0

    assert client.post("/api/currencies", json={"code": "EUR", "symbol": "€"}).status_code == 409
    assert client.post("/api/currencies", json={"code": "EURO", "symbol": "€"}).status_code == 400
    assert client.post("/api/currencies", json={"code": "USD"}).status_code == 400

    codes = [c["code"] for c in client.get("/api/currencies").get_json()["currencies"]]
    assert codes == ["RON", "EUR"]
    assert client.delete(f"/api/currencies/{euro['id']}").status_code == 200
    assert client.delete(f"/api/currencies/{euro['id']}").status_code == 404


def test_parse_upload_returns_rows_without_saving(client):
    register(client)
    csv_bytes = "Data;Descriere;Debit;Credit\n01.02.2025;Mega Image;45,30;\n02.02.2025;Salariu;;5000,00\n".encode("utf-8")
    response = client.post(
        "/api/parse",
        data={"file": (io.BytesIO(csv_bytes), "extras.csv")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["format"] == "csv"
    assert [(t["date"], t["amount"]) for t in body["transactions"]] == [("2025-02-01", -45.3), ("2025-02-02", 5000.0)]
    assert list_transactions(client)["total"] == 0


def test_parse_upload_rejects_unsupported_files(client):
    register(client)
    response = client.post(
        "/api/parse",
        data={"file": (io.BytesIO(b"legacy"), "extras.xls")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 400
    assert ".xls" in response.get_json()["error"]

    response = client.post("/api/parse", data={}, content_type="multipart/form-data")
    assert response.status_code == 400


def test_statement_upload_imports_and_categorizes(client):
    register(client)
    bank_id = client.post("/api/banks", json={"name": "ING"}).get_json()["bank"]["id"]
    csv_bytes = (
        "Extras de cont\n"
        "Titular: Ana Pop\n"
        "Data,Descriere,Suma,Moneda\n"
        "15.01.2025,KAUFLAND BUCURESTI,-120.50,RON\n"
        "16.01.2025,UBER *TRIP,-23.00,EUR\n"
        "17.01.2025,Sold final,1000.00,RON\n"
    ).encode("utf-8")
    response = client.post(
        "/api/transactions/import",
        data={"file": (io.BytesIO(csv_bytes), "ing.csv"), "bank_id": str(bank_id)},
        content_type="multipart/form-data",
    )
    assert response.status_code == 201
    body = response.get_json()
    assert body["count"] == 2
    assert body["auto_categorized_count"] == 2
    assert body["balance_snapshots"] == 1
    assert body["parsed"] == {"row_count": 3, "skipped": 0, "format": "csv"}

    listed = {t["description"]: t for t in list_transactions(client)["transactions"]}
    assert listed["UBER *TRIP"]["currency"] == "EUR"
    assert listed["UBER *TRIP"]["category_name"] == "Transport"
    assert listed["UBER *TRIP"]["bank_name"] == "ING"
    assert listed["KAUFLAND BUCURESTI"]["original_data"]["Descriere"] == "KAUFLAND BUCURESTI"
    assert listed["KAUFLAND BUCURESTI"]["source"] == "csv"


def test_report_stats_for_current_month(client):
    register(client)
    today = date.today().isoformat()
    import_rows(
        client,
        [
            {"date": today, "description": "SALARIU", "amount": 1000},
            {"date": today, "description": "Kaufland", "amount": -200},
            {"date": today, "description": "Random merchant", "amount": -50},
            {"date": "2000-01-01", "description": "Lidl", "amount": -999},
        ],
    )

    body = client.get("/api/reports/stats").get_json()
    assert body["summary"] == {
        "total_income": 1000.0,
        "total_expenses": 250.0,
        "net_balance": 750.0,
        "transaction_count": 3,
        "uncategorized_count": 1,
    }
    assert [item["name"] for item in body["by_category"]] == ["Venituri", "Cumpărături"]
    assert body["period"]["type"] == "month"
    assert body["currency"] == "RON"

    body = client.get("/api/reports/stats?start_date=1999-12-01&end_date=2000-01-31").get_json()
    assert body["summary"]["total_expenses"] == 999.0


def test_report_pivot_months_validation(client):
    register(client)
    import_rows(client, [{"date": date.today().isoformat(), "description": "Lidl", "amount": -40}])

    assert client.get("/api/reports/pivot?months=0").status_code == 400
    assert client.get("/api/reports/pivot?months=37").status_code == 400
    assert client.get("/api/reports/pivot?months=abc").status_code == 400

    body = client.get("/api/reports/pivot?months=3").get_json()
    assert len(body["months"]) == 3
    assert body["months"][-1] == date.today().strftime("%Y-%m")
    assert len(body["data"]) == 12
    top = body["data"][0]
    assert top["category_name"] == "Cumpărături"
    assert top["total"] == 40.0


def test_household_invite_and_join_moves_transactions(client):
    register(client)
    import_rows(client, [{"date": "2025-01-05", "description": "Kaufland", "amount": -10}])
    code = client.post("/api/household/invites", json={"email": "bob@example.com"}).get_json()["code"]
    assert len(code) == 8

    other = client.application.test_client()
    register(other, email="bob@example.com", name="Bob")
    import_rows(other, [{"date": "2025-01-06", "description": "Lidl", "amount": -20}])
    assert other.post("/api/household/join", json={"code": "NOPE1234"}).status_code == 404

    response = other.post("/api/household/join", json={"code": code.lower()})
    assert response.status_code == 200
    assert response.get_json()["moved_transactions"] == 1
    assert other.post("/api/household/join", json={"code": code}).status_code == 400

    shared = {t["description"]: t for t in list_transactions(client)["transactions"]}
    assert set(shared) == {"Kaufland", "Lidl"}
    assert shared["Lidl"]["category_id"] == category_id(client, "Cumpărături")

    household = other.get("/api/household").get_json()
    assert household["role"] == "member"
    assert [member["name"] for member in household["members"]] == ["Ana", "Bob"]
    assert household["invites"] == []
    assert other.post("/api/household/invites", json={}).status_code == 403
    assert client.get("/api/household").get_json()["invites"][0]["code"] == code


def test_ai_endpoints_need_a_configured_client(client):
    register(client)
    response = client.get("/api/ai/health-score")
    assert response.status_code == 503
    assert "ANTHROPIC_API_KEY" in response.get_json()["error"]


def test_ai_health_score_reports_insufficient_data(client, app):
    register(client)
    fake = FakeAnthropic('{"score": 8}')
    app.extensions["anthropic_client"] = fake
    import_rows(client, recent_rows(3))

    body = client.get("/api/ai/health-score").get_json()
    assert body["score"] is None
    assert "10" in body["message"]
    assert fake.messages.calls == []


def test_ai_health_score_clamps_score_and_adds_metrics(client, app):
    register(client)
    app.extensions["anthropic_client"] = FakeAnthropic(
        'Iata analiza: {"score": 12, "grade": "A", "breakdown": {"cashFlow": 9}, '
        '"strengths": ["economii"], "weaknesses": [], "recommendations": ["continua"]}'
    )
    import_rows(client, recent_rows(11) + [{"date": date.today().isoformat(), "description": "SALARIU", "amount": 3000}])

    body = client.get("/api/ai/health-score").get_json()
    assert body["score"] == 10.0
    assert body["grade"] == "A"
    assert body["breakdown"]["cash_flow"] == 9.0
    assert body["breakdown"]["savings_rate"] == 5.0
    assert body["metrics"]["income"] == 3000
    assert body["metrics"]["expenses"] == 550
    assert body["metrics"]["transaction_count"] == 12


def test_ai_budget_recommendations(client, app):
    register(client)
    fake = FakeAnthropic(
        '[{"category": "Cumpărături", "currentSpending": 1200, "suggested_reduction": 200, '
        '"potential_savings": 2400, "action_items": ["Fă o listă"]}]'
    )
    app.extensions["anthropic_client"] = fake
    import_rows(client, recent_rows(12))

    body = client.get("/api/ai/budget-recommendations").get_json()
    assert body["recommendations"][0]["current_spending"] == 1200.0
    assert body["summary"]["total_potential_savings"] == 2400
    assert body["summary"]["monthly_expenses"] == 50
    assert fake.messages.calls[0]["model"] == app.config["ANTHROPIC_MODEL"]


def test_ai_anomaly_detection_caps_results(client, app):
    register(client)
    anomalies = [
        {"description": f"Plata {i}", "amount": 100 + i, "category": "Cash", "date": "2025-01-01", "severity": "critical"}
        for i in range(7)
    ]
    app.extensions["anthropic_client"] = FakeAnthropic(json.dumps(anomalies))
    import_rows(client, recent_rows(10))

    body = client.get("/api/ai/anomaly-detection").get_json()
    assert len(body["anomalies"]) == 5
    assert body["anomalies"][0]["severity"] == "low"
    assert body["total_transactions"] == 10


def test_ai_suggest_categories_stores_suggestion_only(client, app):
    register(client)
    import_rows(client, [{"date": "2025-09-01", "description": "Magazin Ion", "amount": -30}])
    transaction_id = list_transactions(client)["transactions"][0]["id"]
    app.extensions["anthropic_client"] = FakeAnthropic(json.dumps({str(transaction_id): "cumparaturi", "9999": "Cash"}))

    assert client.post("/api/ai/suggest-categories", json={}).status_code == 403

    app.config["ENABLE_AI_CATEGORIZATION"] = True
    response = client.post("/api/ai/suggest-categories", json={})
    assert response.status_code == 200
    assert response.get_json()["suggestions"] == [
        {"transaction_id": transaction_id, "category_name": "Cumpărături"}
    ]

    transaction = list_transactions(client)["transactions"][0]
    assert transaction["ai_suggestion"] == "Cumpărături"
    assert transaction["category_id"] is None


def test_health_endpoints(client):
    response = client.get("/health/db")
    assert response.status_code == 200
    body = response.get_json()
    assert body["ok"] is True
    assert body["schema_version"] == 3

    response = client.get("/api/health")
    assert response.get_json()["status"] == "ok"


def test_unknown_route_returns_json_error(client):
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert "error" in response.get_json()


def test_new_database_is_migrated_at_startup(tmp_path: Path):
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "DATABASE": str(tmp_path / "fresh" / "budget.sqlite"),
            "ANTHROPIC_API_KEY": None,
        }
    )
    client = app.test_client()

    response = register(client)

    assert response.status_code == 201
    assert client.get("/health/db").get_json()["ok"] is True
