import random
from datetime import date, timedelta

from vibe_budget import create_app


DEMO_EMAIL = "demo@vibebudget.ro"
DEMO_PASSWORD = "demo123"

MERCHANTS = [
    ("KAUFLAND BUCURESTI", 80, 450),
    ("LIDL DRISTOR", 40, 220),
    ("MEGA IMAGE 0421", 15, 120),
    ("PETROM STATIA 112", 150, 350),
    ("BOLT.EU RIDE", 12, 45),
    ("UBER EATS", 35, 110),
    ("STARBUCKS AFI", 18, 40),
    ("FARMACIA CATENA", 25, 160),
    ("NETFLIX.COM", 49.99, 49.99),
    ("SPOTIFY P1A2B3", 25.99, 25.99),
    ("ORANGE ROMANIA", 60, 60),
    ("ENEL ENERGIE", 150, 260),
    ("EMAG.RO MARKETPLACE", 90, 900),
    ("ATM RETRAGERE NUMERAR", 100, 500),
    ("PLATA POS MAGAZIN CARTIER", 8, 60),
]


def main():
    app = create_app()
    with app.app_context():
        app.init_db()

    client = app.test_client()
    response = client.post(
        "/api/auth/register",
        json={"email": DEMO_EMAIL, "password": DEMO_PASSWORD, "name": "Demo", "native_currency": "RON"},
    )
    if response.status_code == 409:
        client.post("/api/auth/login", json={"email": DEMO_EMAIL, "password": DEMO_PASSWORD})

    bank = client.post("/api/banks", json={"name": "Banca Demo"}).get_json()["bank"]

    start = date.today() - timedelta(days=180)
    rows = []
    for offset in range(0, 181, 30):
        rows.append({"date": (start + timedelta(days=offset)).isoformat(), "description": "SALARIU LUNAR", "amount": 7500})
    for i in range(120):
        description, low, high = random.choice(MERCHANTS)
        rows.append(
            {
                "date": (start + timedelta(days=random.randint(0, 180))).isoformat(),
                "description": f"{description} {i:03d}",
                "amount": -round(random.uniform(low, high), 2),
            }
        )

    result = client.post("/api/transactions", json={"transactions": rows, "bank_id": bank["id"]}).get_json()
    print(
        f"Imported {result['count']} transactions "
        f"({result['auto_categorized_count']} categorized automatically, {result['duplicates']} duplicates)."
    )
    print(f"Sample data generated. Login with {DEMO_EMAIL} / {DEMO_PASSWORD}")


if __name__ == "__main__":
    main()
