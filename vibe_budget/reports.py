import calendar
from datetime import date, datetime, timedelta

from .categorization import is_balance_snapshot_description


UNCATEGORIZED_LABEL = "Necategorizat"
DEFAULT_CATEGORY_COLOR = "#6366f1"
DEFAULT_CATEGORY_ICON = "📁"
MIN_INSIGHT_TRANSACTIONS = 10
RECOMMENDATION_MONTHS = 12
ANOMALY_HISTORY_DAYS = 90
ANOMALY_RECENT_DAYS = 14
ANOMALY_MAX_RECENT = 100


def _to_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()


def shift_month(year, month, delta):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def months_ago(today, months):
    year, month = shift_month(today.year, today.month, -months)
    day = min(today.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def resolve_period(start=None, end=None, period="month", today=None):
    """Return ``(start_date, end_date, period)`` as ISO strings.

    Explicit bounds win. Without them the window is the current calendar
    month, or the current calendar year for ``period="year"``.
    """
    today = today or date.today()
    period = period if period in {"month", "year"} else "month"

    parsed_start = parsed_end = None
    try:
        if start:
            parsed_start = _to_date(start)
        if end:
            parsed_end = _to_date(end)
    except ValueError:
        parsed_start = parsed_end = None

    if parsed_start and parsed_end:
        if parsed_start > parsed_end:
            parsed_start, parsed_end = parsed_end, parsed_start
        return parsed_start.isoformat(), parsed_end.isoformat(), period

    if period == "year":
        return date(today.year, 1, 1).isoformat(), date(today.year, 12, 31).isoformat(), period

    last_day = calendar.monthrange(today.year, today.month)[1]
    return (
        date(today.year, today.month, 1).isoformat(),
        date(today.year, today.month, last_day).isoformat(),
        period,
    )


def visible_transactions(transactions):
    return [t for t in transactions if not is_balance_snapshot_description(t.get("description"))]


def build_stats(transactions, categories, banks):
    category_map = {c["id"]: c for c in categories}
    bank_map = {b["id"]: b for b in banks}

    total_income = 0.0
    total_expenses = 0.0
    uncategorized = 0
    by_category = {}
    by_bank = {}

    rows = visible_transactions(transactions)
    for t in rows:
        amount = float(t["amount"])
        if amount > 0:
            total_income += amount
        else:
            total_expenses += abs(amount)

        category = category_map.get(t.get("category_id"))
        if t.get("category_id") is None:
            uncategorized += 1
        elif category is not None:
            entry = by_category.setdefault(
                category["id"],
                {
                    "id": category["id"],
                    "name": category["name"],
                    "amount": 0.0,
                    "count": 0,
                    "color": category.get("color") or DEFAULT_CATEGORY_COLOR,
                    "icon": category.get("icon") or DEFAULT_CATEGORY_ICON,
                    "type": category.get("type"),
                },
            )
            entry["amount"] += abs(amount)
            entry["count"] += 1

        bank = bank_map.get(t.get("bank_id"))
        if bank is not None:
            entry = by_bank.setdefault(
                bank["id"],
                {
                    "id": bank["id"],
                    "name": bank["name"],
                    "amount": 0.0,
                    "count": 0,
                    "color": bank.get("color") or DEFAULT_CATEGORY_COLOR,
                },
            )
            entry["amount"] += abs(amount)
            entry["count"] += 1

    def finish(entries):
        ordered = sorted(entries.values(), key=lambda item: item["amount"], reverse=True)
        for item in ordered:
            item["amount"] = round(item["amount"], 2)
        return ordered

    return {
        "summary": {
            "total_income": round(total_income, 2),
            "total_expenses": round(total_expenses, 2),
            "net_balance": round(total_income - total_expenses, 2),
            "transaction_count": len(rows),
            "uncategorized_count": uncategorized,
        },
        "by_category": finish(by_category),
        "by_bank": finish(by_bank),
    }


def pivot_months(months_count, today):
    months = []
    for offset in range(months_count - 1, -1, -1):
        year, month = shift_month(today.year, today.month, -offset)
        months.append(f"{year:04d}-{month:02d}")
    return months


def build_pivot(transactions, categories, months_count=12, today=None):
    today = today or date.today()
    months = pivot_months(months_count, today)

    rows = {}
    for category in categories:
        rows[category["id"]] = {
            "category_id": category["id"],
            "category_name": category["name"],
            "category_icon": category.get("icon") or "📋",
            "category_color": category.get("color") or "#6b7280",
            "months": {month: {"amount": 0.0, "count": 0, "change": None} for month in months},
            "total": 0.0,
            "average": 0.0,
        }

    for t in visible_transactions(transactions):
        row = rows.get(t.get("category_id"))
        if row is None:
            continue
        cell = row["months"].get(str(t["date"])[:7])
        if cell is None:
            continue
        amount = abs(float(t["amount"]))
        cell["amount"] += amount
        cell["count"] += 1
        row["total"] += amount

    for row in rows.values():
        row["average"] = round(row["total"] / months_count, 2)
        row["total"] = round(row["total"], 2)

        top = {"month": "", "amount": 0.0}
        bottom = {"month": "", "amount": 0.0}
        for month in months:
            amount = row["months"][month]["amount"]
            if amount > top["amount"]:
                top = {"month": month, "amount": amount}
            if amount > 0 and (not bottom["month"] or amount < bottom["amount"]):
                bottom = {"month": month, "amount": amount}

        max_increase = {"month": "", "change": 0.0}
        max_decrease = {"month": "", "change": 0.0}
        previous = None
        for month in months:
            cell = row["months"][month]
            if previous:
                change = (cell["amount"] - previous) / previous * 100
                cell["change"] = round(change, 2)
                if change > max_increase["change"]:
                    max_increase = {"month": month, "change": round(change, 2)}
                if change < max_decrease["change"]:
                    max_decrease = {"month": month, "change": round(change, 2)}
            previous = cell["amount"]
            cell["amount"] = round(cell["amount"], 2)

        row["top_month"] = {"month": top["month"], "amount": round(top["amount"], 2)}
        row["bottom_month"] = {"month": bottom["month"], "amount": round(bottom["amount"], 2)}
        row["max_increase"] = max_increase
        row["max_decrease"] = max_decrease

    data = sorted(rows.values(), key=lambda item: item["total"], reverse=True)
    return {"months": months, "data": data}


def _category_name(category_map, category_id):
    category = category_map.get(category_id)
    return category["name"] if category else UNCATEGORIZED_LABEL


def _window(transactions, start):
    start_iso = start.isoformat()
    return [t for t in visible_transactions(transactions) if str(t["date"])[:10] >= start_iso]


def summarize_for_recommendations(transactions, categories, today=None, currency="RON"):
    """Yearly spending per category, or None when there is too little data."""
    today = today or date.today()
    start = months_ago(today, RECOMMENDATION_MONTHS)
    rows = _window(transactions, start)
    if len(rows) < MIN_INSIGHT_TRANSACTIONS:
        return None

    category_map = {c["id"]: c for c in categories}
    totals = {}
    income = 0.0
    expenses = 0.0
    for t in rows:
        amount = float(t["amount"])
        if amount > 0:
            income += amount
            continue
        expenses += abs(amount)
        category = category_map.get(t.get("category_id"))
        if category is not None and category.get("type") == "income":
            continue
        name = _category_name(category_map, t.get("category_id"))
        entry = totals.setdefault(name, {"name": name, "amount": 0.0, "count": 0})
        entry["amount"] += abs(amount)
        entry["count"] += 1

    category_data = sorted(
        ({"name": e["name"], "amount": round(e["amount"]), "count": e["count"]} for e in totals.values()),
        key=lambda item: item["amount"],
        reverse=True,
    )
    return {
        "monthly_income": round(income / RECOMMENDATION_MONTHS),
        "monthly_expenses": round(expenses / RECOMMENDATION_MONTHS),
        "categories": category_data,
        "currency": currency,
        "period": {"start_date": start.isoformat(), "end_date": today.isoformat()},
    }


def summarize_for_anomalies(transactions, categories, today=None, currency="RON"):
    today = today or date.today()
    start = today - timedelta(days=ANOMALY_HISTORY_DAYS)
    rows = _window(transactions, start)
    if len(rows) < MIN_INSIGHT_TRANSACTIONS:
        return None

    category_map = {c["id"]: c for c in categories}
    recent_start = (today - timedelta(days=ANOMALY_RECENT_DAYS)).isoformat()
    expenses = [t for t in rows if float(t["amount"]) < 0]

    recent = [
        {
            "description": t["description"],
            "amount": abs(float(t["amount"])),
            "category": _category_name(category_map, t.get("category_id")),
            "date": str(t["date"])[:10],
        }
        for t in expenses
        if str(t["date"])[:10] >= recent_start
    ][:ANOMALY_MAX_RECENT]

    historical = {}
    for t in expenses:
        name = _category_name(category_map, t.get("category_id"))
        historical[name] = historical.get(name, 0.0) + abs(float(t["amount"]))
    historical_average = {name: round(total / 3, 2) for name, total in historical.items()}

    return {
        "recent_transactions": recent,
        "historical_average": historical_average,
        "currency": currency,
        "total_transactions": len(rows),
    }


def summarize_for_health_score(transactions, categories, today=None, currency="RON"):
    today = today or date.today()
    start = months_ago(today, RECOMMENDATION_MONTHS)
    rows = _window(transactions, start)
    if len(rows) < MIN_INSIGHT_TRANSACTIONS:
        return None

    category_map = {c["id"]: c for c in categories}
    income = sum(float(t["amount"]) for t in rows if float(t["amount"]) > 0)
    expenses = sum(abs(float(t["amount"])) for t in rows if float(t["amount"]) < 0)

    spent = {}
    for t in rows:
        amount = float(t["amount"])
        if amount >= 0:
            continue
        name = _category_name(category_map, t.get("category_id"))
        spent[name] = spent.get(name, 0.0) + abs(amount)

    category_data = sorted(
        (
            {
                "name": name,
                "amount": round(amount),
                "percentage": round(amount / expenses * 100, 1) if expenses else 0.0,
            }
            for name, amount in spent.items()
        ),
        key=lambda item: item["amount"],
        reverse=True,
    )

    balance = income - expenses
    savings_rate = balance / income * 100 if income > 0 else 0.0
    return {
        "income": round(income),
        "expenses": round(expenses),
        "categories": category_data,
        "currency": currency,
        "metrics": {
            "income": round(income),
            "expenses": round(expenses),
            "balance": round(balance),
            "savings_rate": round(savings_rate, 1),
            "transaction_count": len(rows),
        },
        "period": {"start_date": start.isoformat(), "end_date": today.isoformat(), "days": 365},
    }
