import copy
import json
import logging
import re

import anthropic

from .categorization import normalize_description


logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
SEVERITIES = {"low", "medium", "high"}
MAX_SUGGESTION_BATCH = 50

FALLBACK_HEALTH_SCORE = {
    "score": 5.0,
    "grade": "C",
    "strengths": ["Date insuficiente"],
    "weaknesses": ["Necesită mai multe date pentru analiză precisă"],
    "recommendations": ["Continuă să înregistrezi tranzacțiile"],
    "breakdown": {"cash_flow": 5.0, "diversification": 5.0, "savings_rate": 5.0},
}

LLM_ERRORS = (anthropic.APIError, ValueError, KeyError, TypeError, AttributeError, IndexError)


class InsightsUnavailableError(RuntimeError):
    """Raised when no Anthropic client is configured."""


def build_client(api_key):
    if not api_key:
        raise InsightsUnavailableError("ANTHROPIC_API_KEY is not configured.")
    return anthropic.Anthropic(api_key=api_key)


def _first_text(message):
    for block in getattr(message, "content", None) or []:
        if getattr(block, "type", None) == "text":
            return block.text
    raise ValueError("Response has no text block")


def _extract_json(text, opening):
    pattern = r"\[[\s\S]*\]" if opening == "[" else r"\{[\s\S]*\}"
    match = re.search(pattern, text or "")
    if not match:
        raise ValueError(f"No JSON {opening} found in model response")
    return json.loads(match.group(0))


def _ask(client, model, prompt, max_tokens, opening):
    message = client.messages.create(
        model=model or DEFAULT_MODEL,
        max_tokens=max_tokens,
        messages=[{"role": "user", "content": prompt}],
    )
    return _extract_json(_first_text(message), opening)


def _pick(item, *keys, default=None):
    for key in keys:
        if key in item and item[key] is not None:
            return item[key]
    return default


def _number(value, default=0.0):
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def generate_budget_recommendations(client, model, data, max_tokens=2000):
    lines = "\n".join(
        f"- {cat['name']}: {cat['amount']} {data['currency']} ({cat['count']} transactions)"
        for cat in data["categories"]
    )
    prompt = f"""You are an expert personal finance consultant for households in Romania and Moldova.
Suggest 3-5 concrete ways to save money based on the last 12 months of spending.

AVERAGE MONTHLY INCOME: {data['monthly_income']} {data['currency']}

SPENDING BY CATEGORY (last 12 months):
{lines}

For each recommendation give the category, the current spending, the suggested
reduction in {data['currency']}, the potential yearly savings and 2-3 practical actions.
Write the action items in Romanian.

Answer with a JSON array only:
[
  {{
    "category": "category name",
    "current_spending": 0,
    "suggested_reduction": 0,
    "potential_savings": 0,
    "action_items": ["action 1", "action 2"]
  }}
]"""
    try:
        raw = _ask(client, model, prompt, max_tokens, "[")
        recommendations = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            recommendations.append(
                {
                    "category": str(_pick(item, "category", default="")),
                    "current_spending": _number(_pick(item, "current_spending", "currentSpending")),
                    "suggested_reduction": _number(_pick(item, "suggested_reduction", "suggestedReduction")),
                    "potential_savings": _number(_pick(item, "potential_savings", "potentialSavings")),
                    "action_items": [str(a) for a in _pick(item, "action_items", "actionItems", default=[])],
                }
            )
        return recommendations
    except LLM_ERRORS as exc:
        logger.warning("Budget recommendations failed: %s", exc)
        return []


def detect_anomalies(client, model, data, max_tokens=1500):
    recent = "\n".join(
        f"- {t['date']}: {t['description']} | {t['amount']} {data['currency']} | {t['category']}"
        for t in data["recent_transactions"]
    )
    averages = "\n".join(
        f"- {name}: {avg} {data['currency']}/month" for name, avg in data["historical_average"].items()
    )
    prompt = f"""You are a fraud and spending-anomaly analyst. Review the recent expenses.

RECENT EXPENSES (last 14 days):
{recent}

HISTORICAL MONTHLY AVERAGE PER CATEGORY (last 3 months):
{averages}

Look for expenses far above the average (more than 2x), suspicious or unusual
transactions and unexpected patterns. Write descriptions and suggestions in Romanian.

Answer with a JSON array only (empty array when nothing stands out):
[
  {{
    "description": "what is unusual",
    "amount": 0,
    "category": "category",
    "date": "YYYY-MM-DD",
    "severity": "low|medium|high",
    "suggestion": "what to do"
  }}
]"""
    try:
        raw = _ask(client, model, prompt, max_tokens, "[")
    except LLM_ERRORS as exc:
        logger.warning("Anomaly detection failed: %s", exc)
        return []

    anomalies = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        severity = str(item.get("severity", "low")).lower()
        anomalies.append(
            {
                "description": str(item.get("description", "")),
                "amount": _number(item.get("amount")),
                "category": str(item.get("category", "")),
                "date": str(item.get("date", "")),
                "severity": severity if severity in SEVERITIES else "low",
                "suggestion": str(item.get("suggestion", "")),
            }
        )
    return anomalies


def calculate_health_score(client, model, data, max_tokens=1500):
    income = data["income"]
    expenses = data["expenses"]
    savings_rate = (income - expenses) / income * 100 if income else 0.0
    distribution = "\n".join(
        f"- {cat['name']}: {cat['amount']} {data['currency']} ({cat['percentage']:.1f}%)"
        for cat in data["categories"]
    )
    prompt = f"""You are a certified financial planner. Score this household's financial health.

FINANCIALS (last 12 months):
- Income: {income} {data['currency']}
- Expenses: {expenses} {data['currency']}
- Balance: {income - expenses} {data['currency']}
- Savings rate: {savings_rate:.1f}%

SPENDING DISTRIBUTION:
{distribution}

Give an overall score from 0 to 10, a grade (A+, A, B, C, D, F), a breakdown
(cash_flow, diversification, savings_rate, each 0-10), the top 3 strengths,
the top 3 weaknesses and 3-5 concrete recommendations, written in Romanian.

Answer with a JSON object only:
{{
  "score": 7.5,
  "grade": "B+",
  "breakdown": {{"cash_flow": 8.0, "diversification": 7.0, "savings_rate": 7.5}},
  "strengths": ["..."],
  "weaknesses": ["..."],
  "recommendations": ["..."]
}}"""
    try:
        raw = _ask(client, model, prompt, max_tokens, "{")
        breakdown = raw.get("breakdown") or {}
        score = min(max(float(raw["score"]), 0.0), 10.0)
        return {
            "score": score,
            "grade": str(raw.get("grade") or FALLBACK_HEALTH_SCORE["grade"]),
            "strengths": [str(s) for s in raw.get("strengths") or []],
            "weaknesses": [str(w) for w in raw.get("weaknesses") or []],
            "recommendations": [str(r) for r in raw.get("recommendations") or []],
            "breakdown": {
                "cash_flow": _number(_pick(breakdown, "cash_flow", "cashFlow"), 5.0),
                "diversification": _number(_pick(breakdown, "diversification"), 5.0),
                "savings_rate": _number(_pick(breakdown, "savings_rate", "savingsRate"), 5.0),
            },
        }
    except LLM_ERRORS as exc:
        logger.warning("Health score failed, using neutral score: %s", exc)
        return copy.deepcopy(FALLBACK_HEALTH_SCORE)


def suggest_categories(client, model, transactions, category_names, max_tokens=2000):
    """Ask the model for a category per transaction.

    Only names from ``category_names`` are kept; unknown ids and invented
    categories are dropped.
    """
    batch = list(transactions)[:MAX_SUGGESTION_BATCH]
    if not batch or not category_names:
        return {}

    canonical = {normalize_description(name): name for name in category_names}
    listing = "\n".join(f"- {name}" for name in category_names)
    rows = "\n".join(f"{t['id']}: {t['description']} ({t['amount']})" for t in batch)
    prompt = f"""Categorize these bank transactions from Romania/Moldova.

ALLOWED CATEGORIES:
{listing}

TRANSACTIONS (id: description (amount)):
{rows}

Use only the allowed category names. Leave out transactions you are unsure about.
Answer with a JSON object mapping the transaction id to the category name only:
{{"123": "Transport"}}"""
    try:
        raw = _ask(client, model, prompt, max_tokens, "{")
    except LLM_ERRORS as exc:
        logger.warning("Category suggestions failed: %s", exc)
        return {}

    known_ids = {int(t["id"]) for t in batch}
    suggestions = {}
    for key, value in raw.items():
        try:
            transaction_id = int(key)
        except (TypeError, ValueError):
            continue
        name = canonical.get(normalize_description(str(value)))
        if transaction_id in known_ids and name:
            suggestions[transaction_id] = name
    return suggestions
