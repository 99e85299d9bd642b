import json
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from vibe_budget.insights import (
    FALLBACK_HEALTH_SCORE,
    InsightsUnavailableError,
    build_client,
    calculate_health_score,
    detect_anomalies,
    generate_budget_recommendations,
    suggest_categories,
)


class FakeMessages:
    def __init__(self, text=None, error=None):
        self.text = text
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.text)])


def fake_client(text=None, error=None):
    return SimpleNamespace(messages=FakeMessages(text, error))


def connection_error():
    return anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))


RECOMMENDATION_DATA = {
    "monthly_income": 6000,
    "monthly_expenses": 4500,
    "categories": [{"name": "Cumpărături", "amount": 24000, "count": 120}],
    "currency": "RON",
    "period": {"start_date": "2024-06-30", "end_date": "2025-06-30"},
}

ANOMALY_DATA = {
    "recent_transactions": [
        {"description": "Emag", "amount": 3500.0, "category": "Cumpărături", "date": "2025-06-20"}
    ],
    "historical_average": {"Cumpărături": 800.0},
    "currency": "RON",
    "total_transactions": 40,
}

HEALTH_DATA = {
    "income": 72000,
    "expenses": 60000,
    "categories": [{"name": "Locuință", "amount": 30000, "percentage": 50.0}],
    "currency": "RON",
    "metrics": {},
    "period": {},
}


def test_build_client_requires_api_key():
    with pytest.raises(InsightsUnavailableError):
        build_client(None)
    with pytest.raises(InsightsUnavailableError):
        build_client("")


def test_build_client_returns_anthropic_client():
    assert isinstance(build_client("sk-test"), anthropic.Anthropic)


def test_budget_recommendations_parse_json_array():
    client = fake_client(
        "Iată recomandările:\n"
        '[{"category": "Cumpărături", "current_spending": "24000", "suggestedReduction": 300, '
        '"potentialSavings": 3600, "actionItems": ["Listă de cumpărături", "Oferte"]}, "noise"]'
    )
    result = generate_budget_recommendations(client, "claude-test", RECOMMENDATION_DATA, max_tokens=123)

    assert result == [
        {
            "category": "Cumpărături",
            "current_spending": 24000.0,
            "suggested_reduction": 300.0,
            "potential_savings": 3600.0,
            "action_items": ["Listă de cumpărături", "Oferte"],
        }
    ]
    call = client.messages.calls[0]
    assert call["model"] == "claude-test"
    assert call["max_tokens"] == 123
    assert "Cumpărături: 24000 RON (120 transactions)" in call["messages"][0]["content"]


def test_budget_recommendations_degrade_to_empty_list():
    assert generate_budget_recommendations(fake_client("no json here"), "m", RECOMMENDATION_DATA) == []
    assert generate_budget_recommendations(fake_client(error=connection_error()), "m", RECOMMENDATION_DATA) == []


def test_detect_anomalies_normalizes_severity():
    client = fake_client(
        json.dumps(
            [
                {"description": "Cheltuială mare", "amount": "3500", "category": "Cumpărături",
                 "date": "2025-06-20", "severity": "HIGH", "suggestion": "Verifică"},
                {"description": "Ciudat", "amount": 10, "severity": "extreme"},
            ]
        )
    )
    result = detect_anomalies(client, "m", ANOMALY_DATA)

    assert [(a["severity"], a["amount"]) for a in result] == [("high", 3500.0), ("low", 10.0)]
    assert result[1]["category"] == ""


def test_detect_anomalies_handles_api_errors():
    assert detect_anomalies(fake_client(error=connection_error()), "m", ANOMALY_DATA) == []


def test_health_score_reads_camel_case_breakdown():
    client = fake_client(
        '```json\n{"score": 7.5, "grade": "B+", "breakdown": {"cashFlow": 8, "diversification": 6.5, '
        '"savingsRate": 7}, "strengths": ["Venit stabil"], "weaknesses": ["Chirie mare"], '
        '"recommendations": ["Fond de urgență"]}\n```'
    )
    result = calculate_health_score(client, "m", HEALTH_DATA)

    assert result["score"] == 7.5
    assert result["grade"] == "B+"
    assert result["breakdown"] == {"cash_flow": 8.0, "diversification": 6.5, "savings_rate": 7.0}
    assert result["strengths"] == ["Venit stabil"]
    assert "Savings rate: 16.7%" in client.messages.calls[0]["messages"][0]["content"]


def test_health_score_clamps_to_range():
    result = calculate_health_score(fake_client('{"score": -3}'), "m", HEALTH_DATA)
    assert result["score"] == 0.0
    assert result["grade"] == "C"


def test_health_score_falls_back_to_neutral_score():
    result = calculate_health_score(fake_client('{"grade": "A"}'), "m", HEALTH_DATA)
    assert result == FALLBACK_HEALTH_SCORE

    result["strengths"].append("mutated")
    assert calculate_health_score(fake_client(error=connection_error()), "m", HEALTH_DATA) == FALLBACK_HEALTH_SCORE


def test_suggest_categories_keeps_known_ids_and_names():
    transactions = [
        {"id": 10, "description": "Magazin Ion", "amount": -30},
        {"id": 11, "description": "Plata POS 1234", "amount": -12},
    ]
    client = fake_client(
        json.dumps({"10": "cumparaturi", "11": "Vacanțe", "12": "Cash", "abc": "Cash"})
    )
    result = suggest_categories(client, "m", transactions, ["Cumpărături", "Cash"])
    assert result == {10: "Cumpărături"}


def test_suggest_categories_limits_batch_and_skips_empty_input():
    client = fake_client("{}")
    assert suggest_categories(client, "m", [], ["Cash"]) == {}
    assert suggest_categories(client, "m", [{"id": 1, "description": "x", "amount": 1}], []) == {}
    assert client.messages.calls == []

    transactions = [{"id": i, "description": f"Plata {i}", "amount": -1} for i in range(80)]
    suggest_categories(client, "m", transactions, ["Cash"])
    prompt = client.messages.calls[0]["messages"][0]["content"]
    assert "49: Plata 49" in prompt
    assert "50: Plata 50" not in prompt
