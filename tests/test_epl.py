import pytest

from cpe.core.config import Settings
from cpe.core.errors import PlanRequestError
from cpe.epl.processor import PlanRequestProcessor
from cpe.examples.scenarios import news_site_request


def _processor() -> PlanRequestProcessor:
    return PlanRequestProcessor(Settings().request_schema_path)


def test_epl_validates_plan_request() -> None:
    request = _processor().ingest(news_site_request())

    assert request.context_key == "news.example"
    assert request.budget_ms == 500.0
    assert len(request.candidates) == 4
    assert request.candidates[0].operation == "fetch"
    assert request.candidates[2].arm_key == "place-hub:fetch"
    assert request.progress["category_counts"] == {"section": 3}
    assert request.lookahead == 3


def test_epl_defaults_domain_to_context_key() -> None:
    request = _processor().ingest({"context_key": "k", "candidates": [{"target": "https://k.example/"}]})

    assert request.domain == "k"
    assert request.budget_ms is None
    assert request.goal_weights is None
    assert request.candidates[0].confidence == 0.7


@pytest.mark.parametrize(
    "raw",
    [
        {"context_key": "k"},
        {"context_key": "k", "candidates": []},
        {"context_key": "k", "candidates": [{"target": "https://k.example/", "confidence": 2}]},
        {"context_key": "k", "candidates": [{"target": "https://k.example/"}], "budget_ms": 0},
        {"context_key": "k", "candidates": [{"target": "https://k.example/"}], "unexpected": True},
        {"context_key": "k", "candidates": [{"target": "https://k.example/"}], "exploration_strategy": "greedy"},
    ],
)
def test_epl_rejects_invalid_request(raw: dict) -> None:
    with pytest.raises(PlanRequestError) as excinfo:
        _processor().ingest(raw)
    assert excinfo.value.details["errors"]
    assert excinfo.value.code == "plan-request-invalid"
