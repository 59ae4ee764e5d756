"""Canned planning requests for demos, the worker loop and tests."""

from __future__ import annotations


def news_site_request(context_key: str = "news.example") -> dict[str, object]:
    """News site with a few competing hubs and a moderate budget."""
    return {
        "context_key": context_key,
        "domain": "news.example",
        "budget_ms": 500,
        "candidates": [
            {
                "target": "https://news.example/world/",
                "category": "section",
                "estimated_yield": 180,
                "estimated_requests": 12,
                "confidence": 0.8,
            },
            {
                "target": "https://news.example/politics/",
                "category": "section",
                "estimated_yield": 120,
                "estimated_requests": 8,
                "confidence": 0.75,
            },
            {
                "target": "https://news.example/places/france",
                "category": "place-hub",
                "estimated_yield": 90,
                "estimated_requests": 6,
                "confidence": 0.7,
            },
            {
                "target": "https://news.example/archive/2019",
                "category": "archive",
                "estimated_yield": 300,
                "estimated_requests": 40,
                "confidence": 0.5,
            },
        ],
        "progress": {"budget_used": 0.2, "category_counts": {"section": 3}},
        "lookahead": 3,
    }


def late_stage_request(context_key: str = "late.example") -> dict[str, object]:
    """Crawl near the end of its budget; weights lean toward depth and speed."""
    return {
        "context_key": context_key,
        "domain": "late.example",
        "budget_ms": 300,
        "candidates": [
            {"target": "https://late.example/sport/", "category": "section", "estimated_yield": 60},
            {"target": "https://late.example/culture/", "category": "section", "estimated_yield": 140},
        ],
        "progress": {"budget_used": 0.92},
        "time_remaining_s": 120,
        "exploration_strategy": "epsilon-greedy",
    }


def telemetry_examples(host: str = "news.example") -> list[dict[str, object]]:
    """Fetch-layer telemetry covering one fast and one slow operation."""
    fast = [
        {"operation": "fetch", "host": host, "duration_ms": value, "result_count": 20}
        for value in (110, 130, 95, 120, 105)
    ]
    slow = [
        {"operation": "render", "host": host, "duration_ms": value, "result_count": 5}
        for value in (800, 950, 700, 1100, 870)
    ]
    return fast + slow
