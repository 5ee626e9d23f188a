import pytest

from codebase_testing_agent.services.categories import (
    CATEGORIES,
    estimate_test_count,
    resolve_categories,
    target_count,
)
from codebase_testing_agent.services.errors import ValidationError


def test_resolve_keeps_order_and_ignores_duplicates():
    resolved = resolve_categories(["API", "functional", "api"])

    assert [category.id for category in resolved] == ["api", "functional"]


def test_resolve_rejects_unknown_or_empty():
    with pytest.raises(ValidationError, match="astrology"):
        resolve_categories(["functional", "astrology"])
    with pytest.raises(ValidationError):
        resolve_categories([])


def test_target_counts_round_up():
    e2e = CATEGORIES["e2e"]

    assert target_count(e2e, "basic") == 3
    assert target_count(e2e, "standard") == 5
    assert target_count(e2e, "comprehensive") == 8
    assert estimate_test_count(list(CATEGORIES)) == 47
