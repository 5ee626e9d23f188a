import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from codebase_testing_agent.services.errors import ValidationError

COMPLEXITY_MULTIPLIERS: Dict[str, float] = {
    "basic": 0.5,
    "standard": 1.0,
    "comprehensive": 1.5,
}


@dataclass(frozen=True)
class TestCategory:
    __test__ = False

    id: str
    name: str
    description: str
    baseline_tests: int
    frameworks: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def default_framework(self) -> str:
        return self.frameworks[0] if self.frameworks else "unknown"


CATEGORIES: Dict[str, TestCategory] = {
    category.id: category
    for category in (
        TestCategory(
            "functional",
            "Functional Testing",
            "Core business logic and user workflows",
            10,
            ("jest", "playwright", "cypress"),
        ),
        TestCategory(
            "security",
            "Security Testing",
            "Vulnerability scanning and penetration testing",
            6,
            ("owasp-zap", "jest", "newman"),
        ),
        TestCategory(
            "performance",
            "Performance Testing",
            "Load testing and performance validation",
            4,
            ("k6", "lighthouse", "jest"),
        ),
        TestCategory(
            "api",
            "API Testing",
            "REST/GraphQL endpoint validation",
            8,
            ("newman", "jest", "supertest"),
        ),
        TestCategory(
            "integration",
            "Integration Testing",
            "Component and service integration",
            6,
            ("jest", "playwright", "cypress"),
        ),
        TestCategory(
            "e2e",
            "End-to-End Testing",
            "Complete user journey validation",
            5,
            ("playwright", "cypress", "selenium"),
        ),
        TestCategory(
            "accessibility",
            "Accessibility Testing",
            "WCAG compliance and screen reader support",
            4,
            ("axe-core", "lighthouse", "playwright"),
        ),
        TestCategory(
            "mobile",
            "Mobile Testing",
            "Native and responsive mobile behaviour",
            4,
            ("appium", "detox", "playwright"),
        ),
    )
}


def resolve_categories(names: Iterable[str]) -> List[TestCategory]:
    """Look up the requested categories in order, ignoring duplicates."""
    resolved: List[TestCategory] = []
    unknown: List[str] = []
    for raw in names:
        key = str(raw).strip().lower()
        category = CATEGORIES.get(key)
        if category is None:
            unknown.append(str(raw))
        elif category not in resolved:
            resolved.append(category)
    if unknown:
        raise ValidationError(f"Unknown test categories: {', '.join(unknown)}")
    if not resolved:
        raise ValidationError("At least one test category is required")
    return resolved


def complexity_multiplier(complexity: str) -> float:
    try:
        return COMPLEXITY_MULTIPLIERS[complexity]
    except KeyError:
        raise ValidationError(f"Unknown complexity: {complexity}") from None


def target_count(category: TestCategory, complexity: str) -> int:
    return math.ceil(category.baseline_tests * complexity_multiplier(complexity))


def estimate_test_count(categories: Iterable[str], complexity: str = "standard") -> int:
    """
    Rough number of test cases a generation run would produce. Display hint
    only; statistics always use the generated test cases.
    """
    return sum(
        target_count(category, complexity)
        for category in resolve_categories(categories)
    )
