"""Token budget allocation across the context packed into one model call."""

import json
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Callable, Iterable, Literal

from streamloop.logging import get_logger

log = get_logger(__name__)

TokenCounter = Callable[[str], int]

SYSTEM = "system"
TEMPLATES = "templates"
COMPONENTS = "components"
ARTIFACTS = "artifacts"
CONVERSATION = "conversation"
RESPONSE_BUFFER = "response_buffer"

DEFAULT_BUDGETS: dict[str, int] = {
    SYSTEM: 6_000,
    TEMPLATES: 4_500,
    COMPONENTS: 3_000,
    ARTIFACTS: 12_000,
    CONVERSATION: 3_000,
    RESPONSE_BUFFER: 1_500,
}

BUDGET_PROFILES: dict[str, dict[str, int]] = {
    "default": DEFAULT_BUDGETS,
    # New work: more templates and components, little existing content
    "generation": {
        SYSTEM: 6_000,
        TEMPLATES: 7_500,
        COMPONENTS: 4_500,
        ARTIFACTS: 6_000,
        CONVERSATION: 4_500,
        RESPONSE_BUFFER: 1_500,
    },
    # Incremental edits: mostly existing artifacts
    "editing": {
        SYSTEM: 6_000,
        TEMPLATES: 3_000,
        COMPONENTS: 3_000,
        ARTIFACTS: 15_000,
        CONVERSATION: 1_500,
        RESPONSE_BUFFER: 1_500,
    },
    "diagnostic": {
        SYSTEM: 6_000,
        TEMPLATES: 1_500,
        COMPONENTS: 1_500,
        ARTIFACTS: 18_000,
        CONVERSATION: 1_500,
        RESPONSE_BUFFER: 1_500,
    },
}
PROFILE_ALIASES = {"analysis": "diagnostic"}

WARNING_RATIO = 0.85
OVER_BUDGET_RATIO = 0.9
UNDER_UTILIZED_RATIO = 0.3


def estimate_tokens(text: str) -> int:
    """Rough token count: about four characters per token."""
    if not text:
        return 0
    return max(1, len(text) // 4)


ContentType = Literal["code", "text", "json", "markdown"]

_CONTENT_RATIOS: dict[str, float] = {
    "code": 3.2,
    "text": 3.8,
    "json": 2.8,
    "markdown": 3.5,
}
_CODE_SUFFIXES = {".tsx", ".ts", ".jsx", ".js", ".py", ".rb", ".php", ".go", ".rs"}
_PUNCTUATION = set("{}[](),.;:\"'`!@#$%^&*-+=|\\/<>?~")
_WHITESPACE = set(" \t\n\r")


class ContentAwareTokenEstimator:
    """Characters-per-token estimate that adapts to the kind of content."""

    def __init__(self, ratios: dict[str, float] | None = None):
        self.ratios = dict(_CONTENT_RATIOS)
        if ratios:
            self.ratios.update(ratios)

    def __call__(self, text: str) -> int:
        return self.count(text)

    def count(self, text: str, content_type: ContentType | None = None) -> int:
        if not text:
            return 0
        content_type = content_type or self.detect_content_type(text)
        ratio = self.ratios.get(content_type, self.ratios["text"])
        base = round(len(text) / ratio)
        return round(base * self.adjustment_factor(text, content_type))

    def count_file(self, text: str, path: str) -> int:
        return self.count(text, self.content_type_for_path(path))

    @staticmethod
    def detect_content_type(text: str) -> ContentType:
        stripped = text.strip()
        if stripped.startswith(("{", "[")):
            try:
                json.loads(stripped)
                return "json"
            except json.JSONDecodeError:
                pass
        if "##" in text or "```" in text:
            return "markdown"
        if any(marker in text for marker in ("import ", "function ", "const ", "export ", "def ", "class ")):
            return "code"
        return "text"

    @staticmethod
    def content_type_for_path(path: str) -> ContentType:
        suffix = PurePath(path).suffix.lower()
        if suffix == ".json":
            return "json"
        if suffix in (".md", ".markdown"):
            return "markdown"
        if suffix in _CODE_SUFFIXES:
            return "code"
        return "text"

    @staticmethod
    def adjustment_factor(text: str, content_type: str) -> float:
        factor = 1.0
        length = len(text)

        punctuation = sum(1 for ch in text if ch in _PUNCTUATION) / length
        if punctuation > 0.25:
            factor *= 1.2
        elif punctuation > 0.15:
            factor *= 1.1

        whitespace = sum(1 for ch in text if ch in _WHITESPACE) / length
        if whitespace > 0.3:
            factor *= 1.05

        if content_type == "code":
            lines = text.splitlines(keepends=True) or [text]
            average = sum(len(line) for line in lines) // len(lines)
            if average < 20:
                factor *= 1.1
            elif average > 120:
                factor *= 0.95

        return max(factor, 0.8)


@dataclass
class BudgetItem:
    """A candidate piece of context."""

    key: str
    content: str = ""
    relevance: float = 0.0
    tokens: int | None = None
    metadata: dict[str, Any] | None = None


def resolve_profile(name: str | None) -> str:
    """Canonical profile name; unknown names fall back to ``default``."""
    key = (name or "default").strip().lower()
    key = PROFILE_ALIASES.get(key, key)
    return key if key in BUDGET_PROFILES else "default"


class TokenBudgetAllocator:
    """Track token usage per bucket against a fixed budget."""

    def __init__(
        self,
        profile: str | None = None,
        counter: TokenCounter | None = None,
        budgets: dict[str, int] | None = None,
        warning_ratio: float = WARNING_RATIO,
    ):
        self.profile = resolve_profile(profile)
        self.counter = counter or estimate_tokens
        self.budgets = dict(budgets) if budgets is not None else dict(BUDGET_PROFILES[self.profile])
        self.warning_ratio = warning_ratio
        self.used: dict[str, int] = {bucket: 0 for bucket in self.budgets}
        log.debug("Token budget initialized", profile=self.profile, total=self.total_budget)

    @classmethod
    def for_operation(
        cls,
        operation: str | None,
        counter: TokenCounter | None = None,
        overrides: dict[str, dict[str, int]] | None = None,
        warning_ratio: float = WARNING_RATIO,
    ) -> "TokenBudgetAllocator":
        """Allocator sized for an operation kind, with optional per-profile overrides."""
        profile = resolve_profile(operation)
        budgets = dict(BUDGET_PROFILES[profile])
        if overrides and profile in overrides:
            budgets.update(overrides[profile])
        return cls(profile=profile, counter=counter, budgets=budgets, warning_ratio=warning_ratio)

    @property
    def total_budget(self) -> int:
        return sum(self.budgets.values())

    @property
    def total_used(self) -> int:
        return sum(self.used.values())

    def budget_for(self, bucket: str) -> int:
        return self.budgets.get(bucket, 0)

    def remaining(self, bucket: str) -> int:
        return self.budget_for(bucket) - self.used.get(bucket, 0)

    def cost(self, item: BudgetItem | str) -> int:
        if isinstance(item, BudgetItem):
            if item.tokens is not None:
                return item.tokens
            return self.counter(item.content)
        return self.counter(item)

    def can_add(self, bucket: str, content: BudgetItem | str) -> bool:
        return self.cost(content) <= self.remaining(bucket)

    def add(self, bucket: str, content: BudgetItem | str, description: str | None = None) -> bool:
        """Charge content to a bucket. Overflow is rejected and nothing changes."""
        tokens = self.cost(content)
        if tokens > self.remaining(bucket):
            log.warning(
                "Token budget exceeded",
                bucket=bucket,
                tokens=tokens,
                used=self.used.get(bucket, 0),
                budget=self.budget_for(bucket),
            )
            return False
        self.used[bucket] = self.used.get(bucket, 0) + tokens
        if description:
            log.debug("Added to token budget", bucket=bucket, tokens=tokens, item=description)
        return True

    def select(self, bucket: str, items: Iterable[BudgetItem]) -> list[BudgetItem]:
        """Greedy selection: highest relevance first, ties by smallest cost.

        Items that no longer fit are skipped; smaller ones after them may still
        be taken. Selected items are charged to the bucket.
        """
        candidates = [(item, self.cost(item)) for item in items]
        candidates.sort(key=lambda pair: (-pair[0].relevance, pair[1]))

        selected: list[BudgetItem] = []
        for item, tokens in candidates:
            if tokens <= self.remaining(bucket):
                self.used[bucket] = self.used.get(bucket, 0) + tokens
                selected.append(item)
            else:
                log.debug("Skipping item over budget", bucket=bucket, item=item.key, tokens=tokens)

        log.info(
            "Selected items within budget",
            bucket=bucket,
            selected=len(selected),
            candidates=len(candidates),
            used=self.used.get(bucket, 0),
            budget=self.budget_for(bucket),
        )
        return selected

    def usage_summary(self) -> dict[str, Any]:
        total = self.total_budget
        by_bucket = {}
        for bucket, budget in self.budgets.items():
            used = self.used.get(bucket, 0)
            by_bucket[bucket] = {
                "budget": budget,
                "used": used,
                "remaining": budget - used,
                "percent_used": round(used / budget * 100, 1) if budget > 0 else 0.0,
            }
        return {
            "profile": self.profile,
            "total_budget": total,
            "total_used": self.total_used,
            "total_remaining": total - self.total_used,
            "utilization_percent": round(self.total_used / total * 100, 1) if total > 0 else 0.0,
            "by_bucket": by_bucket,
        }

    def budget_warning(self) -> bool:
        total = self.total_budget
        return total > 0 and self.total_used / total >= self.warning_ratio

    def budget_exceeded(self) -> bool:
        return self.total_used > self.total_budget

    def recommendations(self) -> list[dict[str, str]]:
        """Flag buckets that are nearly full or barely used."""
        result = []
        for bucket, budget in self.budgets.items():
            if budget <= 0:
                continue
            utilization = self.used.get(bucket, 0) / budget
            percent = round(utilization * 100)
            if utilization > OVER_BUDGET_RATIO:
                result.append({
                    "type": "over_budget",
                    "bucket": bucket,
                    "message": f"{bucket} is at {percent}% of its budget. Reduce content or increase the allocation.",
                })
            elif utilization < UNDER_UTILIZED_RATIO:
                result.append({
                    "type": "under_utilized",
                    "bucket": bucket,
                    "message": f"{bucket} is only {percent}% utilized. Its tokens could go to other buckets.",
                })
        return result
