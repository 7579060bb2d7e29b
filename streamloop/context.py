"""Context store and per-call context composition."""

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from streamloop.logging import get_logger
from streamloop.state import AgentIterationState
from streamloop.token_budget import (
    ARTIFACTS,
    COMPONENTS,
    CONVERSATION,
    SYSTEM,
    TEMPLATES,
    BudgetItem,
    TokenBudgetAllocator,
    TokenCounter,
)

log = get_logger(__name__)

CONTEXT_BUCKETS = (TEMPLATES, COMPONENTS, ARTIFACTS)


class ContextStore(Protocol):
    """Named content items with relevance metadata."""

    def put(self, key: str, content: str, bucket: str = ARTIFACTS, relevance: float = 0.0) -> None: ...

    def get(self, key: str) -> str | None: ...

    def items(self, bucket: str) -> list[BudgetItem]: ...


class InMemoryContextStore:
    """Dictionary-backed ContextStore."""

    def __init__(self):
        self._items: dict[str, tuple[str, BudgetItem]] = {}

    def put(self, key: str, content: str, bucket: str = ARTIFACTS, relevance: float = 0.0) -> None:
        self._items[key] = (bucket, BudgetItem(key=key, content=content, relevance=relevance))

    def get(self, key: str) -> str | None:
        entry = self._items.get(key)
        return entry[1].content if entry else None

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def items(self, bucket: str) -> list[BudgetItem]:
        return [item for item_bucket, item in self._items.values() if item_bucket == bucket]

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class ComposedContext:
    """System text and messages for one model call."""

    system: str
    messages: list[dict[str, Any]]
    allocator: TokenBudgetAllocator
    selected: dict[str, list[str]] = field(default_factory=dict)


class ContextComposer:
    """Pack system prompt, stored context and history into budgeted buckets."""

    def __init__(
        self,
        store: ContextStore | None = None,
        counter: TokenCounter | None = None,
        profile_overrides: dict[str, dict[str, int]] | None = None,
        warning_ratio: float = 0.85,
    ):
        self.store = store or InMemoryContextStore()
        self.counter = counter
        self.profile_overrides = profile_overrides or {}
        self.warning_ratio = warning_ratio

    def compose(
        self,
        state: AgentIterationState,
        system_prompt: str = "",
        operation: str | None = None,
    ) -> ComposedContext:
        allocator = TokenBudgetAllocator.for_operation(
            operation,
            counter=self.counter,
            overrides=self.profile_overrides,
            warning_ratio=self.warning_ratio,
        )
        if system_prompt and not allocator.add(SYSTEM, system_prompt, "system prompt"):
            log.warning("System prompt exceeds its budget", profile=allocator.profile)

        sections: list[str] = [system_prompt] if system_prompt else []
        selected: dict[str, list[str]] = {}
        for bucket in CONTEXT_BUCKETS:
            chosen = allocator.select(bucket, self.store.items(bucket))
            selected[bucket] = [item.key for item in chosen]
            for item in chosen:
                sections.append(f"## {bucket}: {item.key}\n{item.content}")

        messages = state.messages()
        # History is sent whole; dropping turns would break tool_use/tool_result pairing
        history_text = json.dumps(messages, ensure_ascii=False)
        if not allocator.add(CONVERSATION, history_text):
            log.warning(
                "Conversation history exceeds its budget",
                profile=allocator.profile,
                turns=len(messages),
            )
        if allocator.budget_warning():
            log.warning("Token budget nearly exhausted", **_summary_fields(allocator))

        return ComposedContext(
            system="\n\n".join(sections),
            messages=messages,
            allocator=allocator,
            selected=selected,
        )


def _summary_fields(allocator: TokenBudgetAllocator) -> dict[str, Any]:
    summary = allocator.usage_summary()
    return {
        "profile": summary["profile"],
        "used": summary["total_used"],
        "budget": summary["total_budget"],
    }
