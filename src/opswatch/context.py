"""Memory context assembly for injection into session system prompts."""

from datetime import datetime

from opswatch.models import Memory, MemoryContext
from opswatch.store import OpsStore

DEFAULT_BUDGET_TOKENS = 2000
CHARS_PER_TOKEN = 4
GENERAL_GROUP = "general"


def estimate_tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN


def format_memory_line(memory: Memory) -> str:
    return f"- [{memory.category.value}] {memory.observation} (confidence: {memory.confidence:.1f})"


def _header(included: int, total: int, tokens: int) -> str:
    return f"## Operational Memory ({included} of {total} memories, ~{tokens} tokens)"


class MemoryContextBuilder:
    """Selects the strongest active memories that fit a token budget."""

    def __init__(self, store: OpsStore, budget_tokens: int = DEFAULT_BUDGET_TOKENS):
        self.store = store
        self.budget_tokens = budget_tokens

    def build(self, now: datetime | None = None) -> MemoryContext:
        """Run the staleness sweep, then render memories grouped by service.

        Memories are taken in descending confidence until the next one would
        push the rendering over budget; selection stops there.
        """
        self.store.decay_stale_memories(now=now)
        memories = self.store.active_memories()
        total = len(memories)
        if total == 0 or self.budget_tokens <= 0:
            return MemoryContext(text="", included=0, total=total, tokens=0)

        max_chars = self.budget_tokens * CHARS_PER_TOKEN
        # Reserve room for the widest header this rendering could get.
        used = len(_header(total, total, self.budget_tokens)) + 1

        groups: dict[str, list[str]] = {}
        included = 0
        for memory in memories:
            group = memory.service or GENERAL_GROUP
            line = format_memory_line(memory)
            cost = len(line) + 1
            if group not in groups:
                cost += len(f"\n### {group}\n")
            if used + cost > max_chars:
                break
            groups.setdefault(group, []).append(line)
            used += cost
            included += 1

        if included == 0:
            return MemoryContext(text="", included=0, total=total, tokens=0)

        body_parts = []
        for group, lines in groups.items():
            body_parts.append(f"\n### {group}\n" + "\n".join(lines))
        body = "".join(body_parts)

        tokens = estimate_tokens(_header(included, total, self.budget_tokens) + "\n" + body)
        text = _header(included, total, tokens) + "\n" + body
        return MemoryContext(text=text, included=included, total=total, tokens=tokens)
