"""Turn stored messages into the prompt sequence sent to the completion service."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, TypedDict

from .models import SYSTEM_ROLE, Message


class PromptEntry(TypedDict):
    role: str      # "system" | "user" | "assistant"
    content: str


@dataclass(frozen=True)
class HistoryWindow:
    """Controls how much stored history is replayed on each turn.

    ``None`` disables a limit; any other limit must be at least 1, so the
    turn just recorded always reaches the model. The most recent turn is
    kept even if it alone exceeds ``max_chars``.
    """
    max_messages: Optional[int] = None
    max_chars: Optional[int] = None

    def __post_init__(self) -> None:
        for name in ("max_messages", "max_chars"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ValueError(f"{name} must be at least 1 or None, got {value!r}")

    def apply(self, turns: List[PromptEntry]) -> List[PromptEntry]:
        if self.max_messages is not None:
            turns = turns[-self.max_messages:]
        if self.max_chars is None or not turns:
            return turns

        kept: List[PromptEntry] = []
        used = 0
        for entry in reversed(turns):
            size = len(entry["content"])
            if kept and used + size > self.max_chars:
                break
            kept.append(entry)
            used += size
        kept.reverse()
        return kept


def assemble(
    stored_messages: Iterable[Message],
    system_preamble: Sequence[PromptEntry],
    window: Optional[HistoryWindow] = None,
) -> List[PromptEntry]:
    """Return ``system_preamble`` followed by the stored turns in chronological order.

    Messages are sorted ascending by ``typed_at``; the sort is stable so
    equal timestamps keep their retrieval order. Pure: no I/O.
    """
    ordered = sorted(stored_messages, key=lambda m: m.typed_at)
    turns: List[PromptEntry] = [{"role": m.role, "content": m.content} for m in ordered]
    if window is not None:
        turns = window.apply(turns)
    preamble: List[PromptEntry] = [{"role": e["role"], "content": e["content"]} for e in system_preamble]
    return preamble + turns


# -----------------------------
# Config helpers
# -----------------------------
def load_preamble(cfg: Dict[str, Any]) -> List[PromptEntry]:
    """Normalize ``history.preamble`` (strings or {role, content} dicts) to prompt entries."""
    raw = (cfg.get("history", {}) or {}).get("preamble") or []
    if isinstance(raw, str):
        raw = [raw]
    out: List[PromptEntry] = []
    for item in raw:
        if isinstance(item, str):
            text = item.strip()
            role = SYSTEM_ROLE
        elif isinstance(item, dict) and "content" in item:
            text = str(item.get("content") or "").strip()
            role = str(item.get("role") or SYSTEM_ROLE)
        else:
            raise ValueError(f"Invalid preamble entry: {item!r}")
        if text:
            out.append({"role": role, "content": text})
    return out


def load_window(cfg: Dict[str, Any]) -> HistoryWindow:
    hist_cfg = cfg.get("history", {}) or {}
    max_messages = hist_cfg.get("max_messages")
    max_chars = hist_cfg.get("max_chars")
    return HistoryWindow(
        max_messages=None if max_messages is None else int(max_messages),
        max_chars=None if max_chars is None else int(max_chars),
    )
