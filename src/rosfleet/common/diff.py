"""Diff helpers for comparing two configuration snapshots."""

from __future__ import annotations

import difflib
import hashlib
from dataclasses import dataclass
from typing import Callable


@dataclass(slots=True)
class DiffOutcome:
    """Result of comparing two backup texts."""

    baseline_label: str
    current_label: str
    config_changed: bool
    baseline_sha256: str
    current_sha256: str
    baseline_lines: int
    current_lines: int
    added: int = 0
    removed: int = 0
    diff_text: str | None = None


def _hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _count_added_removed(diff_lines: list[str]) -> tuple[int, int]:
    added = sum(1 for line in diff_lines if line.startswith("+") and not line.startswith("+++"))
    removed = sum(1 for line in diff_lines if line.startswith("-") and not line.startswith("---"))
    return added, removed


def generate_diff(prev: str, curr: str, from_label: str, to_label: str) -> tuple[str, int, int]:
    """Generate a unified diff along with added/removed line counts."""

    diff_lines = list(
        difflib.unified_diff(prev.splitlines(), curr.splitlines(), fromfile=from_label, tofile=to_label, lineterm="")
    )
    added, removed = _count_added_removed(diff_lines)
    diff_text = "\n".join(diff_lines)
    if diff_text:
        diff_text += "\n"
    return diff_text, added, removed


def compare_texts(
    baseline: str,
    current: str,
    normalizer: Callable[[str], str],
    baseline_label: str = "baseline",
    current_label: str = "current",
) -> DiffOutcome:
    """Compare two snapshots after normalizing away volatile lines."""

    prev_text = normalizer(baseline)
    curr_text = normalizer(current)
    prev_hash = _hash_text(prev_text)
    curr_hash = _hash_text(curr_text)

    outcome = DiffOutcome(
        baseline_label=baseline_label,
        current_label=current_label,
        config_changed=prev_hash != curr_hash,
        baseline_sha256=prev_hash,
        current_sha256=curr_hash,
        baseline_lines=len(prev_text.splitlines()),
        current_lines=len(curr_text.splitlines()),
    )
    if outcome.config_changed:
        outcome.diff_text, outcome.added, outcome.removed = generate_diff(
            prev_text, curr_text, baseline_label, current_label
        )
    return outcome
