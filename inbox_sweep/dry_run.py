"""Record-only mailbox writes for trial runs.

``inbox-sweep run --dry-run`` swaps the Graph label applier for
:class:`DryRunLabelApplier`: a few messages go through redaction, the model
and the guardrails as usual, but every label, marker and reply is only
recorded and then reported.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from .interfaces import LabelApplier

PREVIEW_CHARS = 200


@dataclass
class PlannedAction:
    item_id: str
    action: str  # label | marker | draft | send
    value: str


class DryRunLabelApplier(LabelApplier):
    def __init__(self) -> None:
        self.actions: List[PlannedAction] = []

    def apply_outcome_label(self, item_id: str, label: str) -> None:
        self.actions.append(PlannedAction(item_id, "label", label))

    def apply_terminal_marker(self, item_id: str, ok: bool) -> None:
        self.actions.append(PlannedAction(item_id, "marker", "ok" if ok else "error"))

    def create_draft_or_reply(self, item_id: str, text: str, send: bool = False) -> Optional[str]:
        preview = " ".join(text.split())
        if len(preview) > PREVIEW_CHARS:
            preview = preview[:PREVIEW_CHARS] + "..."
        self.actions.append(PlannedAction(item_id, "send" if send else "draft", preview))
        return None

    def by_item(self) -> Dict[str, List[PlannedAction]]:
        grouped: Dict[str, List[PlannedAction]] = {}
        for action in self.actions:
            grouped.setdefault(action.item_id, []).append(action)
        return grouped


def render_plan(applier: DryRunLabelApplier) -> List[str]:
    lines = []
    for item_id, actions in applier.by_item().items():
        parts = []
        for a in actions:
            if a.action in ("draft", "send"):
                parts.append(f'would {a.action} "{a.value}"')
            else:
                parts.append(f"{a.action}={a.value}")
        lines.append(f"  - `{item_id}`: " + ", ".join(parts))
    return lines
