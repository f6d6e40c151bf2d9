"""
Identity-keyed diff-and-merge of an invoice's child collection.

Incoming edits are matched to loaded children by id. A match is updated in
place, an edit without a match builds a new child, and every loaded child no
edit referred to is marked for removal.
"""
from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass
class CollectionDiff:
    kept: list = field(default_factory=list)
    created: list = field(default_factory=list)
    removed: list = field(default_factory=list)

    @property
    def children(self) -> list:
        """Kept children followed by the ones marked for removal."""
        return self.kept + self.removed


def reconcile_children(
    existing: list,
    edits: list,
    build: Callable[[Any], Any],
    update: Callable[[Any, Any], None],
) -> CollectionDiff:
    by_id = {child.id: child for child in existing if child.id is not None}
    diff = CollectionDiff()
    matched = set()

    for edit in edits:
        child = by_id.get(edit.id) if edit.id is not None else None
        if child is None:
            child = build(edit)
            diff.created.append(child)
            diff.kept.append(child)
            continue
        update(child, edit)
        # A repeated id updates the same child again but keeps it once
        if child.id not in matched:
            matched.add(child.id)
            diff.kept.append(child)

    for child in existing:
        if child.id not in matched:
            child.marked_for_removal = True
            diff.removed.append(child)
    return diff
