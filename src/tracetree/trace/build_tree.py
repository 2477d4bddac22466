"""Rebuild a trace's call tree from the flat record set.

The tree is kept in a node arena: every node gets an index into
``Forest.nodes`` and children are lists of indices. Index 0 is always the
synthetic root of the queried trace. Each fetch cycle builds a fresh
forest; nothing here is mutated after ``build_forest`` returns.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Mapping, Optional

from tracetree.trace.record_model import Record, RecordId, parent_id, root_id

ROOT_INDEX = 0


@dataclass
class TreeNode:
    """A renderable node: precomputed label plus highlight flag."""

    record_id: RecordId
    label: str
    highlight: bool = False
    parent: Optional[int] = None
    children: list[int] = field(default_factory=list)


@dataclass
class Forest:
    """Node arena for one trace.

    ``index`` maps record identities to node indices; the synthetic root
    is only reachable through ``root`` / ``ROOT_INDEX``.
    """

    trace_id: str
    nodes: list[TreeNode]
    index: dict[RecordId, int]

    @property
    def root(self) -> TreeNode:
        return self.nodes[ROOT_INDEX]

    def __len__(self) -> int:
        return len(self.nodes)

    def children_of(self, idx: int) -> list[TreeNode]:
        return [self.nodes[c] for c in self.nodes[idx].children]

    def walk(self, start: int = ROOT_INDEX) -> Iterator[tuple[int, int]]:
        """Depth-first (index, depth) pairs below and including ``start``."""
        stack = [(start, 0)]
        while stack:
            idx, depth = stack.pop()
            yield idx, depth
            for child in reversed(self.nodes[idx].children):
                stack.append((child, depth + 1))

    def reachable(self, start: int = ROOT_INDEX) -> set[int]:
        return {idx for idx, _ in self.walk(start)}


@dataclass(frozen=True)
class BuildResult:
    """Outcome of one build: forest, orphans and root transactions."""

    forest: Forest
    orphans: list[int]
    root_transactions: list[RecordId]

    @property
    def all_resolved(self) -> bool:
        return not self.orphans

    def orphan_ids(self) -> set[RecordId]:
        return {self.forest.nodes[i].record_id for i in self.orphans}

    def orphaned_nodes(self) -> set[int]:
        """Orphans plus everything attached below them."""
        found: set[int] = set()
        for idx in self.orphans:
            found |= self.forest.reachable(idx)
        return found


def build_forest(trace_id: str, records: Mapping[RecordId, Record]) -> BuildResult:
    """Build the call tree for ``trace_id`` from a flat record set.

    Records whose parent cannot be found in the set are returned as
    orphans instead of being attached. Sibling order follows the
    iteration order of ``records``.

    Records whose parents form a cycle (A under B, B under A) all resolve,
    so they are not orphans, but no path leads from the synthetic root to
    them and they are never rendered.

    Args:
        trace_id: Trace being rebuilt; seeds the synthetic root.
        records: Record set keyed by identity (duplicates already
            collapsed, last seen wins).

    Returns:
        BuildResult; ``all_resolved`` is True iff there are no orphans.
    """
    root_key = root_id(trace_id)
    nodes: list[TreeNode] = [TreeNode(record_id=root_key, label="")]

    # Lookup table used for parent resolution. A record stored under the
    # root key shadows the synthetic root for every record except itself.
    lookup: dict[RecordId, int] = {root_key: ROOT_INDEX}
    for record_id, record in records.items():
        lookup[record_id] = len(nodes)
        nodes.append(
            TreeNode(
                record_id=record_id,
                label=record.label(),
                highlight=record.is_transaction,
            )
        )

    orphans: list[int] = []
    root_transactions: list[RecordId] = []
    for idx, (record_id, record) in enumerate(records.items(), start=1):
        wanted = parent_id(record_id, record)
        if wanted == record_id:
            # A node never resolves to itself.
            parent_idx = ROOT_INDEX if record_id == root_key else None
        else:
            parent_idx = lookup.get(wanted)

        if parent_idx is None:
            orphans.append(idx)
            continue

        nodes[idx].parent = parent_idx
        nodes[parent_idx].children.append(idx)
        if parent_idx == ROOT_INDEX and record.is_transaction:
            root_transactions.append(record_id)

    index = {n.record_id: i for i, n in enumerate(nodes) if i != ROOT_INDEX}
    forest = Forest(trace_id=trace_id, nodes=nodes, index=index)
    return BuildResult(forest=forest, orphans=orphans, root_transactions=root_transactions)
