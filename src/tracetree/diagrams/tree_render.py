"""Render a rebuilt trace as a terminal tree."""
from __future__ import annotations

import io
from typing import Mapping, Optional

from rich.console import Console
from rich.text import Text
from rich.tree import Tree

from tracetree.trace.build_tree import ROOT_INDEX, BuildResult, Forest
from tracetree.trace.record_model import RecordId

TRANSACTION_STYLE = "cyan"
ORPHANED_STYLE = "red"
LINK_STYLE = "yellow"


def _label(forest: Forest, idx: int) -> Text:
    node = forest.nodes[idx]
    return Text(node.label, style=TRANSACTION_STYLE if node.highlight else "")


def subtree(forest: Forest, idx: int, tree: Optional[Tree] = None) -> Tree:
    """Build a rich Tree for node ``idx`` and everything below it.

    When ``tree`` is given the subtree is attached to it instead of
    becoming a new top-level tree.
    """
    top = tree.add(_label(forest, idx)) if tree is not None else Tree(_label(forest, idx))
    stack = [(top, idx)]
    while stack:
        branch, current = stack.pop()
        for child in forest.nodes[current].children:
            stack.append((branch.add(_label(forest, child)), child))
    return top


class TreeRenderer:
    """Prints one tree per node under the synthetic root, then orphans."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def render(self, result: BuildResult, links: Mapping[RecordId, str]) -> None:
        forest = result.forest
        for idx in forest.nodes[ROOT_INDEX].children:
            self.console.print(subtree(forest, idx))
            link = links.get(forest.nodes[idx].record_id)
            if link:
                self.console.print(
                    Text.assemble("✨ Open in Kibana: ", (link, LINK_STYLE), " ✨")
                )
            self.console.print()

        if result.orphans:
            orphaned = Tree(Text("<orphaned>", style=ORPHANED_STYLE))
            for idx in result.orphans:
                subtree(forest, idx, orphaned)
            self.console.print(orphaned)


def render_text(result: BuildResult, links: Optional[Mapping[RecordId, str]] = None) -> str:
    """Render to a plain string without colour codes."""
    buf = io.StringIO()
    console = Console(file=buf, no_color=True, color_system=None, width=200)
    TreeRenderer(console).render(result, links or {})
    return buf.getvalue()
