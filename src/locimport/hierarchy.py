"""Fold flat location rows into a forest of ImportNode trees.

Each row is a left-to-right walk from a root down to a leaf, three cells per
level. Rows that share a prefix of names share the nodes along it, so the
merge never produces duplicate siblings.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Iterable, Iterator, Mapping, Sequence

from locimport.models import ImportNode, Path, is_known_label, resolve_form
from locimport.sources.csv_file import GROUP_WIDTH, LocationSheet

Forest = tuple[ImportNode, ...]


def _has_data(tail: Sequence[str]) -> bool:
    return len(tail) > 0 and tail[0] != ""


def merge_row(forest: Forest, cells: Sequence[str]) -> Forest:
    """Merge one row into a forest level, returning the new level.

    The input forest is not modified. An empty name ends the branch.
    """
    if not cells or not cells[0]:
        return forest

    name = cells[0]
    label = cells[1] if len(cells) > 1 else ""
    description = cells[2] if len(cells) > 2 else ""
    tail = cells[GROUP_WIDTH:]

    for i, existing in enumerate(forest):
        if existing.name != name:
            continue
        if not _has_data(tail):
            return forest
        merged = replace(existing, children=merge_row(existing.children, tail))
        return forest[:i] + (merged,) + forest[i + 1 :]

    children = merge_row((), tail) if _has_data(tail) else ()
    node = ImportNode(
        name=name,
        form=resolve_form(label),
        description=description,
        children=children,
    )
    return forest + (node,)


def parse_rows(rows: Iterable[Sequence[str]]) -> Forest:
    """Build the forest from rows, in row order."""
    forest: Forest = ()
    for row in rows:
        forest = merge_row(forest, row)
    return forest


@dataclass
class ParsedSheet:
    """A parsed forest plus what the parser noticed along the way."""

    forest: Forest
    skipped_lines: list[int] = field(default_factory=list)
    unknown_labels: Counter = field(default_factory=Counter)
    source: str = ""

    @property
    def total(self) -> int:
        return count_nodes(self.forest)


def _unknown_labels(rows: Iterable[Sequence[str]]) -> Counter:
    """Tally non-empty type labels that fall back to the default form."""
    tally: Counter = Counter()
    for row in rows:
        for i in range(0, len(row) - 1, GROUP_WIDTH):
            if not row[i]:
                break
            label = row[i + 1]
            if label and not is_known_label(label):
                tally[label] += 1
    return tally


def parse_sheet(sheet: LocationSheet) -> ParsedSheet:
    return ParsedSheet(
        forest=parse_rows(sheet.rows),
        skipped_lines=list(sheet.skipped_lines),
        unknown_labels=_unknown_labels(sheet.rows),
        source=sheet.source,
    )


def iter_nodes(forest: Forest, parent_path: Path = ()) -> Iterator[tuple[Path, ImportNode]]:
    """Depth-first walk yielding (path, node) pairs."""
    for node in forest:
        path = parent_path + (node.name,)
        yield path, node
        yield from iter_nodes(node.children, path)


def count_nodes(forest: Forest) -> int:
    return sum(1 for _ in iter_nodes(forest))


def max_depth(forest: Forest) -> int:
    return max((len(path) for path, _ in iter_nodes(forest)), default=0)


def attach_ids(forest: Forest, ids: Mapping[Path, str], parent_path: Path = ()) -> Forest:
    """Return a copy of the forest with server ids set from a path mapping.

    Nodes whose path is not in the mapping keep their current server_id.
    """
    out = []
    for node in forest:
        path = parent_path + (node.name,)
        out.append(
            replace(
                node,
                server_id=ids.get(path, node.server_id),
                children=attach_ids(node.children, ids, path),
            )
        )
    return tuple(out)


def collect_ids(forest: Forest) -> dict[Path, str]:
    """Map every node that carries a server id to that id."""
    return {path: node.server_id for path, node in iter_nodes(forest) if node.server_id}


def render_outline(forest: Forest, indent: str = "  ") -> str:
    """Render the forest as an indented plain-text outline."""
    lines = []
    for path, node in iter_nodes(forest):
        pad = indent * (len(path) - 1)
        line = f"{pad}{node.name} [{node.form}, {node.mode}]"
        if node.description:
            line += f" - {node.description}"
        if node.server_id:
            line += f" (id {node.server_id})"
        lines.append(line)
    return "\n".join(lines)
