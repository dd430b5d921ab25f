"""tmux window layout strings.

A layout looks like ``b25f,177x42,0,0{88x42,0,0,0,88x42,89,0,1}``: an optional
four-digit hex checksum, then a cell ``WxH,X,Y`` that is either a leaf carrying
``,<pane-id>`` or a container of child cells, ``{}`` for side-by-side and
``[]`` for stacked.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

_CHECKSUM_RE = re.compile(r"^[0-9a-fA-F]{4},")
_LEAF_ID_RE = re.compile(r",(\d+)(?=[,}\]]|$)")


class LayoutError(ValueError):
    pass


@dataclass(frozen=True)
class LayoutNode:
    width: int
    height: int
    x: int
    y: int
    pane_id: Optional[str] = None
    orientation: Optional[str] = None  # "horizontal" | "vertical" for containers
    children: Tuple["LayoutNode", ...] = ()

    @property
    def is_leaf(self) -> bool:
        return self.pane_id is not None


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def _peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _expect(self, char: str) -> None:
        if self._peek() != char:
            raise LayoutError(f"expected {char!r} at {self.pos} in {self.text!r}")
        self.pos += 1

    def _number(self) -> int:
        start = self.pos
        while self.pos < len(self.text) and self.text[self.pos].isdigit():
            self.pos += 1
        if start == self.pos:
            raise LayoutError(f"expected a number at {start} in {self.text!r}")
        return int(self.text[start:self.pos])

    def cell(self) -> LayoutNode:
        width = self._number()
        self._expect("x")
        height = self._number()
        self._expect(",")
        x = self._number()
        self._expect(",")
        y = self._number()

        nxt = self._peek()
        if nxt in ("{", "["):
            closing = "}" if nxt == "{" else "]"
            self.pos += 1
            children = [self.cell()]
            while self._peek() == ",":
                self.pos += 1
                children.append(self.cell())
            self._expect(closing)
            return LayoutNode(
                width, height, x, y,
                orientation="horizontal" if nxt == "{" else "vertical",
                children=tuple(children),
            )

        self._expect(",")
        pane = self._number()
        return LayoutNode(width, height, x, y, pane_id=str(pane))


def parse_layout(text: str) -> LayoutNode:
    """Parse a layout string into a tree of cells.

    Raises LayoutError on malformed input.
    """
    body = (text or "").strip()
    if _CHECKSUM_RE.match(body) and "x" not in body.split(",", 1)[0]:
        body = body[5:]
    parser = _Parser(body)
    node = parser.cell()
    if parser.pos != len(body):
        raise LayoutError(f"trailing data at {parser.pos} in {body!r}")
    return node


def iter_leaves(node: LayoutNode) -> Iterator[LayoutNode]:
    if node.is_leaf:
        yield node
        return
    for child in node.children:
        yield from iter_leaves(child)


def pane_ids(text: str) -> List[str]:
    return [leaf.pane_id for leaf in iter_leaves(parse_layout(text)) if leaf.pane_id is not None]


def scan_pane_ids(text: str) -> List[str]:
    """Loose identifier scan used when a layout does not parse.

    Picks every integer that directly precedes a delimiter or the end, which can
    include coordinates; callers only use it as a fallback.
    """
    seen: List[str] = []
    for match in _LEAF_ID_RE.finditer(text or ""):
        pane_id = match.group(1)
        if pane_id not in seen:
            seen.append(pane_id)
    return seen
