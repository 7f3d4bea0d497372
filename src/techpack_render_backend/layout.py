"""
Page layout planning for Tech Pack documents.

The planner turns a Document Snapshot into an ordered Page Plan. Each content
block type has a maximum number of rows per page; a block's items are walked
in their original order and cut into consecutive slices of at most that many
items. Block types never share a page, and the article header always occupies
page 1 on its own. Empty blocks contribute no pages, which keeps the plan in
line with the page estimate reported by describe().

The planner is pure: no I/O, no shared state, and the only failure mode is a
malformed snapshot.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import InvalidSnapshotError
from .models import DocumentSnapshot


class BlockType(str, Enum):
    HEADER = "header"
    BOM = "bom"
    MEASUREMENTS = "measurements"
    HOW_TO_MEASURE = "how_to_measure"
    COLORWAYS = "colorways"
    NOTES = "notes"


# Order in which blocks appear in the document after the header page.
BLOCK_ORDER: Tuple[BlockType, ...] = (
    BlockType.BOM,
    BlockType.MEASUREMENTS,
    BlockType.HOW_TO_MEASURE,
    BlockType.COLORWAYS,
    BlockType.NOTES,
)

DEFAULT_ROWS_PER_PAGE: Dict[BlockType, int] = {
    BlockType.BOM: 15,
    BlockType.MEASUREMENTS: 20,
    BlockType.HOW_TO_MEASURE: 3,
    BlockType.COLORWAYS: 4,
    BlockType.NOTES: 4,
}


@dataclass(frozen=True)
class PagePlanEntry:
    """
    One page of the plan.

    Attributes:
        page_index: Zero-based position of the page in the final document
        block_type: Content block rendered on this page
        slice_start: Index of the first block item on this page
        slice_end: Index one past the last block item on this page
        items: The block items themselves, in original order
    """

    page_index: int
    block_type: BlockType
    slice_start: int
    slice_end: int
    items: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class PagePlan:
    document_id: str
    content_version: str
    entries: Tuple[PagePlanEntry, ...] = field(default_factory=tuple)

    @property
    def total_pages(self) -> int:
        return len(self.entries)

    def page(self, page_number: int) -> Optional[PagePlanEntry]:
        """Return the entry for a 1-based page number, or None when out of range."""
        if 1 <= page_number <= len(self.entries):
            return self.entries[page_number - 1]
        return None


class PageLayoutPlanner:
    """
    Computes Page Plans from snapshots under fixed per-block thresholds.

    Args:
        rows_per_page: Per block type maximum items on one page; missing
            block types fall back to DEFAULT_ROWS_PER_PAGE
    """

    def __init__(self, rows_per_page: Optional[Mapping[Any, int]] = None) -> None:
        thresholds = dict(DEFAULT_ROWS_PER_PAGE)
        for key, value in (rows_per_page or {}).items():
            block_type = BlockType(key)
            if block_type == BlockType.HEADER:
                continue
            if int(value) < 1:
                raise ValueError(f"rows per page for {block_type.value} must be positive, got {value}")
            thresholds[block_type] = int(value)
        self.rows_per_page = thresholds

    @classmethod
    def from_config(cls, layout_config: Any) -> "PageLayoutPlanner":
        return cls({block_type: getattr(layout_config, block_type.value) for block_type in BLOCK_ORDER})

    def plan(self, snapshot: Any) -> PagePlan:
        """
        Build the Page Plan for a snapshot.

        Args:
            snapshot: A DocumentSnapshot or a raw snapshot mapping

        Returns:
            PagePlan with the header page first and every non-empty block after it

        Raises:
            InvalidSnapshotError: If the snapshot is malformed
        """
        snapshot = DocumentSnapshot.from_payload(snapshot)

        entries = [PagePlanEntry(page_index=0, block_type=BlockType.HEADER, slice_start=0, slice_end=1, items=(snapshot.article,))]
        for block_type in BLOCK_ORDER:
            items = self._block_items(snapshot, block_type)
            threshold = self.rows_per_page[block_type]
            for start in range(0, len(items), threshold):
                chunk = items[start:start + threshold]
                entries.append(
                    PagePlanEntry(
                        page_index=len(entries),
                        block_type=block_type,
                        slice_start=start,
                        slice_end=start + len(chunk),
                        items=tuple(chunk),
                    )
                )

        return PagePlan(
            document_id=snapshot.document_id,
            content_version=snapshot.content_version,
            entries=tuple(entries),
        )

    def estimate_pages(self, snapshot: Any) -> int:
        """Page count without materialising slices."""
        snapshot = DocumentSnapshot.from_payload(snapshot)
        pages = 1
        for block_type in BLOCK_ORDER:
            pages += math.ceil(len(self._block_items(snapshot, block_type)) / self.rows_per_page[block_type])
        return pages

    @staticmethod
    def _block_items(snapshot: DocumentSnapshot, block_type: BlockType) -> Tuple[Any, ...]:
        if block_type == BlockType.BOM:
            return snapshot.bom
        if block_type == BlockType.MEASUREMENTS:
            return snapshot.measurements
        if block_type == BlockType.HOW_TO_MEASURE:
            return snapshot.how_to_measure
        if block_type == BlockType.COLORWAYS:
            return snapshot.colorways
        if block_type == BlockType.NOTES:
            return snapshot.notes
        raise InvalidSnapshotError(f"Unknown block type: {block_type}")
