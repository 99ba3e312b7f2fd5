from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, List, Optional

from .indexing import PageIndexMapper
from .models import GapBatchInfo, GapDetectionResult, GapRange, PageGap, ProductRecord
from .storage import SqliteStorage

logger = logging.getLogger(__name__)

CONTINUOUS_GAP_MIN_LENGTH = 3
MAX_PAGES_PER_BATCH = 10
SECONDS_PER_PAGE = 5
MAX_RECOMMENDED_CONCURRENCY = 5


def fold_ranges(gaps: Iterable[PageGap]) -> List[GapRange]:
    """Fold gap page ids into maximal runs of adjacent ids.

    Each run is reported high-to-low (start_page is the largest id), the
    same direction the site paginates. Runs of CONTINUOUS_GAP_MIN_LENGTH or
    more get priority 1, shorter ones priority 2.
    """
    by_id: Dict[int, PageGap] = {}
    for gap in gaps:
        by_id[gap.page_id] = gap
    ids = sorted(by_id)
    runs: List[List[int]] = []
    for page_id in ids:
        if runs and page_id == runs[-1][-1] + 1:
            runs[-1].append(page_id)
        else:
            runs.append([page_id])

    ranges = []
    for run in runs:
        length = len(run)
        continuous = length >= CONTINUOUS_GAP_MIN_LENGTH
        missing = sum(len(by_id[p].missing_indices) for p in run)
        if length == 1:
            reason = f"isolated gap at page id {run[0]}"
        else:
            kind = "continuous" if continuous else "short"
            reason = f"{kind} gap of {length} pages"
        ranges.append(
            GapRange(
                start_page=max(run),
                end_page=min(run),
                reason=reason,
                priority=1 if continuous else 2,
                estimated_item_count=missing,
            )
        )
    ranges.sort(key=lambda r: (r.priority, -r.start_page))
    return ranges


def plan_batches(page_count: int, max_pages_per_batch: int = MAX_PAGES_PER_BATCH) -> GapBatchInfo:
    if page_count <= 0:
        return GapBatchInfo(total_batches=0, estimated_minutes=0, recommended_concurrency=1)
    batches = math.ceil(page_count / max_pages_per_batch)
    minutes = math.ceil((page_count * SECONDS_PER_PAGE + batches) / 60)
    concurrency = min(MAX_RECOMMENDED_CONCURRENCY, max(1, math.ceil(batches / 3)))
    return GapBatchInfo(total_batches=batches, estimated_minutes=minutes, recommended_concurrency=concurrency)


class GapDetector:
    """Finds pages whose stored products fall short of the expected layout.

    Every page id from 0 up to the highest stored one is expected to hold
    products_per_page products at positions 0..products_per_page-1. The
    highest page id may hold fewer when last_page_expected_count is given.
    With a mapper of the live site layout, every page id the site still
    has is held to the mapper's count instead.
    """

    def __init__(
        self,
        storage: SqliteStorage,
        products_per_page: int = 12,
        last_page_expected_count: Optional[int] = None,
        mapper: Optional[PageIndexMapper] = None,
    ) -> None:
        self._storage = storage
        self._ppp = products_per_page
        self._last_expected = last_page_expected_count
        self._mapper = mapper

    def _expected(self, page_id: int, max_page_id: int) -> int:
        if self._mapper is not None and page_id <= self._mapper.max_page_id:
            return self._mapper.expected_count_for_page_id(page_id)
        if page_id == max_page_id and self._last_expected is not None:
            return self._last_expected
        return self._ppp

    def detect_missing_products(self, max_page_id: Optional[int] = None) -> GapDetectionResult:
        """Scan page ids 0..max_page_id (default: highest stored page id)."""
        if max_page_id is None:
            stored_max = self._storage.max_page_id()
            max_page_id = stored_max if stored_max is not None else -1
        return self._scan(0, max_page_id, max_page_id)

    def detect_missing_products_in_range(self, start_page_id: int, end_page_id: int) -> GapDetectionResult:
        """Scan an inclusive page id range; the bounds may come in either order."""
        lo, hi = sorted((start_page_id, end_page_id))
        if lo < 0:
            raise ValueError("page ids start at 0")
        stored_max = self._storage.max_page_id()
        max_page_id = max(hi, stored_max if stored_max is not None else -1)
        return self._scan(lo, hi, max_page_id)

    def detect_missing_product_details(self) -> List[ProductRecord]:
        """Products in the summary table that have no detail row."""
        missing = self._storage.products_missing_details()
        logger.info("%d products have no detail record", len(missing))
        return missing

    def _scan(self, lo: int, hi: int, max_page_id: int) -> GapDetectionResult:
        stored = self._storage.indices_by_page(lo, hi) if hi >= lo else {}
        gaps: List[PageGap] = []
        total_expected = total_actual = 0
        for page_id in range(lo, hi + 1):
            expected = self._expected(page_id, max_page_id)
            present = set(stored.get(page_id, ()))
            missing = tuple(i for i in range(expected) if i not in present)
            actual = len(present & set(range(expected)))
            total_expected += expected
            total_actual += actual
            if missing:
                gaps.append(
                    PageGap(page_id=page_id, expected_count=expected, actual_count=actual, missing_indices=missing)
                )
        completion = (total_actual / total_expected * 100.0) if total_expected else 100.0
        result = GapDetectionResult(
            gaps=gaps,
            ranges=fold_ranges(gaps),
            total_expected=total_expected,
            total_actual=total_actual,
            completion_percentage=completion,
            max_page_id=max_page_id,
            batch_info=plan_batches(len(gaps)),
        )
        logger.info(
            "gap scan %d..%d: %d pages with gaps, %d products missing (%.2f%% complete)",
            lo,
            hi,
            len(gaps),
            result.total_missing_products,
            completion,
        )
        return result


def format_gap_report(result: GapDetectionResult) -> str:
    lines = [
        "==================== gap report ====================",
        f"missing products:   {result.total_missing_products}",
        f"completion:         {result.completion_percentage:.2f}%",
        f"expected products:  {result.total_expected}",
        f"collected products: {result.total_actual}",
    ]
    if result.completely_missing_page_ids:
        ids = result.completely_missing_page_ids
        lines.append(f"completely missing pages ({len(ids)}): {', '.join(map(str, ids))}")
    partial = [g for g in result.gaps if not g.is_fully_missing]
    if partial:
        lines.append(f"partially missing pages ({len(partial)}):")
        for gap in partial:
            lines.append(
                f"  page id {gap.page_id}: {gap.actual_count}/{gap.expected_count} collected, "
                f"missing indices [{', '.join(map(str, gap.missing_indices))}]"
            )
    if result.ranges:
        lines.append(f"ranges ({len(result.ranges)}):")
        for number, r in enumerate(result.ranges, start=1):
            lines.append(
                f"  {number}. page ids {r.start_page}-{r.end_page} (priority {r.priority}, {r.reason}), "
                f"~{r.estimated_item_count} products"
            )
    info = result.batch_info
    lines.append(
        f"batches: {info.total_batches}, ~{info.estimated_minutes} min, "
        f"recommended concurrency {info.recommended_concurrency}"
    )
    lines.append("=" * 52)
    return "\n".join(lines)
