from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple


class Stage(str, Enum):
    LIST = "list"
    DETAIL = "detail"


class CrawlerStatus(str, Enum):
    IDLE = "idle"
    LIST_COLLECTION = "list_collection"
    DETAIL_COLLECTION = "detail_collection"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class RawProduct:
    """One product card as found on a listing page.

    index_in_page is the position on the site page it came from, counted
    from the oldest card (0) to the newest.
    """

    url: Optional[str]
    manufacturer: Optional[str]
    model: Optional[str]
    certificate_id: Optional[str]
    index_in_page: int

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], index_in_page: int) -> "RawProduct":
        if index_in_page < 0:
            raise ValueError(f"index_in_page must be >= 0, got {index_in_page}")
        return cls(
            url=_clean_text(data.get("url")),
            manufacturer=_clean_text(data.get("manufacturer")),
            model=_clean_text(data.get("model")),
            certificate_id=_clean_text(data.get("certificate_id") or data.get("certificateId")),
            index_in_page=int(index_in_page),
        )

    @property
    def has_identity(self) -> bool:
        return bool(self.manufacturer or self.model or self.certificate_id)


@dataclass(frozen=True)
class ProductRecord:
    url: str
    manufacturer: Optional[str]
    model: Optional[str]
    certificate_id: Optional[str]
    page_id: int
    index_in_page: int


@dataclass(frozen=True)
class ProductDetail:
    url: str
    page_id: Optional[int] = None
    index_in_page: Optional[int] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    device_type: Optional[str] = None
    certification_id: Optional[str] = None
    certification_date: Optional[str] = None
    software_version: Optional[str] = None
    hardware_version: Optional[str] = None
    vid: Optional[int] = None
    pid: Optional[int] = None
    family_sku: Optional[str] = None
    family_variant_sku: Optional[str] = None
    firmware_version: Optional[str] = None
    family_id: Optional[str] = None
    tis_trp_tested: Optional[str] = None
    specification_version: Optional[str] = None
    transport_interface: Optional[str] = None
    primary_device_type_id: Optional[str] = None
    application_categories: Tuple[str, ...] = ()

    # Fields that identify where the row lives rather than what the product is.
    _POSITION_FIELDS = ("page_id", "index_in_page")

    def differs_from(self, other: "ProductDetail") -> bool:
        """Return True when any descriptive attribute changed."""
        for name in self.__dataclass_fields__:
            if name in self._POSITION_FIELDS:
                continue
            if getattr(self, name) != getattr(other, name):
                return True
        return False


@dataclass(frozen=True)
class SitePageInfo:
    total_pages: int
    last_page_product_count: int
    fetched_at: float


@dataclass(frozen=True)
class PageFetchResult:
    page_number: int
    products: List[RawProduct]
    total_pages: Optional[int] = None


@dataclass(frozen=True)
class PageValidationResult:
    is_complete: bool
    expected_count: int
    actual_count: int
    missing_indices: Tuple[int, ...] = ()
    reason: Optional[str] = None


@dataclass(frozen=True)
class PageGap:
    page_id: int
    expected_count: int
    actual_count: int
    missing_indices: Tuple[int, ...]

    @property
    def is_fully_missing(self) -> bool:
        return self.actual_count == 0


@dataclass(frozen=True)
class GapRange:
    """A run of adjacent gap page ids, stored high-to-low: start_page >= end_page."""

    start_page: int
    end_page: int
    reason: str
    priority: int
    estimated_item_count: int

    @property
    def length(self) -> int:
        return self.start_page - self.end_page + 1

    @property
    def page_ids(self) -> List[int]:
        return list(range(self.start_page, self.end_page - 1, -1))


@dataclass(frozen=True)
class GapBatchInfo:
    total_batches: int
    estimated_minutes: int
    recommended_concurrency: int


@dataclass(frozen=True)
class GapDetectionResult:
    gaps: List[PageGap]
    ranges: List[GapRange]
    total_expected: int
    total_actual: int
    completion_percentage: float
    max_page_id: int
    batch_info: GapBatchInfo

    @property
    def total_missing_products(self) -> int:
        return sum(len(g.missing_indices) for g in self.gaps)

    @property
    def missing_page_ids(self) -> List[int]:
        return [g.page_id for g in self.gaps]

    @property
    def completely_missing_page_ids(self) -> List[int]:
        return [g.page_id for g in self.gaps if g.is_fully_missing]

    @property
    def partially_missing_page_ids(self) -> List[int]:
        return [g.page_id for g in self.gaps if not g.is_fully_missing]

    def gap_for(self, page_id: int) -> Optional[PageGap]:
        for gap in self.gaps:
            if gap.page_id == page_id:
                return gap
        return None


@dataclass
class GapCollectionResult:
    collected: int = 0
    failed: int = 0
    skipped: int = 0
    collected_pages: List[int] = field(default_factory=list)
    failed_pages: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0 and not self.errors


@dataclass(frozen=True)
class RetryStatus:
    stage: Stage
    current_attempt: int
    max_attempts: int
    remaining_items: int
    total_items: int
    start_time: float
    item_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CrawlingProgress:
    stage: Optional[Stage]
    status: CrawlerStatus
    processed: int = 0
    total: int = 0
    percentage: float = 0.0
    elapsed: float = 0.0
    remaining: Optional[float] = None
    new_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    current_batch: int = 0
    total_batches: int = 0
    retry: Optional[RetryStatus] = None
    message: Optional[str] = None


class ConcurrencyState:
    """Adaptive concurrency bookkeeping: a bounded outcome window and the current limit.

    Mutated only by the scheduler that owns it, under its lock.
    """

    def __init__(
        self,
        initial: int,
        minimum: int = 1,
        maximum: Optional[int] = None,
        window_size: int = 10,
        shrink_threshold: float = 0.3,
        grow_threshold: Optional[float] = None,
    ) -> None:
        if minimum < 1:
            raise ValueError("minimum concurrency must be >= 1")
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        maximum = maximum if maximum is not None else max(initial, minimum)
        self.minimum = minimum
        self.maximum = max(maximum, minimum)
        self.initial = min(max(initial, minimum), self.maximum)
        self.current = self.initial
        self.window_size = window_size
        self.shrink_threshold = shrink_threshold
        self.grow_threshold = grow_threshold if grow_threshold is not None else shrink_threshold / 2
        self.window: Deque[bool] = deque(maxlen=window_size)

    def record(self, success: bool) -> None:
        self.window.append(bool(success))

    @property
    def min_samples(self) -> int:
        return min(5, self.window_size)

    @property
    def has_enough_samples(self) -> bool:
        return len(self.window) >= self.min_samples

    @property
    def failure_rate(self) -> float:
        if not self.window:
            return 0.0
        return sum(1 for ok in self.window if not ok) / len(self.window)

    def set_current(self, value: int) -> Tuple[int, int]:
        old = self.current
        self.current = max(self.minimum, min(self.initial, int(value)))
        return old, self.current

    def as_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "minimum": self.minimum,
            "initial": self.initial,
            "window": len(self.window),
            "failure_rate": round(self.failure_rate, 3),
        }


@dataclass(frozen=True)
class CrawlSummary:
    status: CrawlerStatus
    total_pages: int = 0
    pages_attempted: int = 0
    pages_completed: int = 0
    incomplete_pages: Tuple[int, ...] = ()
    products_collected: int = 0
    new_products: int = 0
    details_attempted: int = 0
    details_collected: int = 0
    new_details: int = 0
    updated_details: int = 0
    failed_details: Tuple[str, ...] = ()
    stopped: bool = False
    error: Optional[str] = None
