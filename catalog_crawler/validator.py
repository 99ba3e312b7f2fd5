from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from .models import PageValidationResult, RawProduct


class _Positioned(Protocol):
    index_in_page: int


class PageValidator:
    """Decides whether a page's product set is structurally complete."""

    def validate(
        self,
        page_index: int,
        records: Sequence[_Positioned],
        is_last_page: bool,
        expected_count: int,
        last_page_expected_count: Optional[int] = None,
    ) -> PageValidationResult:
        """Compare records against the expected positions 0..expected-1.

        The last page is accepted as-is unless its own expected count is
        known, since it legitimately holds fewer items.
        """
        actual = len(records)
        if is_last_page:
            if last_page_expected_count is None:
                return PageValidationResult(
                    is_complete=True, expected_count=actual, actual_count=actual
                )
            expected_count = last_page_expected_count

        missing = _missing_indices(expected_count, (r.index_in_page for r in records))
        if actual == expected_count and not missing:
            return PageValidationResult(is_complete=True, expected_count=expected_count, actual_count=actual)

        if actual > expected_count:
            reason = f"page {page_index}: {actual} products, expected {expected_count}"
        elif missing:
            reason = f"page {page_index}: missing {len(missing)} of {expected_count} products"
        else:
            reason = f"page {page_index}: duplicate or out-of-range positions"
        return PageValidationResult(
            is_complete=False,
            expected_count=expected_count,
            actual_count=actual,
            missing_indices=missing,
            reason=reason,
        )

    def validate_product_data(self, records: Iterable[RawProduct]) -> Tuple[List[RawProduct], List[RawProduct]]:
        """Split records into (valid, invalid): a URL plus at least one identifying field."""
        valid: List[RawProduct] = []
        invalid: List[RawProduct] = []
        for record in records:
            if record.url and record.has_identity:
                valid.append(record)
            else:
                invalid.append(record)
        return valid, invalid


def _missing_indices(expected_count: int, present: Iterable[int]) -> Tuple[int, ...]:
    seen = set(present)
    return tuple(i for i in range(expected_count) if i not in seen)
