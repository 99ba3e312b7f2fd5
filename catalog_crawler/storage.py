from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .errors import PersistenceError
from .models import ProductDetail, ProductRecord

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS products (
    url TEXT PRIMARY KEY,
    manufacturer TEXT,
    model TEXT,
    certificate_id TEXT,
    page_id INTEGER NOT NULL,
    index_in_page INTEGER NOT NULL,
    UNIQUE (page_id, index_in_page)
);
CREATE TABLE IF NOT EXISTS product_details (
    url TEXT PRIMARY KEY,
    page_id INTEGER,
    index_in_page INTEGER,
    manufacturer TEXT,
    model TEXT,
    device_type TEXT,
    certification_id TEXT,
    certification_date TEXT,
    software_version TEXT,
    hardware_version TEXT,
    vid INTEGER,
    pid INTEGER,
    family_sku TEXT,
    family_variant_sku TEXT,
    firmware_version TEXT,
    family_id TEXT,
    tis_trp_tested TEXT,
    specification_version TEXT,
    transport_interface TEXT,
    primary_device_type_id TEXT,
    application_categories TEXT
);
CREATE INDEX IF NOT EXISTS idx_product_details_page ON product_details (page_id, index_in_page);
"""

_DETAIL_COLUMNS = (
    "url",
    "page_id",
    "index_in_page",
    "manufacturer",
    "model",
    "device_type",
    "certification_id",
    "certification_date",
    "software_version",
    "hardware_version",
    "vid",
    "pid",
    "family_sku",
    "family_variant_sku",
    "firmware_version",
    "family_id",
    "tis_trp_tested",
    "specification_version",
    "transport_interface",
    "primary_device_type_id",
    "application_categories",
)


class StorageBase(ABC):
    """Abstract base class for the crawl's persisted state.

    Products are addressable by URL and by (page_id, index_in_page).
    """

    @abstractmethod
    def upsert_products(self, records: Iterable[ProductRecord]) -> Tuple[int, int]:
        """Insert or update summary rows; return (inserted, updated)."""

    @abstractmethod
    def page_counts(self) -> Dict[int, int]:
        """Map every stored page id to its product count."""

    @abstractmethod
    def indices_by_page(self, start: Optional[int] = None, end: Optional[int] = None) -> Dict[int, List[int]]:
        """Map page id to the sorted positions stored for it, optionally within [start, end]."""

    @abstractmethod
    def upsert_detail(self, detail: ProductDetail) -> bool:
        """Insert or replace one detail row; return True if it was new."""

    @abstractmethod
    def close(self) -> None:
        """Flush pending writes and release resources."""


class SqliteStorage(StorageBase):
    """SQLite-backed storage shared by all worker threads through one locked connection."""

    def __init__(self, path: str = ":memory:") -> None:
        self._path = path
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot open database {path}: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc

    # summary table

    def upsert_products(self, records: Iterable[ProductRecord]) -> Tuple[int, int]:
        inserted = updated = 0
        with self._transaction() as conn:
            for r in records:
                # A slot belongs to one URL; a different product found there replaces it.
                conn.execute(
                    "DELETE FROM products WHERE page_id = ? AND index_in_page = ? AND url <> ?",
                    (r.page_id, r.index_in_page, r.url),
                )
                exists = conn.execute("SELECT 1 FROM products WHERE url = ?", (r.url,)).fetchone()
                conn.execute(
                    """
                    INSERT INTO products (url, manufacturer, model, certificate_id, page_id, index_in_page)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(url) DO UPDATE SET
                        manufacturer = excluded.manufacturer,
                        model = excluded.model,
                        certificate_id = excluded.certificate_id,
                        page_id = excluded.page_id,
                        index_in_page = excluded.index_in_page
                    """,
                    (r.url, r.manufacturer, r.model, r.certificate_id, r.page_id, r.index_in_page),
                )
                if exists:
                    updated += 1
                else:
                    inserted += 1
        return inserted, updated

    @staticmethod
    def _record(row: sqlite3.Row) -> ProductRecord:
        return ProductRecord(
            url=row["url"],
            manufacturer=row["manufacturer"],
            model=row["model"],
            certificate_id=row["certificate_id"],
            page_id=row["page_id"],
            index_in_page=row["index_in_page"],
        )

    def get_product(self, url: str) -> Optional[ProductRecord]:
        rows = self._query("SELECT * FROM products WHERE url = ?", (url,))
        return self._record(rows[0]) if rows else None

    def all_products(self) -> List[ProductRecord]:
        rows = self._query("SELECT * FROM products ORDER BY page_id, index_in_page")
        return [self._record(row) for row in rows]

    def product_urls(self) -> Set[str]:
        return {row["url"] for row in self._query("SELECT url FROM products")}

    def count_products(self) -> int:
        return self._query("SELECT COUNT(*) AS n FROM products")[0]["n"]

    def max_page_id(self) -> Optional[int]:
        return self._query("SELECT MAX(page_id) AS m FROM products")[0]["m"]

    def page_counts(self) -> Dict[int, int]:
        rows = self._query("SELECT page_id, COUNT(*) AS n FROM products GROUP BY page_id")
        return {row["page_id"]: row["n"] for row in rows}

    def indices_by_page(self, start: Optional[int] = None, end: Optional[int] = None) -> Dict[int, List[int]]:
        sql = "SELECT page_id, index_in_page FROM products"
        params: tuple = ()
        if start is not None and end is not None:
            lo, hi = sorted((start, end))
            sql += " WHERE page_id BETWEEN ? AND ?"
            params = (lo, hi)
        sql += " ORDER BY page_id, index_in_page"
        result: Dict[int, List[int]] = {}
        for row in self._query(sql, params):
            result.setdefault(row["page_id"], []).append(row["index_in_page"])
        return result

    def existing_slots(self) -> Set[Tuple[int, int]]:
        rows = self._query("SELECT page_id, index_in_page FROM products")
        return {(row["page_id"], row["index_in_page"]) for row in rows}

    # detail table

    def detail_urls(self) -> Set[str]:
        return {row["url"] for row in self._query("SELECT url FROM product_details")}

    def products_missing_details(self) -> List[ProductRecord]:
        rows = self._query(
            """
            SELECT p.* FROM products p
            LEFT JOIN product_details d ON d.url = p.url
            WHERE d.url IS NULL
            ORDER BY p.page_id, p.index_in_page
            """
        )
        return [self._record(row) for row in rows]

    def get_detail(self, url: str) -> Optional[ProductDetail]:
        rows = self._query("SELECT * FROM product_details WHERE url = ?", (url,))
        if not rows:
            return None
        values = {name: rows[0][name] for name in _DETAIL_COLUMNS}
        values["application_categories"] = tuple(json.loads(values["application_categories"] or "[]"))
        return ProductDetail(**values)

    def upsert_detail(self, detail: ProductDetail) -> bool:
        values = [getattr(detail, name) for name in _DETAIL_COLUMNS]
        values[-1] = json.dumps(list(detail.application_categories), ensure_ascii=False)
        placeholders = ", ".join("?" for _ in _DETAIL_COLUMNS)
        with self._transaction() as conn:
            exists = conn.execute("SELECT 1 FROM product_details WHERE url = ?", (detail.url,)).fetchone()
            conn.execute(
                f"INSERT OR REPLACE INTO product_details ({', '.join(_DETAIL_COLUMNS)}) VALUES ({placeholders})",
                values,
            )
        return exists is None

    def count_details(self) -> int:
        return self._query("SELECT COUNT(*) AS n FROM product_details")[0]["n"]

    # maintenance

    def delete_page_range(self, start_page: int, end_page: int) -> int:
        """Delete summary and detail rows of page ids in the range, in one transaction.

        Either bound may be the larger one. Returns the number of summary rows removed.
        """
        lo, hi = sorted((start_page, end_page))
        with self._transaction() as conn:
            conn.execute(
                """
                DELETE FROM product_details
                WHERE url IN (SELECT url FROM products WHERE page_id BETWEEN ? AND ?)
                   OR page_id BETWEEN ? AND ?
                """,
                (lo, hi, lo, hi),
            )
            cursor = conn.execute("DELETE FROM products WHERE page_id BETWEEN ? AND ?", (lo, hi))
            deleted = cursor.rowcount
        logger.info("deleted %d products in page ids %d..%d", deleted, lo, hi)
        return deleted

    def close(self) -> None:
        with self._lock:
            self._conn.close()
