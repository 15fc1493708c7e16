"""
product_store.py — the shared products collection, persisted as one JSON file.

The whole collection is read and written at once.  Every access goes through
a FileLockManager keyed on the file path, and every write goes to a
temporary file that is then renamed over the real one, so readers never see
a half-written file.

File format: a JSON array of product objects (camelCase keys, as consumed by
the browser front-end).  An older `{"products": [...]}` wrapper is accepted
and rewritten as a plain array.  Anything else is treated as corrupt: the
corrupt file is moved to `<file>.backup.<epoch-ms>` and the store continues
as if it were empty.  Records keep any keys this module does not know about,
and unchanged records are written back exactly as they were read.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from file_lock import DEFAULT_TIMEOUT_SECS, FileLockManager

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """A required product field is missing or malformed."""


class NotFoundError(LookupError):
    """No product with the requested id."""


# ── Data model ────────────────────────────────────────────────────────────────

# camelCase key on disk -> dataclass attribute
_FIELD_KEYS: dict[str, str] = {
    "id":           "id",
    "serialNumber": "serial_number",
    "name":         "name",
    "brand":        "brand",
    "price":        "price",
    "barcode":      "barcode",
    "description":  "description",
    "imagePaths":   "image_paths",
    "createdAt":    "created_at",
    "updatedAt":    "updated_at",
}


def _coerce(key: str, value):
    if key == "imagePaths":
        return [str(p) for p in value] if isinstance(value, list) else []
    return str(value or "")


@dataclass
class ProductRecord:
    id: str
    serial_number: str          # YYYYMMDD + 3-digit daily sequence, e.g. 20261019003
    name: str
    brand: str = ""
    price: str = ""             # free text as printed, e.g. "￥12.50"
    barcode: str = ""           # kept verbatim even when not a valid EAN/UPC
    description: str = ""
    image_paths: list[str] = field(default_factory=list)
    created_at: str = ""        # ISO-8601 UTC
    updated_at: str = ""
    # The object exactly as read from disk.  Written back untouched except
    # for fields whose value has actually changed.
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    def to_dict(self) -> dict:
        data = dict(self.raw)
        for key, attr in _FIELD_KEYS.items():
            value = getattr(self, attr)
            if key in data:
                if _coerce(key, data[key]) == value:
                    continue
            elif self.raw and not value:
                continue
            data[key] = list(value) if key == "imagePaths" else value
        return data

    @classmethod
    def from_dict(cls, raw: dict) -> "ProductRecord":
        values = {attr: _coerce(key, raw.get(key)) for key, attr in _FIELD_KEYS.items()}
        return cls(raw=dict(raw), **values)

    @property
    def created_datetime(self) -> datetime:
        return _parse_iso(self.created_at)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _iso(dt: datetime) -> str:
    """UTC timestamp in the same shape JavaScript's toISOString() produces."""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _clean_text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def next_serial_number(records: Iterable[ProductRecord], day_prefix: str) -> str:
    """
    Next serial for *day_prefix* (YYYYMMDD): highest sequence already used
    that day plus one, so deleting a record never frees a number for reuse.
    """
    used = [
        int(r.serial_number[len(day_prefix):])
        for r in records
        if r.serial_number.startswith(day_prefix) and r.serial_number[len(day_prefix):].isdigit()
    ]
    return f"{day_prefix}{max(used, default=0) + 1:03d}"


# ── Store ─────────────────────────────────────────────────────────────────────

class ProductStore:
    """
    All product reads and writes.  Construct once per process and share the
    FileLockManager with anything else that touches the same file.
    """

    def __init__(
        self,
        path: Path | str,
        locks: FileLockManager,
        lock_timeout: float = DEFAULT_TIMEOUT_SECS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.path = Path(path)
        self._locks = locks
        self._lock_timeout = lock_timeout
        self._now = clock or (lambda: datetime.now(timezone.utc))

    @property
    def locks(self) -> FileLockManager:
        return self._locks

    @property
    def lock_key(self) -> str:
        return str(self.path.resolve())

    # ── Whole-collection access ───────────────────────────────────────────────

    async def read_all(self) -> list[ProductRecord]:
        async with self._locks.hold(self.lock_key, self._lock_timeout):
            return self._load()

    async def write_all(self, records: list[ProductRecord]) -> None:
        async with self._locks.hold(self.lock_key, self._lock_timeout):
            self._dump(records)

    # ── Product operations ────────────────────────────────────────────────────

    async def add_product(
        self,
        name,
        brand=None,
        price=None,
        barcode=None,
        description=None,
        image_paths=None,
    ) -> ProductRecord:
        """
        Validate, number and persist a new product.  The read, numbering and
        write happen under one lock hold so concurrent saves cannot hand out
        the same serial number.
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("产品名称不能为空")
        if image_paths is None:
            image_paths = []
        if not isinstance(image_paths, list) or not all(isinstance(p, str) for p in image_paths):
            raise ValidationError("imagePaths 必须是字符串列表")

        async with self._locks.hold(self.lock_key, self._lock_timeout):
            records = self._load()
            now = self._now()
            stamp = _iso(now)
            record = ProductRecord(
                id=str(uuid.uuid4()),
                serial_number=next_serial_number(records, now.astimezone(timezone.utc).strftime("%Y%m%d")),
                name=name.strip(),
                brand=_clean_text(brand),
                price=_clean_text(price),
                barcode=_clean_text(barcode),
                description=_clean_text(description),
                image_paths=list(image_paths),
                created_at=stamp,
                updated_at=stamp,
            )
            records.append(record)
            self._dump(records)

        logger.info("Saved product %s (%s)", record.serial_number, record.name)
        return record

    async def list_products(self) -> list[ProductRecord]:
        """All products, newest first."""
        records = await self.read_all()
        records.sort(key=lambda r: r.created_datetime, reverse=True)
        return records

    async def delete_product(self, product_id: str) -> ProductRecord:
        """Remove one product and return it.  Its image files are the caller's job."""
        async with self._locks.hold(self.lock_key, self._lock_timeout):
            records = self._load()
            for index, record in enumerate(records):
                if record.id == product_id:
                    break
            else:
                raise NotFoundError("产品不存在")
            del records[index]
            self._dump(records)

        logger.info("Deleted product %s (%s)", record.serial_number, record.id)
        return record

    # ── File I/O (caller must hold the lock) ──────────────────────────────────

    def _load(self) -> list[ProductRecord]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return []

        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error("Products file %s is not valid JSON: %s", self.path, exc)
            self._quarantine(raw)
            return []

        migrate = False
        if isinstance(parsed, list):
            items = parsed
        elif isinstance(parsed, dict) and isinstance(parsed.get("products"), list):
            logger.info("Products file %s uses the old {products: [...]} layout — converting", self.path)
            items = parsed["products"]
            migrate = True
        else:
            logger.error("Products file %s holds a %s, not a list of products", self.path, type(parsed).__name__)
            self._quarantine(raw)
            return []

        if not all(isinstance(item, dict) for item in items):
            logger.error("Products file %s contains entries that are not objects", self.path)
            self._quarantine(raw)
            return []

        records = [ProductRecord.from_dict(item) for item in items]
        if migrate:
            self._dump(records)
        return records

    def _dump(self, records: list[ProductRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        payload = json.dumps([r.to_dict() for r in records], ensure_ascii=False, indent=2)
        try:
            tmp.write_text(payload, encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError:
            logger.exception("Failed to write products file %s", self.path)
            tmp.unlink(missing_ok=True)
            raise
        logger.debug("Wrote %d products to %s", len(records), self.path)

    def _quarantine(self, raw: bytes) -> Optional[Path]:
        """
        Move the corrupt file aside so the next read starts from empty.
        Returns the backup path, or None if no backup could be made.
        """
        backup = self.path.with_name(f"{self.path.name}.backup.{int(time.time() * 1000)}")
        try:
            os.replace(self.path, backup)
        except OSError as exc:
            logger.warning("Could not move corrupt products file aside (%s); copying instead", exc)
            try:
                backup.write_bytes(raw)
            except OSError:
                logger.exception("Could not back up corrupt products file %s", self.path)
                return None
        logger.warning("Corrupt products file moved to %s; continuing with an empty list", backup)
        return backup
