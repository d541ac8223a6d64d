"""
Shared data model for EventSync.

An event lives in three stores at once:
- Ledger: smart-contract state, immutable once a transaction is confirmed
- Database: relational row, the only store that accepts corrections
- Object store: content-addressed metadata document plus banner image

This module defines the canonical, store-agnostic EventRecord, the per-store
views adapters exchange with the engine (StoreRecord, StoreReceipt), and the
authority rules used to merge and compare those views.

Invariants:
    - event_id is generated once by the coordinator and joins all three stores
    - Ledger-held financial/temporal fields are authoritative once present
    - Free text is authoritative from the database
    - Media references are authoritative from the object store
    - Equal records always encode to equal metadata bytes (and equal hashes)

How to change safely:
    - New record fields need an entry in FIELD_AUTHORITY and MERGE_PRECEDENCE
    - Never change encode_metadata_document output for existing fields, stored
      hashes would stop verifying
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

METADATA_SCHEMA_VERSION = 1


class StoreKind(str, Enum):
    """The three independently-failing stores."""

    LEDGER = "ledger"
    DATABASE = "database"
    OBJECT_STORE = "object_store"


class Visibility(str, Enum):
    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE = "private"


class ConsistencyState(str, Enum):
    """Cross-store status of a single event.

    UNINITIALIZED -> PARTIALLY_WRITTEN -> {FULLY_WRITTEN | DIVERGENT_UNRESOLVED}
    Repair loops PARTIALLY_WRITTEN back towards FULLY_WRITTEN.
    DIVERGENT_UNRESOLVED is only left by manual intervention.
    """

    UNINITIALIZED = "uninitialized"
    PARTIALLY_WRITTEN = "partially_written"
    FULLY_WRITTEN = "fully_written"
    DIVERGENT_UNRESOLVED = "divergent_unresolved"


@dataclass(frozen=True)
class LedgerRef:
    """Location of an event on chain.

    Attributes:
        chain_id: EVM chain id
        contract_address: Event factory contract address
        event_index: On-chain event index assigned by the contract
        transaction_hash: Hash of the creating transaction
    """

    chain_id: int
    contract_address: str
    event_index: int
    transaction_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "contract_address": self.contract_address,
            "event_index": self.event_index,
            "transaction_hash": self.transaction_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerRef:
        return cls(
            chain_id=int(data["chain_id"]),
            contract_address=str(data["contract_address"]),
            event_index=int(data["event_index"]),
            transaction_hash=str(data["transaction_hash"]),
        )


@dataclass(frozen=True)
class ContentRef:
    """Hash and retrieval URL of one content-addressed object."""

    hash: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return {"hash": self.hash, "url": self.url}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContentRef:
        return cls(hash=str(data["hash"]), url=str(data["url"]))


@dataclass(frozen=True)
class ObjectStoreRef:
    """Object store references for an event: metadata document and banner image."""

    metadata: ContentRef
    image: ContentRef | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "image": self.image.to_dict() if self.image else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObjectStoreRef:
        image = data.get("image")
        return cls(
            metadata=ContentRef.from_dict(data["metadata"]),
            image=ContentRef.from_dict(image) if image else None,
        )


@dataclass(frozen=True)
class BannerImage:
    """Banner upload payload. Only the object store consumes it."""

    content: bytes
    content_type: str = "image/png"


# Fields that make up an event, in canonical order (event_id and banner excluded)
RECORD_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "location",
    "start_time",
    "end_time",
    "max_capacity",
    "ticket_price",
    "visibility",
    "creator_address",
    "category",
    "tags",
    "ledger_ref",
    "object_store_ref",
    "database_revision",
)

LEDGER_FIELDS = ("ticket_price", "start_time", "end_time", "max_capacity", "creator_address")
FREE_TEXT_FIELDS = ("title", "description", "location", "visibility", "category", "tags")

FIELD_AUTHORITY: dict[str, StoreKind] = {
    **{name: StoreKind.LEDGER for name in LEDGER_FIELDS},
    **{name: StoreKind.DATABASE for name in FREE_TEXT_FIELDS},
    "ledger_ref": StoreKind.LEDGER,
    "object_store_ref": StoreKind.OBJECT_STORE,
    "database_revision": StoreKind.DATABASE,
}

_LEDGER_FIRST = (StoreKind.LEDGER, StoreKind.DATABASE, StoreKind.OBJECT_STORE)
_DATABASE_FIRST = (StoreKind.DATABASE, StoreKind.LEDGER, StoreKind.OBJECT_STORE)

MERGE_PRECEDENCE: dict[str, tuple[StoreKind, ...]] = {
    **{name: _LEDGER_FIRST for name in LEDGER_FIELDS},
    **{name: _DATABASE_FIRST for name in FREE_TEXT_FIELDS},
    "ledger_ref": (StoreKind.LEDGER, StoreKind.DATABASE),
    "object_store_ref": (StoreKind.OBJECT_STORE, StoreKind.DATABASE),
    "database_revision": (StoreKind.DATABASE,),
}

# Fields whose copies must agree across stores. Free text held by the ledger
# and object store is a creation-time snapshot and is not compared.
MIRRORED_FIELDS: dict[str, tuple[StoreKind, ...]] = {
    **{name: (StoreKind.LEDGER, StoreKind.DATABASE) for name in LEDGER_FIELDS},
    "ledger_ref": (StoreKind.LEDGER, StoreKind.DATABASE),
    "object_store_ref": (StoreKind.OBJECT_STORE, StoreKind.DATABASE),
}

# Minimum fields a store needs to hold a reconstructed record
REQUIRED_FIELDS: dict[StoreKind, tuple[str, ...]] = {
    StoreKind.LEDGER: ("title", *LEDGER_FIELDS),
    StoreKind.DATABASE: ("title", "visibility", *LEDGER_FIELDS),
    StoreKind.OBJECT_STORE: ("title", "start_time", "end_time", "creator_address"),
}


@dataclass(frozen=True)
class EventRecord:
    """Canonical, store-agnostic representation of one event.

    Any field may be None on a partially-present record. banner never takes
    part in equality.
    """

    event_id: str
    title: str | None = None
    description: str | None = None
    location: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    max_capacity: int | None = None
    ticket_price: Decimal | None = None
    visibility: Visibility | None = None
    creator_address: str | None = None
    category: str | None = None
    tags: tuple[str, ...] | None = None
    ledger_ref: LedgerRef | None = None
    object_store_ref: ObjectStoreRef | None = None
    database_revision: int | None = None
    banner: BannerImage | None = field(default=None, compare=False, repr=False)

    def to_fields(self) -> dict[str, Any]:
        """Return the populated record fields."""
        return {
            name: getattr(self, name)
            for name in RECORD_FIELDS
            if getattr(self, name) is not None
        }

    @classmethod
    def from_fields(cls, event_id: str, values: dict[str, Any]) -> EventRecord:
        known = {f.name for f in fields(cls)}
        return cls(event_id=event_id, **{k: v for k, v in values.items() if k in known})

    def missing_for(self, kind: StoreKind) -> list[str]:
        """Fields required to write this record to ``kind`` that are unset."""
        return [name for name in REQUIRED_FIELDS[kind] if getattr(self, name) is None]

    def with_refs(
        self,
        ledger_ref: LedgerRef | None = None,
        object_store_ref: ObjectStoreRef | None = None,
    ) -> EventRecord:
        """Copy with any newly known store references filled in."""
        return replace(
            self,
            ledger_ref=ledger_ref or self.ledger_ref,
            object_store_ref=object_store_ref or self.object_store_ref,
        )


@dataclass(frozen=True)
class ProvenanceFlags:
    """Which stores hold a record for an event at the time of an operation.

    Always recomputed from live reads or writes, never persisted.
    """

    ledger: bool = False
    database: bool = False
    object_store: bool = False

    @classmethod
    def from_kinds(cls, kinds: Iterable[StoreKind]) -> ProvenanceFlags:
        present = set(kinds)
        return cls(
            ledger=StoreKind.LEDGER in present,
            database=StoreKind.DATABASE in present,
            object_store=StoreKind.OBJECT_STORE in present,
        )

    def get(self, kind: StoreKind) -> bool:
        return getattr(self, kind.value)

    @property
    def all(self) -> bool:
        return self.ledger and self.database and self.object_store

    @property
    def any(self) -> bool:
        return self.ledger or self.database or self.object_store

    def present(self) -> list[StoreKind]:
        return [kind for kind in StoreKind if self.get(kind)]

    def missing(self) -> list[StoreKind]:
        return [kind for kind in StoreKind if not self.get(kind)]

    def to_dict(self) -> dict[str, bool]:
        return {kind.value: self.get(kind) for kind in StoreKind}


@dataclass
class StoreRecord:
    """One store's view of an event, as returned by an adapter read.

    Attributes:
        kind: Store that produced the record
        event_id: Join key
        fields: Normalized EventRecord field values held by this store
        content: Raw stored bytes (object store only)
        content_hash: Hash recorded at upload time (object store only)
        revision: Row revision (database only)
    """

    kind: StoreKind
    event_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    content: bytes | None = None
    content_hash: str | None = None
    revision: int | None = None

    def integrity_ok(self) -> bool:
        """Whether stored content still matches its recorded hash."""
        if self.content is None or self.content_hash is None:
            return True
        return compute_content_hash(self.content) == self.content_hash


@dataclass
class StoreReceipt:
    """Result of a successful adapter write.

    already_existed is set when the store reported "already exists" and
    returned the existing reference instead of writing again.
    """

    kind: StoreKind
    event_id: str
    ledger_ref: LedgerRef | None = None
    object_store_ref: ObjectStoreRef | None = None
    revision: int | None = None
    already_existed: bool = False


class EventInput(BaseModel):
    """Validated event creation request.

    Constructing an EventInput enforces the record invariants, so invalid
    input never reaches a store.

    Example:
        >>> EventInput(
        ...     title="Launch party",
        ...     start_time=datetime(2026, 5, 1, 18, tzinfo=timezone.utc),
        ...     end_time=datetime(2026, 5, 1, 22, tzinfo=timezone.utc),
        ...     max_capacity=120,
        ...     ticket_price=Decimal("0.05"),
        ...     creator_address="0xabc...",
        ... )
    """

    model_config = ConfigDict(frozen=True)

    event_id: str | None = None
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    location: str = ""
    start_time: datetime
    end_time: datetime
    max_capacity: int = Field(ge=0)
    ticket_price: Decimal = Field(default=Decimal("0"), ge=0)
    visibility: Visibility = Visibility.PUBLIC
    creator_address: str = Field(min_length=1)
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    banner_image: bytes | None = None
    banner_content_type: str = "image/png"

    @field_validator("start_time", "end_time")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        # The ledger keeps whole seconds
        return to_utc(value).replace(microsecond=0)

    @model_validator(mode="after")
    def _check_window(self) -> EventInput:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    def to_record(self, event_id: str) -> EventRecord:
        banner = None
        if self.banner_image:
            banner = BannerImage(self.banner_image, self.banner_content_type)
        return EventRecord(
            event_id=event_id,
            title=self.title,
            description=self.description,
            location=self.location,
            start_time=self.start_time,
            end_time=self.end_time,
            max_capacity=self.max_capacity,
            ticket_price=self.ticket_price,
            visibility=self.visibility,
            creator_address=self.creator_address,
            category=self.category,
            tags=tuple(self.tags),
            banner=banner,
        )


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value: Any) -> datetime:
    """Parse an ISO-8601 string or Unix seconds into a UTC datetime."""
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return to_utc(datetime.fromisoformat(str(value)))


def parse_price(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid ticket price: {value!r}") from e


def format_price(value: Decimal) -> str:
    """Canonical decimal string: no exponent, no trailing zeros."""
    text = format(value.normalize(), "f")
    return text if text != "-0" else "0"


def compute_content_hash(data: bytes) -> str:
    """Compute SHA-256 content hash of data."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def encode_metadata_document(record: EventRecord, image: ContentRef | None = None) -> bytes:
    """Serialize the event metadata document deterministically.

    Sorted keys and compact separators, so the same record always yields the
    same bytes and therefore the same content hash.
    """
    doc = {
        "schema_version": METADATA_SCHEMA_VERSION,
        "event_id": record.event_id,
        "title": record.title,
        "description": record.description,
        "location": record.location,
        "start_time": record.start_time.isoformat() if record.start_time else None,
        "end_time": record.end_time.isoformat() if record.end_time else None,
        "max_capacity": record.max_capacity,
        "ticket_price": format_price(record.ticket_price)
        if record.ticket_price is not None
        else None,
        "visibility": record.visibility.value if record.visibility else None,
        "creator_address": record.creator_address,
        "category": record.category,
        "tags": list(record.tags) if record.tags is not None else None,
        "image": image.to_dict() if image else None,
    }
    return json.dumps(doc, sort_keys=True, separators=(",", ":")).encode("utf-8")


def decode_metadata_document(content: bytes) -> tuple[dict[str, Any], ContentRef | None]:
    """Parse a metadata document back into record fields.

    Returns:
        Tuple of (fields, image reference)

    Raises:
        ValueError: If the document is not a valid JSON object
    """
    try:
        doc = json.loads(content.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"Malformed metadata document: {e}") from e
    if not isinstance(doc, dict):
        raise ValueError(f"Metadata document is not an object: {type(doc).__name__}")

    values: dict[str, Any] = {}
    for name in ("title", "description", "location", "creator_address", "category"):
        if doc.get(name) is not None:
            values[name] = doc[name]
    if doc.get("start_time"):
        values["start_time"] = parse_instant(doc["start_time"])
    if doc.get("end_time"):
        values["end_time"] = parse_instant(doc["end_time"])
    if doc.get("max_capacity") is not None:
        values["max_capacity"] = int(doc["max_capacity"])
    if doc.get("ticket_price") is not None:
        values["ticket_price"] = parse_price(doc["ticket_price"])
    if doc.get("visibility"):
        values["visibility"] = Visibility(doc["visibility"])
    if doc.get("tags") is not None:
        values["tags"] = tuple(doc["tags"])

    image = ContentRef.from_dict(doc["image"]) if doc.get("image") else None
    return values, image
