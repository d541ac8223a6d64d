"""
Unit tests for the EventSync data model.

Tests cover:
- EventInput validation
- Metadata document determinism and hashing
- Provenance flags
- Record helpers
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from ticketing.eventsync.model import (
    ContentRef,
    EventRecord,
    LedgerRef,
    ObjectStoreRef,
    ProvenanceFlags,
    StoreKind,
    StoreRecord,
    compute_content_hash,
    decode_metadata_document,
    encode_metadata_document,
    format_price,
    parse_instant,
)
from tests.conftest import make_input


class TestEventInput:
    """Tests for creation request validation."""

    def test_valid_input(self):
        """A well-formed request validates."""
        event = make_input()
        assert event.title == "Rooftop Launch Party"
        assert event.start_time.tzinfo is not None

    def test_end_before_start_rejected(self):
        """end_time must be after start_time."""
        start = datetime(2026, 6, 1, 18, tzinfo=timezone.utc)
        with pytest.raises(ValidationError):
            make_input(start_time=start, end_time=start - timedelta(hours=1))

    def test_equal_times_rejected(self):
        start = datetime(2026, 6, 1, 18, tzinfo=timezone.utc)
        with pytest.raises(ValidationError):
            make_input(start_time=start, end_time=start)

    def test_negative_capacity_rejected(self):
        with pytest.raises(ValidationError):
            make_input(max_capacity=-1)

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError):
            make_input(ticket_price=Decimal("-0.01"))

    def test_empty_title_rejected(self):
        with pytest.raises(ValidationError):
            make_input(title="")

    def test_naive_datetimes_are_utc(self):
        """Naive datetimes are interpreted as UTC."""
        event = make_input(
            start_time=datetime(2026, 6, 1, 18, 0),
            end_time=datetime(2026, 6, 1, 20, 0),
        )
        assert event.start_time == datetime(2026, 6, 1, 18, 0, tzinfo=timezone.utc)

    def test_sub_second_precision_dropped(self):
        event = make_input(
            start_time=datetime(2026, 6, 1, 18, 0, 0, 123456, tzinfo=timezone.utc),
        )
        assert event.start_time.microsecond == 0

    def test_to_record_carries_banner(self):
        """Banner bytes travel on the record but never affect equality."""
        event = make_input(banner_image=b"\x89PNG")
        record = event.to_record("evt-1")

        assert record.banner is not None
        assert record.banner.content == b"\x89PNG"
        assert record == make_input().to_record("evt-1")


class TestMetadataDocument:
    """Tests for the deterministic metadata document."""

    def test_same_record_same_bytes(self):
        """Equal records encode to equal bytes and hashes."""
        a = make_input().to_record("evt-1")
        b = make_input().to_record("evt-1")

        assert encode_metadata_document(a) == encode_metadata_document(b)
        assert compute_content_hash(encode_metadata_document(a)) == compute_content_hash(
            encode_metadata_document(b)
        )

    def test_different_record_different_hash(self):
        a = make_input().to_record("evt-1")
        b = make_input(title="Other").to_record("evt-1")
        assert compute_content_hash(encode_metadata_document(a)) != compute_content_hash(
            encode_metadata_document(b)
        )

    def test_decode_restores_fields(self):
        record = make_input().to_record("evt-1")
        image = ContentRef(hash="sha256:abc", url="memory://objects/evt-1/banner")

        values, decoded_image = decode_metadata_document(encode_metadata_document(record, image))

        assert values["title"] == record.title
        assert values["ticket_price"] == record.ticket_price
        assert values["start_time"] == record.start_time
        assert values["tags"] == record.tags
        assert decoded_image == image

    def test_decode_rejects_garbage(self):
        with pytest.raises(ValueError):
            decode_metadata_document(b"{not json")

    def test_decode_rejects_non_object(self):
        with pytest.raises(ValueError, match="not an object"):
            decode_metadata_document(b"[]")

    def test_hash_format(self):
        assert compute_content_hash(b"").startswith("sha256:")
        assert len(compute_content_hash(b"")) == len("sha256:") + 64


class TestHelpers:
    """Tests for value normalization helpers."""

    def test_format_price_canonical(self):
        assert format_price(Decimal("0.050")) == "0.05"
        assert format_price(Decimal("10")) == "10"
        assert format_price(Decimal("1E+2")) == "100"

    def test_parse_instant_epoch_and_iso(self):
        expected = datetime(2026, 6, 1, 18, tzinfo=timezone.utc)
        assert parse_instant(int(expected.timestamp())) == expected
        assert parse_instant(expected.isoformat()) == expected

    def test_ledger_ref_round_trip(self):
        ref = LedgerRef(43113, "0xabc", 7, "0xdead")
        assert LedgerRef.from_dict(ref.to_dict()) == ref

    def test_object_store_ref_without_image(self):
        ref = ObjectStoreRef(metadata=ContentRef("sha256:1", "s3://b/k"))
        assert ObjectStoreRef.from_dict(ref.to_dict()) == ref


class TestProvenanceFlags:
    """Tests for ProvenanceFlags."""

    def test_from_kinds(self):
        flags = ProvenanceFlags.from_kinds([StoreKind.LEDGER, StoreKind.DATABASE])

        assert flags.ledger and flags.database
        assert not flags.object_store
        assert flags.any and not flags.all
        assert flags.missing() == [StoreKind.OBJECT_STORE]
        assert flags.present() == [StoreKind.LEDGER, StoreKind.DATABASE]

    def test_empty(self):
        flags = ProvenanceFlags()
        assert not flags.any
        assert flags.to_dict() == {"ledger": False, "database": False, "object_store": False}


class TestEventRecord:
    """Tests for EventRecord helpers."""

    def test_missing_for(self):
        record = EventRecord(event_id="evt-1", title="Only a title")
        assert "ticket_price" in record.missing_for(StoreKind.LEDGER)
        assert "visibility" in record.missing_for(StoreKind.DATABASE)

    def test_complete_record_has_nothing_missing(self):
        record = make_input().to_record("evt-1")
        for kind in StoreKind:
            assert record.missing_for(kind) == []

    def test_with_refs_keeps_existing(self):
        ref = LedgerRef(1, "0xabc", 1, "0x1")
        record = EventRecord(event_id="evt-1", ledger_ref=ref)
        assert record.with_refs(None, None).ledger_ref == ref

    def test_integrity_check(self):
        content = b'{"a":1}'
        good = StoreRecord(
            kind=StoreKind.OBJECT_STORE,
            event_id="evt-1",
            content=content,
            content_hash=compute_content_hash(content),
        )
        bad = StoreRecord(
            kind=StoreKind.OBJECT_STORE,
            event_id="evt-1",
            content=content + b" ",
            content_hash=compute_content_hash(content),
        )
        assert good.integrity_ok()
        assert not bad.integrity_ok()
