"""Tests for certbind_ctl/dns_publisher.py."""

from __future__ import annotations

import pytest

from certbind_ctl.dns_publisher import DNSRecordPublisher
from certbind_ctl.models import (
    AliasRecord,
    RecordConflictError,
    TransientProviderError,
    ValidationRecord,
    Zone,
    ZoneNotFoundError,
)
from certbind_ctl.providers.memory import MemoryDnsProvider


@pytest.fixture
def dns():
    return MemoryDnsProvider({"Z1": "example.com", "Z2": "internal.example.com"})


@pytest.fixture
def publisher(dns, fast_retry):
    return DNSRecordPublisher(dns, fast_retry, sleep=lambda _: None)


@pytest.fixture
def zone():
    return Zone(zone_id="Z1", name="example.com.")


RECORD = ValidationRecord(
    validation_domain="api.example.com",
    name="_abc.api.example.com.",
    value="_xyz.acm-validations.aws.",
)


class TestResolveZone:
    def test_longest_suffix_wins(self, publisher):
        assert publisher.resolve_zone("svc.internal.example.com").zone_id == "Z2"
        assert publisher.resolve_zone("api.example.com").zone_id == "Z1"

    def test_apex_matches(self, publisher):
        assert publisher.resolve_zone("example.com.").zone_id == "Z1"

    def test_no_partial_label_match(self, publisher):
        with pytest.raises(ZoneNotFoundError):
            publisher.resolve_zone("badexample.com")

    def test_unknown_domain(self, publisher):
        with pytest.raises(ZoneNotFoundError):
            publisher.resolve_zone("example.org")


class TestPublish:
    def test_creates_record(self, publisher, dns, zone):
        handle = publisher.publish(zone, RECORD, ttl=300)
        assert handle.name == "_abc.api.example.com."
        assert handle.change_id is not None
        assert dns.has_value(RECORD.name, "CNAME", RECORD.value)

    def test_republishing_identical_record_writes_nothing(self, publisher, dns, zone):
        publisher.publish(zone, RECORD, ttl=300)
        publisher.publish(zone, RECORD, ttl=300)
        assert dns.writes["upsert_record"] == 1
        assert dns.record_count() == 1

    def test_overwrites_by_default(self, publisher, dns, zone):
        publisher.publish(zone, RECORD, ttl=300)
        changed = ValidationRecord(RECORD.validation_domain, RECORD.name, "_new.acm-validations.aws.")
        publisher.publish(zone, changed, ttl=300)
        assert dns.has_value(RECORD.name, "CNAME", "_new.acm-validations.aws.")
        assert dns.record_count() == 1

    def test_conflict_when_overwrite_disabled(self, publisher, zone):
        publisher.publish(zone, RECORD, ttl=300)
        changed = ValidationRecord(RECORD.validation_domain, RECORD.name, "_new.acm-validations.aws.")
        with pytest.raises(RecordConflictError):
            publisher.publish(zone, changed, ttl=300, overwrite=False)

    def test_identical_value_is_not_a_conflict(self, publisher, zone):
        publisher.publish(zone, RECORD, ttl=300)
        handle = publisher.publish(zone, RECORD, ttl=300, overwrite=False)
        assert handle.value == RECORD.value

    def test_unknown_zone(self, publisher):
        with pytest.raises(ZoneNotFoundError):
            publisher.publish(Zone(zone_id="ZMISSING", name="example.com."), RECORD, ttl=300)

    def test_record_outside_zone(self, publisher):
        with pytest.raises(ZoneNotFoundError):
            publisher.publish(Zone(zone_id="Z2", name="internal.example.com."), RECORD, ttl=300)

    def test_transient_errors_are_retried(self, publisher, dns, zone):
        dns.fail_next("upsert_record", 2)
        publisher.publish(zone, RECORD, ttl=300)
        assert dns.has_value(RECORD.name, "CNAME", RECORD.value)

    def test_retries_exhaust(self, publisher, dns, zone):
        dns.fail_next("upsert_record", 3)
        with pytest.raises(TransientProviderError):
            publisher.publish(zone, RECORD, ttl=300)

    def test_is_published(self, publisher, zone):
        assert not publisher.is_published(zone, RECORD, 300)
        publisher.publish(zone, RECORD, ttl=300)
        assert publisher.is_published(zone, RECORD, 300)
        assert not publisher.is_published(zone, RECORD, 60)


class TestAlias:
    ALIAS = AliasRecord(
        name="api.example.com",
        target_dns_name="edge-1.us-east-1.elb.amazonaws.com",
        target_zone_id="Z35SXDOTRQ7X7K",
    )

    def test_publish_and_noop(self, publisher, dns, zone):
        publisher.publish_alias(zone, self.ALIAS)
        publisher.publish_alias(zone, self.ALIAS)
        assert dns.writes["upsert_alias"] == 1
        stored = dns.aliases["Z1"]["api.example.com."]
        assert stored.evaluate_target_health is True

    def test_conflict_when_overwrite_disabled(self, publisher, zone):
        publisher.publish_alias(zone, self.ALIAS)
        moved = AliasRecord(self.ALIAS.name, "edge-2.us-east-1.elb.amazonaws.com", self.ALIAS.target_zone_id)
        with pytest.raises(RecordConflictError):
            publisher.publish_alias(zone, moved, overwrite=False)

    def test_remove_is_absence_tolerant(self, publisher, zone):
        assert publisher.remove_alias(zone.zone_id, "api.example.com") is False
        publisher.publish_alias(zone, self.ALIAS)
        assert publisher.remove_alias(zone.zone_id, "api.example.com") is True


class TestRemove:
    def test_absent_record(self, publisher):
        assert publisher.remove("Z1", "_missing.example.com.", "CNAME") is False

    def test_absent_zone(self, publisher):
        assert publisher.remove("ZMISSING", "_missing.example.com.", "CNAME") is False

    def test_existing_record(self, publisher, dns, zone):
        publisher.publish(zone, RECORD, ttl=300)
        assert publisher.remove("Z1", RECORD.name, "CNAME") is True
        assert dns.record_count() == 0
