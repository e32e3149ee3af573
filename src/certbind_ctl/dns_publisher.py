"""Publish validation and alias records into hosted zones."""

from __future__ import annotations

import logging
import time
from typing import Callable

from .config import RetryPolicy
from .models import (
    AliasRecord,
    RecordConflictError,
    RecordHandle,
    ValidationRecord,
    Zone,
    ZoneNotFoundError,
    ensure_absolute,
)
from .providers.base import DnsProvider
from .retry import call_with_retry

LOG = logging.getLogger("certbind_ctl")


def _same_value(rtype: str, left: str, right: str) -> bool:
    """Compare record values the way the DNS would."""
    if rtype.upper() in {"CNAME", "NS", "PTR"}:
        return ensure_absolute(left) == ensure_absolute(right)
    return left.strip().strip('"') == right.strip().strip('"')


def _same_alias(left: AliasRecord, right: AliasRecord) -> bool:
    """Return True when both aliases point at the same target."""
    return (
        ensure_absolute(left.target_dns_name) == ensure_absolute(right.target_dns_name)
        and left.target_zone_id == right.target_zone_id
        and left.evaluate_target_health == right.evaluate_target_health
    )


def _in_zone(name: str, zone: Zone) -> bool:
    """Return True when ``name`` lies at or below the zone apex."""
    absolute = ensure_absolute(name)
    return absolute == zone.name or absolute.endswith(f".{zone.name}")


class DNSRecordPublisher:
    """Creates or overwrites records; re-publishing an identical record writes nothing."""

    def __init__(
        self,
        dns: DnsProvider,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Wrap ``dns`` with the retry policy."""
        self.dns = dns
        self.retry = retry or RetryPolicy()
        self.sleep = sleep

    def _call(self, description: str, func: Callable[[], object]):
        """Run ``func`` under the retry policy."""
        return call_with_retry(func, self.retry, description, sleep=self.sleep)

    def resolve_zone(self, domain: str) -> Zone:
        """Return the most specific hosted zone containing ``domain``."""
        zones = self._call("list hosted zones", self.dns.list_zones)
        candidates = [zone for zone in zones if _in_zone(domain, zone)]
        if not candidates:
            raise ZoneNotFoundError(f"No hosted zone matches {domain}.")
        zone = max(candidates, key=lambda item: len(item.name))
        LOG.info("Resolved %s to hosted zone %s (%s)", domain, zone.zone_id, zone.name)
        return zone

    def is_published(self, zone: Zone, record: ValidationRecord, ttl: int) -> bool:
        """Return True when ``record`` is already served with ``ttl``."""
        name, rtype = record.canonical_name(), record.type.upper()
        existing = self._call(f"read {rtype} {name}", lambda: self.dns.get_record(zone.zone_id, name, rtype))
        return (
            existing is not None
            and _same_value(rtype, existing.value, record.value)
            and existing.ttl in (None, ttl)
        )

    def is_alias_published(self, zone: Zone, alias: AliasRecord) -> bool:
        """Return True when the alias already points at the same target."""
        name = alias.canonical_name()
        existing = self._call(f"read alias {name}", lambda: self.dns.get_alias(zone.zone_id, name))
        return existing is not None and _same_alias(existing, alias)

    def publish(
        self,
        zone: Zone,
        record: ValidationRecord,
        ttl: int,
        overwrite: bool = True,
    ) -> RecordHandle:
        """Publish ``record``; replace a differing value unless overwrite is off."""
        name = record.canonical_name()
        rtype = record.type.upper()
        if not _in_zone(name, zone):
            raise ZoneNotFoundError(f"Record {name} does not belong to zone {zone.name}.")

        existing = self._call(f"read {rtype} {name}", lambda: self.dns.get_record(zone.zone_id, name, rtype))
        if existing is not None:
            if _same_value(rtype, existing.value, record.value) and existing.ttl in (None, ttl):
                LOG.debug("Record %s %s already published", rtype, name)
                return existing
            if not overwrite:
                raise RecordConflictError(
                    f"{rtype} {name} already exists with value {existing.value}; overwrite disabled."
                )
            LOG.info("Overwriting %s %s (%s -> %s)", rtype, name, existing.value, record.value)

        change_id = self._call(
            f"upsert {rtype} {name}",
            lambda: self.dns.upsert_record(zone.zone_id, name, rtype, record.value, ttl),
        )
        LOG.info("Published %s %s -> %s (ttl %s)", rtype, name, record.value, ttl)
        return RecordHandle(
            zone_id=zone.zone_id,
            name=name,
            type=rtype,
            value=record.value,
            ttl=ttl,
            change_id=change_id,
        )

    def publish_alias(self, zone: Zone, alias: AliasRecord, overwrite: bool = True) -> RecordHandle:
        """Publish an alias record pointing at a load balancer endpoint."""
        name = alias.canonical_name()
        if not _in_zone(name, zone):
            raise ZoneNotFoundError(f"Alias {name} does not belong to zone {zone.name}.")

        existing = self._call(f"read alias {name}", lambda: self.dns.get_alias(zone.zone_id, name))
        if existing is not None:
            if _same_alias(existing, alias):
                LOG.debug("Alias %s already points at %s", name, alias.target_dns_name)
                return RecordHandle(zone_id=zone.zone_id, name=name, type="A", value=alias.target_dns_name)
            if not overwrite:
                raise RecordConflictError(
                    f"Alias {name} already points at {existing.target_dns_name}; overwrite disabled."
                )

        change_id = self._call(f"upsert alias {name}", lambda: self.dns.upsert_alias(zone.zone_id, alias))
        LOG.info("Published alias %s -> %s", name, alias.target_dns_name)
        return RecordHandle(
            zone_id=zone.zone_id,
            name=name,
            type="A",
            value=alias.target_dns_name,
            change_id=change_id,
        )

    def remove(self, zone_id: str, name: str, rtype: str) -> bool:
        """Delete a record set; absence is not an error."""
        removed = self._call(f"delete {rtype} {name}", lambda: self.dns.delete_record(zone_id, name, rtype))
        if removed:
            LOG.info("Removed %s %s", rtype, name)
        return removed

    def remove_alias(self, zone_id: str, name: str) -> bool:
        """Delete an alias record; absence is not an error."""
        removed = self._call(f"delete alias {name}", lambda: self.dns.delete_alias(zone_id, name))
        if removed:
            LOG.info("Removed alias %s", name)
        return removed
