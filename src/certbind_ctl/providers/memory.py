"""In-process provider simulation used for tests and dry runs."""

from __future__ import annotations

import hashlib
import threading
from collections import Counter
from dataclasses import dataclass, field, replace

from ..models import (
    AliasRecord,
    CertificateStatus,
    HealthCheckPolicy,
    Listener,
    LoadBalancer,
    RecordHandle,
    TargetGroup,
    TransientProviderError,
    ValidationChallenge,
    Zone,
    ZoneNotFoundError,
    ensure_absolute,
    name_key,
    strip_wildcard,
)
from .base import CertificateAuthority, CertificateDescription, DnsProvider, LoadBalancerProvider, Providers


def _digest(*parts: str, length: int = 16) -> str:
    """Return a short deterministic hex digest."""
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:length]


class _FaultInjector:
    """Raises TransientProviderError for the next N calls of an operation."""

    def __init__(self) -> None:
        """Start with empty counters."""
        self.pending: Counter[str] = Counter()
        self.calls: Counter[str] = Counter()
        self.writes: Counter[str] = Counter()
        self._lock = threading.RLock()

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` fail transiently."""
        with self._lock:
            self.pending[operation] += times

    def _enter(self, operation: str, write: bool = False) -> None:
        """Count the call and raise any injected fault."""
        with self._lock:
            self.calls[operation] += 1
            if self.pending[operation] > 0:
                self.pending[operation] -= 1
                raise TransientProviderError(f"Simulated throttling on {operation}")
            if write:
                self.writes[operation] += 1

    def total_writes(self) -> int:
        """Return the number of successful mutating calls."""
        return sum(self.writes.values())


@dataclass
class _MemoryCertificate:
    handle: str
    primary_name: str
    alternate_names: tuple[str, ...]
    token: str
    status: CertificateStatus = CertificateStatus.PENDING_VALIDATION
    validated_polls: int = 0


class MemoryCertificateAuthority(_FaultInjector, CertificateAuthority):
    """Simulated authority that checks a MemoryDnsProvider for validation records."""

    def __init__(
        self,
        dns: "MemoryDnsProvider | None" = None,
        collapse_wildcards: bool = True,
        issue_after: int = 1,
        fail_validation: bool = False,
        never_issue: bool = False,
    ) -> None:
        """Configure how validation behaves."""
        super().__init__()
        self.dns = dns
        self.collapse_wildcards = collapse_wildcards
        self.issue_after = issue_after
        self.fail_validation = fail_validation
        self.never_issue = never_issue
        self.certificates: dict[str, _MemoryCertificate] = {}
        # listeners are looked up here to report which ones use a certificate
        self.load_balancer_service: "MemoryLoadBalancerProvider | None" = None

    def _challenges(self, cert: _MemoryCertificate) -> tuple[ValidationChallenge, ...]:
        """Return one challenge per name, collapsing wildcards onto their apex when configured."""
        challenges = []
        for name in (cert.primary_name, *cert.alternate_names):
            domain = strip_wildcard(name) if self.collapse_wildcards else name.lower()
            token = _digest(cert.handle, domain)
            challenges.append(
                ValidationChallenge(
                    validation_domain=domain,
                    record_name=f"_{token}.{strip_wildcard(name)}.",
                    record_value=f"_{_digest(token, 'value')}.acm-validations.aws.",
                    record_type="CNAME",
                )
            )
        return tuple(challenges)

    def _records_visible(self, challenges: tuple[ValidationChallenge, ...]) -> bool:
        """Return True when every challenge record is served."""
        if self.dns is None:
            return True
        return all(self.dns.has_value(c.record_name, c.record_type, c.record_value) for c in challenges)

    def _in_use_by(self, handle: str) -> tuple[str, ...]:
        """Return the listeners that reference ``handle``."""
        if self.load_balancer_service is None:
            return ()
        listeners = list(self.load_balancer_service.listeners.values())
        return tuple(sorted(listener.arn for listener in listeners if listener.certificate_handle == handle))

    def _describe(self, cert: _MemoryCertificate) -> CertificateDescription:
        """Return the public description of ``cert``."""
        return CertificateDescription(
            handle=cert.handle,
            primary_name=cert.primary_name,
            alternate_names=cert.alternate_names,
            status=cert.status,
            challenges=self._challenges(cert),
            in_use_by=self._in_use_by(cert.handle),
        )

    def find_certificate(self, names: tuple[str, ...]) -> CertificateDescription | None:
        """Return the first non-failed certificate for exactly ``names``."""
        self._enter("find_certificate")
        with self._lock:
            for cert in self.certificates.values():
                if cert.status is CertificateStatus.FAILED:
                    continue
                if name_key(cert.primary_name, cert.alternate_names) == names:
                    return self._describe(cert)
        return None

    def request_certificate(self, primary_name: str, alternate_names: tuple[str, ...], idempotency_token: str) -> str:
        """Return the certificate registered under ``idempotency_token``, creating it if needed."""
        self._enter("request_certificate")
        with self._lock:
            for cert in self.certificates.values():
                if cert.token == idempotency_token:
                    return cert.handle
            self.writes["request_certificate"] += 1
            handle = f"arn:memory:acm:certificate/{_digest(idempotency_token, str(len(self.certificates)))}"
            self.certificates[handle] = _MemoryCertificate(
                handle=handle,
                primary_name=primary_name,
                alternate_names=tuple(alternate_names),
                token=idempotency_token,
            )
            return handle

    def describe_certificate(self, handle: str) -> CertificateDescription | None:
        """Describe the certificate, advancing validation once its records are visible."""
        self._enter("describe_certificate")
        with self._lock:
            cert = self.certificates.get(handle)
            if cert is None:
                return None
            if cert.status is CertificateStatus.PENDING_VALIDATION and not self.never_issue:
                if self._records_visible(self._challenges(cert)):
                    cert.validated_polls += 1
                    if cert.validated_polls >= self.issue_after:
                        cert.status = CertificateStatus.FAILED if self.fail_validation else CertificateStatus.ISSUED
            return self._describe(cert)

    def delete_certificate(self, handle: str) -> bool:
        """Forget the certificate."""
        self._enter("delete_certificate", write=True)
        with self._lock:
            return self.certificates.pop(handle, None) is not None


class MemoryDnsProvider(_FaultInjector, DnsProvider):
    """Simulated DNS provider holding record sets and alias records per zone."""

    def __init__(self, zones: dict[str, str] | None = None) -> None:
        """Create the given zones."""
        super().__init__()
        self.zones = {zone_id: ensure_absolute(name) for zone_id, name in (zones or {}).items()}
        self.records: dict[str, dict[tuple[str, str], RecordHandle]] = {zone_id: {} for zone_id in self.zones}
        self.aliases: dict[str, dict[str, AliasRecord]] = {zone_id: {} for zone_id in self.zones}
        self._changes = 0

    def add_zone(self, zone_id: str, name: str) -> Zone:
        """Register a hosted zone."""
        with self._lock:
            self.zones[zone_id] = ensure_absolute(name)
            self.records.setdefault(zone_id, {})
            self.aliases.setdefault(zone_id, {})
            return Zone(zone_id=zone_id, name=self.zones[zone_id])

    def _zone(self, zone_id: str) -> None:
        """Raise ZoneNotFoundError for unknown zones."""
        if zone_id not in self.zones:
            raise ZoneNotFoundError(f"Hosted zone {zone_id} does not exist.")

    def _change_id(self) -> str:
        """Return the next change id."""
        self._changes += 1
        return f"C{self._changes:06d}"

    def has_value(self, name: str, rtype: str, value: str) -> bool:
        """Return True when any zone serves ``value`` for ``name``/``rtype``."""
        key = (ensure_absolute(name), rtype.upper())
        with self._lock:
            for records in self.records.values():
                handle = records.get(key)
                if handle and handle.value == value:
                    return True
        return False

    def record_count(self) -> int:
        """Return the number of record sets across all zones."""
        with self._lock:
            return sum(len(records) for records in self.records.values()) + sum(
                len(aliases) for aliases in self.aliases.values()
            )

    def list_zones(self) -> list[Zone]:
        """Return every registered zone."""
        self._enter("list_zones")
        with self._lock:
            return [Zone(zone_id=zone_id, name=name) for zone_id, name in self.zones.items()]

    def get_record(self, zone_id: str, name: str, rtype: str) -> RecordHandle | None:
        """Return the record set for ``name``/``rtype``."""
        self._enter("get_record")
        with self._lock:
            self._zone(zone_id)
            return self.records[zone_id].get((ensure_absolute(name), rtype.upper()))

    def upsert_record(self, zone_id: str, name: str, rtype: str, value: str, ttl: int) -> str:
        """Create or replace a record set and return a change id."""
        self._enter("upsert_record")
        with self._lock:
            self._zone(zone_id)
            self.writes["upsert_record"] += 1
            change_id = self._change_id()
            key = (ensure_absolute(name), rtype.upper())
            self.records[zone_id][key] = RecordHandle(
                zone_id=zone_id, name=key[0], type=key[1], value=value, ttl=ttl, change_id=change_id
            )
            return change_id

    def delete_record(self, zone_id: str, name: str, rtype: str) -> bool:
        """Remove a record set; unknown zones count as absent."""
        self._enter("delete_record")
        with self._lock:
            if zone_id not in self.zones:
                return False
            removed = self.records[zone_id].pop((ensure_absolute(name), rtype.upper()), None)
            if removed is not None:
                self.writes["delete_record"] += 1
            return removed is not None

    def get_alias(self, zone_id: str, name: str) -> AliasRecord | None:
        """Return the alias record for ``name``."""
        self._enter("get_alias")
        with self._lock:
            self._zone(zone_id)
            return self.aliases[zone_id].get(ensure_absolute(name))

    def upsert_alias(self, zone_id: str, alias: AliasRecord) -> str:
        """Create or replace an alias record."""
        self._enter("upsert_alias")
        with self._lock:
            self._zone(zone_id)
            self.writes["upsert_alias"] += 1
            self.aliases[zone_id][alias.canonical_name()] = alias
            return self._change_id()

    def delete_alias(self, zone_id: str, name: str) -> bool:
        """Remove an alias record; unknown zones count as absent."""
        self._enter("delete_alias")
        with self._lock:
            if zone_id not in self.zones:
                return False
            removed = self.aliases[zone_id].pop(ensure_absolute(name), None)
            if removed is not None:
                self.writes["delete_alias"] += 1
            return removed is not None


@dataclass
class _MemoryTargetGroup:
    group: TargetGroup
    targets: set[str] = field(default_factory=set)


class MemoryLoadBalancerProvider(_FaultInjector, LoadBalancerProvider):
    """Simulated load balancer service."""

    def __init__(self, load_balancers: list[LoadBalancer] | None = None) -> None:
        """Register the given load balancers."""
        super().__init__()
        self.load_balancers = {lb.arn: lb for lb in load_balancers or []}
        self.target_groups: dict[str, _MemoryTargetGroup] = {}
        self.listeners: dict[str, Listener] = {}
        # every certificate handle a listener has ever referenced, in order
        self.certificate_history: list[str] = []

    def add_load_balancer(self, arn: str, dns_name: str, canonical_zone_id: str = "ZLBMEMORY") -> LoadBalancer:
        """Register a load balancer."""
        lb = LoadBalancer(arn=arn, dns_name=dns_name, canonical_zone_id=canonical_zone_id)
        with self._lock:
            self.load_balancers[arn] = lb
        return lb

    def describe_load_balancer(self, arn: str) -> LoadBalancer | None:
        """Return a registered load balancer."""
        self._enter("describe_load_balancer")
        return self.load_balancers.get(arn)

    def find_target_group(self, name: str) -> TargetGroup | None:
        """Return the target group called ``name`` with its attached targets."""
        self._enter("find_target_group")
        with self._lock:
            for entry in self.target_groups.values():
                if entry.group.name == name:
                    return replace(entry.group, attached=frozenset(entry.targets))
        return None

    def create_target_group(
        self, name: str, port: int, protocol: str, vpc_id: str, health_check: HealthCheckPolicy
    ) -> TargetGroup:
        """Create a target group with a name-derived ARN."""
        self._enter("create_target_group", write=True)
        with self._lock:
            arn = f"arn:memory:elb:targetgroup/{name}/{_digest(name, vpc_id, length=8)}"
            group = TargetGroup(
                arn=arn, name=name, port=port, protocol=protocol, vpc_id=vpc_id, health_check=health_check
            )
            self.target_groups[arn] = _MemoryTargetGroup(group=group)
            return group

    def modify_health_check(self, arn: str, health_check: HealthCheckPolicy) -> None:
        """Replace the target group's health check."""
        self._enter("modify_health_check", write=True)
        with self._lock:
            entry = self.target_groups[arn]
            entry.group = replace(entry.group, health_check=health_check)

    def delete_target_group(self, arn: str) -> bool:
        """Forget the target group."""
        self._enter("delete_target_group")
        with self._lock:
            removed = self.target_groups.pop(arn, None)
            if removed is not None:
                self.writes["delete_target_group"] += 1
            return removed is not None

    def attached_targets(self, arn: str) -> set[str]:
        """Return the instance ids registered with the group."""
        self._enter("attached_targets")
        with self._lock:
            entry = self.target_groups.get(arn)
            return set(entry.targets) if entry else set()

    def register_targets(self, arn: str, instance_ids: list[str]) -> None:
        """Attach instances to the group."""
        self._enter("register_targets")
        with self._lock:
            self.writes["register_targets"] += len(instance_ids)
            self.target_groups[arn].targets.update(instance_ids)

    def deregister_targets(self, arn: str, instance_ids: list[str]) -> None:
        """Detach instances from the group if it exists."""
        self._enter("deregister_targets")
        with self._lock:
            entry = self.target_groups.get(arn)
            if entry is None:
                return
            self.writes["deregister_targets"] += len(instance_ids)
            entry.targets.difference_update(instance_ids)

    def find_listener(self, load_balancer_arn: str, port: int) -> Listener | None:
        """Return the listener on ``port`` of the load balancer."""
        self._enter("find_listener")
        with self._lock:
            for listener in self.listeners.values():
                if listener.load_balancer_arn == load_balancer_arn and listener.port == port:
                    return listener
        return None

    def create_listener(
        self,
        load_balancer_arn: str,
        port: int,
        protocol: str,
        certificate_handle: str,
        target_group_arn: str,
        ssl_policy: str | None = None,
    ) -> Listener:
        """Create a listener with a port-derived ARN."""
        self._enter("create_listener", write=True)
        with self._lock:
            lb = self.load_balancers[load_balancer_arn]
            listener = Listener(
                arn=f"arn:memory:elb:listener/{_digest(load_balancer_arn, str(port), length=8)}",
                load_balancer_arn=load_balancer_arn,
                port=port,
                protocol=protocol,
                certificate_handle=certificate_handle,
                target_group_arn=target_group_arn,
                public_endpoint=lb.dns_name,
                ssl_policy=ssl_policy,
            )
            self.listeners[listener.arn] = listener
            self.certificate_history.append(certificate_handle)
            return listener

    def modify_listener(
        self,
        listener_arn: str,
        protocol: str,
        certificate_handle: str,
        target_group_arn: str,
        ssl_policy: str | None = None,
    ) -> Listener:
        """Rebind certificate and target group in place, keeping the TLS policy unless given."""
        self._enter("modify_listener", write=True)
        with self._lock:
            listener = replace(
                self.listeners[listener_arn],
                protocol=protocol,
                certificate_handle=certificate_handle,
                target_group_arn=target_group_arn,
                ssl_policy=ssl_policy or self.listeners[listener_arn].ssl_policy,
            )
            self.listeners[listener_arn] = listener
            self.certificate_history.append(certificate_handle)
            return listener

    def delete_listener(self, listener_arn: str) -> bool:
        """Forget the listener."""
        self._enter("delete_listener")
        with self._lock:
            removed = self.listeners.pop(listener_arn, None)
            if removed is not None:
                self.writes["delete_listener"] += 1
            return removed is not None


def build_memory_providers(
    zones: dict[str, str] | None = None,
    load_balancers: list[LoadBalancer] | None = None,
    **authority_options,
) -> Providers:
    """Return a linked set of in-memory providers."""
    dns = MemoryDnsProvider(zones)
    authority = MemoryCertificateAuthority(dns=dns, **authority_options)
    authority.load_balancer_service = MemoryLoadBalancerProvider(load_balancers)
    return Providers(certificates=authority, dns=dns, load_balancers=authority.load_balancer_service)
