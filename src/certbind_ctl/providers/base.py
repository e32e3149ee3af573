"""Abstract provider interfaces.

Implementations must raise :class:`TransientProviderError` for throttling and
other retriable failures so the components can back off, and must treat
deletes of absent resources as a no-op returning ``False``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ..models import (
    AliasRecord,
    CertificateStatus,
    HealthCheckPolicy,
    Listener,
    LoadBalancer,
    RecordHandle,
    TargetGroup,
    ValidationChallenge,
    Zone,
)


@dataclass(frozen=True)
class CertificateDescription:
    """What the authority currently reports about a certificate."""

    handle: str
    primary_name: str
    alternate_names: tuple[str, ...]
    status: CertificateStatus
    challenges: tuple[ValidationChallenge, ...] = ()
    in_use_by: tuple[str, ...] = field(default_factory=tuple)


class CertificateAuthority(ABC):
    """Requests, inspects and deletes domain certificates."""

    @abstractmethod
    def find_certificate(self, names: tuple[str, ...]) -> CertificateDescription | None:
        """Return a non-failed certificate covering exactly ``names``, if any."""

    @abstractmethod
    def request_certificate(
        self,
        primary_name: str,
        alternate_names: tuple[str, ...],
        idempotency_token: str,
    ) -> str:
        """Register a DNS-validated certificate request and return its handle."""

    @abstractmethod
    def describe_certificate(self, handle: str) -> CertificateDescription | None:
        """Return the current description or None when the handle is unknown."""

    @abstractmethod
    def delete_certificate(self, handle: str) -> bool:
        """Delete the certificate; return False when it did not exist."""


class DnsProvider(ABC):
    """Reads and writes records in hosted zones."""

    @abstractmethod
    def list_zones(self) -> list[Zone]:
        """Return every hosted zone visible to the caller."""

    @abstractmethod
    def get_record(self, zone_id: str, name: str, rtype: str) -> RecordHandle | None:
        """Return the record set with ``name``/``rtype`` or None."""

    @abstractmethod
    def upsert_record(self, zone_id: str, name: str, rtype: str, value: str, ttl: int) -> str:
        """Create or replace a record set; return the change id."""

    @abstractmethod
    def delete_record(self, zone_id: str, name: str, rtype: str) -> bool:
        """Delete a record set; return False when it did not exist."""

    @abstractmethod
    def get_alias(self, zone_id: str, name: str) -> AliasRecord | None:
        """Return the alias record at ``name`` or None."""

    @abstractmethod
    def upsert_alias(self, zone_id: str, alias: AliasRecord) -> str:
        """Create or replace an alias record; return the change id."""

    @abstractmethod
    def delete_alias(self, zone_id: str, name: str) -> bool:
        """Delete an alias record; return False when it did not exist."""


class LoadBalancerProvider(ABC):
    """Manages listeners, target groups and target registrations."""

    @abstractmethod
    def describe_load_balancer(self, arn: str) -> LoadBalancer | None:
        """Return the load balancer or None when it does not exist."""

    @abstractmethod
    def find_target_group(self, name: str) -> TargetGroup | None:
        """Return the target group named ``name`` or None."""

    @abstractmethod
    def create_target_group(
        self,
        name: str,
        port: int,
        protocol: str,
        vpc_id: str,
        health_check: HealthCheckPolicy,
    ) -> TargetGroup:
        """Create a target group with the given health check."""

    @abstractmethod
    def modify_health_check(self, arn: str, health_check: HealthCheckPolicy) -> None:
        """Replace the health-check policy of a target group."""

    @abstractmethod
    def delete_target_group(self, arn: str) -> bool:
        """Delete a target group; return False when it did not exist."""

    @abstractmethod
    def attached_targets(self, arn: str) -> set[str]:
        """Return the instance ids currently registered with a target group."""

    @abstractmethod
    def register_targets(self, arn: str, instance_ids: list[str]) -> None:
        """Register instances with a target group."""

    @abstractmethod
    def deregister_targets(self, arn: str, instance_ids: list[str]) -> None:
        """Deregister instances from a target group."""

    @abstractmethod
    def find_listener(self, load_balancer_arn: str, port: int) -> Listener | None:
        """Return the listener on ``port`` or None."""

    @abstractmethod
    def create_listener(
        self,
        load_balancer_arn: str,
        port: int,
        protocol: str,
        certificate_handle: str,
        target_group_arn: str,
        ssl_policy: str | None = None,
    ) -> Listener:
        """Create a listener forwarding to ``target_group_arn``."""

    @abstractmethod
    def modify_listener(
        self,
        listener_arn: str,
        protocol: str,
        certificate_handle: str,
        target_group_arn: str,
        ssl_policy: str | None = None,
    ) -> Listener:
        """Replace certificate and default action in a single call."""

    @abstractmethod
    def delete_listener(self, listener_arn: str) -> bool:
        """Delete a listener; return False when it did not exist."""


@dataclass
class Providers:
    """Bundle of the three provider seams used by a stack."""

    certificates: CertificateAuthority
    dns: DnsProvider
    load_balancers: LoadBalancerProvider
