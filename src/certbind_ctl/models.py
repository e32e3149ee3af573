"""Core data models used by certbind-ctl."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


def ensure_absolute(name: str) -> str:
    """Return a fully qualified, lower-cased name with a trailing dot."""
    stripped = name.strip().lower()
    if stripped in {"", "@", "."}:
        return "."
    return stripped if stripped.endswith(".") else f"{stripped}."


def strip_wildcard(name: str) -> str:
    """Return the name a wildcard entry validates against."""
    stripped = name.strip().lower().rstrip(".")
    if stripped.startswith("*."):
        return stripped[2:]
    return stripped


class CertificateStatus(str, enum.Enum):
    """Lifecycle of a certificate request."""

    REQUESTED = "Requested"
    PENDING_VALIDATION = "PendingValidation"
    ISSUED = "Issued"
    FAILED = "Failed"


class CertificateGeneration(str, enum.Enum):
    """Tags the live certificate and the one being rotated out."""

    CURRENT = "current"
    PREVIOUS = "previous"


@dataclass(frozen=True)
class CertificateRequest:
    """A certificate registered with the authority."""

    primary_name: str
    alternate_names: tuple[str, ...]
    status: CertificateStatus
    handle: str
    validation_method: str = "DNS"
    generation: CertificateGeneration = CertificateGeneration.CURRENT

    def names(self) -> tuple[str, ...]:
        """Return the primary name followed by the alternate names."""
        return (self.primary_name, *self.alternate_names)

    def name_key(self) -> tuple[str, ...]:
        """Return an order-independent identity for the requested names."""
        return name_key(self.primary_name, self.alternate_names)

    def is_issued(self) -> bool:
        """Return True when the authority reports the certificate as issued."""
        return self.status is CertificateStatus.ISSUED

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation."""
        return {
            "primary_name": self.primary_name,
            "alternate_names": list(self.alternate_names),
            "status": self.status.value,
            "handle": self.handle,
            "validation_method": self.validation_method,
            "generation": self.generation.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CertificateRequest":
        """Rebuild a request from its serialised form."""
        return cls(
            primary_name=data["primary_name"],
            alternate_names=tuple(data.get("alternate_names", [])),
            status=CertificateStatus(data["status"]),
            handle=data["handle"],
            validation_method=data.get("validation_method", "DNS"),
            generation=CertificateGeneration(data.get("generation", "current")),
        )


def name_key(primary_name: str, alternate_names: tuple[str, ...] | list[str]) -> tuple[str, ...]:
    """Return the canonical name set (primary first, SANs sorted and deduplicated)."""
    primary = primary_name.strip().lower().rstrip(".")
    sans = sorted({name.strip().lower().rstrip(".") for name in alternate_names} - {primary})
    return (primary, *sans)


@dataclass(frozen=True)
class ValidationChallenge:
    """A DNS challenge returned by the authority for one requested name."""

    validation_domain: str
    record_name: str
    record_value: str
    record_type: str = "CNAME"


@dataclass(frozen=True)
class ValidationRecord:
    """DNS record proving control over one validation domain."""

    validation_domain: str
    name: str
    value: str
    type: str = "CNAME"

    def canonical_name(self) -> str:
        """Return the canonical fully qualified owner name."""
        return ensure_absolute(self.name)

    def canonical_value(self) -> str:
        """Return a canonicalised value for comparisons."""
        if self.type.upper() in {"CNAME", "NS", "PTR"}:
            return ensure_absolute(self.value)
        return self.value.strip()

    def to_dict(self) -> dict[str, str]:
        """Return a JSON-serialisable representation."""
        return {
            "validation_domain": self.validation_domain,
            "name": self.name,
            "value": self.value,
            "type": self.type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "ValidationRecord":
        """Rebuild a record from its serialised form."""
        return cls(
            validation_domain=data["validation_domain"],
            name=data["name"],
            value=data["value"],
            type=data.get("type", "CNAME"),
        )


@dataclass(frozen=True)
class Zone:
    """A hosted DNS zone resolved from a domain name."""

    zone_id: str
    name: str


@dataclass(frozen=True)
class RecordHandle:
    """Identifies a record published into a zone."""

    zone_id: str
    name: str
    type: str
    value: str
    ttl: int | None = None
    change_id: str | None = None


@dataclass(frozen=True)
class HealthCheckPolicy:
    """Health-check settings applied to a target group."""

    interval: int = 30
    timeout: int = 5
    path: str = "/"
    matcher: str = "200"
    healthy_threshold: int = 3
    unhealthy_threshold: int = 3
    protocol: str = "HTTP"
    port: str = "traffic-port"

    def __post_init__(self) -> None:
        """Reject timeouts longer than the interval and non-positive thresholds."""
        if self.timeout > self.interval:
            raise StackDefinitionError(
                f"Health check timeout ({self.timeout}s) must not exceed interval ({self.interval}s)."
            )
        if self.healthy_threshold < 1 or self.unhealthy_threshold < 1:
            raise StackDefinitionError("Health check thresholds must be positive.")


@dataclass(frozen=True)
class TargetGroup:
    """A target group and the instances currently attached to it."""

    arn: str
    name: str
    port: int
    protocol: str
    vpc_id: str
    health_check: HealthCheckPolicy
    attached: frozenset[str] = frozenset()


@dataclass(frozen=True)
class LoadBalancer:
    """The load balancer a listener is attached to."""

    arn: str
    dns_name: str
    canonical_zone_id: str


@dataclass(frozen=True)
class Listener:
    """A secure listener with its bound certificate and default action."""

    arn: str
    load_balancer_arn: str
    port: int
    protocol: str
    certificate_handle: str
    target_group_arn: str
    public_endpoint: str | None = None
    ssl_policy: str | None = None


@dataclass(frozen=True)
class AliasRecord:
    """Public alias from the domain name to the listener's endpoint."""

    name: str
    target_dns_name: str
    target_zone_id: str
    evaluate_target_health: bool = True

    def canonical_name(self) -> str:
        """Return the canonical fully qualified owner name."""
        return ensure_absolute(self.name)


@dataclass
class StackDefinition:
    """Desired state of one TLS endpoint stack."""

    domain_name: str
    alternate_names: list[str] = field(default_factory=list)
    zone_domain: str | None = None
    load_balancer_arn: str = ""
    vpc_id: str = ""
    public_subnet_ids: list[str] = field(default_factory=list)
    instance_ids: list[str] = field(default_factory=list)
    target_group_name: str = ""
    target_port: int = 80
    target_protocol: str = "HTTP"
    listener_port: int = 443
    listener_protocol: str = "HTTPS"
    ssl_policy: str | None = None
    health_check: HealthCheckPolicy = field(default_factory=HealthCheckPolicy)
    validation_timeout: float | None = None

    def lookup_domain(self) -> str:
        """Return the domain name used to resolve the hosted zone."""
        return self.zone_domain or self.domain_name


class CertbindCtlError(Exception):
    """Base exception for certbind-ctl."""


class StackDefinitionError(CertbindCtlError):
    """Raised when the desired stack definition is invalid."""


class ZoneNotFoundError(CertbindCtlError):
    """Raised when no hosted zone matches a domain name."""


class RecordConflictError(CertbindCtlError):
    """Raised when a record exists with a different value and overwrite is off."""


class ValidationTimeoutError(CertbindCtlError):
    """Raised when the authority does not issue the certificate in time."""

    def __init__(self, message: str, certificate: CertificateRequest | None = None):
        """Keep the request the error refers to."""
        super().__init__(message)
        self.certificate = certificate


class CertificateValidationFailedError(CertbindCtlError):
    """Raised when the authority reports validation as failed."""

    def __init__(self, message: str, certificate: CertificateRequest | None = None):
        """Keep the request the error refers to."""
        super().__init__(message)
        self.certificate = certificate


class CertificateNotReadyError(CertbindCtlError):
    """Raised when a listener is bound to a certificate that is not issued."""


class TransientProviderError(CertbindCtlError):
    """Raised for throttling and other retriable provider failures."""


class ApplyCancelledError(CertbindCtlError):
    """Raised when an apply is interrupted by the operator."""


class StateError(CertbindCtlError):
    """Raised when the state file cannot be read or written."""


class ApplyFailedError(CertbindCtlError):
    """Raised when a graph node fails; names the node and its error."""

    def __init__(self, node_id: str, error: BaseException, result: Any = None):
        """Record the failed node, its error and the partial result."""
        super().__init__(f"Node '{node_id}' failed: {error}")
        self.node_id = node_id
        self.error = error
        self.result = result
