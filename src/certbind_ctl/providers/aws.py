"""Providers backed by AWS Certificate Manager, Route 53 and ELBv2 via boto3."""

from __future__ import annotations

import logging
from typing import Any, Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, EndpointConnectionError, ReadTimeoutError

from ..config import AppConfig
from ..models import (
    AliasRecord,
    CertbindCtlError,
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

LOG = logging.getLogger("certbind_ctl")

TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "PriorRequestNotComplete",
    "ServiceUnavailable",
    "InternalFailure",
    "InternalError",
}

ACM_STATUS = {
    "PENDING_VALIDATION": CertificateStatus.PENDING_VALIDATION,
    "ISSUED": CertificateStatus.ISSUED,
    "INACTIVE": CertificateStatus.FAILED,
    "EXPIRED": CertificateStatus.FAILED,
    "VALIDATION_TIMED_OUT": CertificateStatus.FAILED,
    "REVOKED": CertificateStatus.FAILED,
    "FAILED": CertificateStatus.FAILED,
}


def _error_code(exc: ClientError) -> str:
    """Return the AWS error code carried by ``exc``."""
    return exc.response.get("Error", {}).get("Code", "")


def _call(
    operation: str,
    func: Callable[..., Any],
    not_found: set[str] | None = None,
    transient: set[str] | None = None,
    **kwargs: Any,
) -> Any:
    """Invoke a boto3 client method, translating errors into certbind-ctl exceptions.

    Returns None when the error code is listed in ``not_found``.
    """
    LOG.debug("AWS call %s %s", operation, kwargs)
    try:
        return func(**kwargs)
    except ClientError as exc:
        code = _error_code(exc)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if not_found and code in not_found:
            return None
        if code in TRANSIENT_CODES or (transient and code in transient) or status >= 500:
            raise TransientProviderError(f"{operation}: {code or status}") from exc
        raise CertbindCtlError(f"{operation} failed: {exc}") from exc
    except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as exc:
        raise TransientProviderError(f"{operation}: {exc}") from exc
    except BotoCoreError as exc:
        raise CertbindCtlError(f"{operation} failed: {exc}") from exc


def _paginate(client: Any, method: str, key: str, **kwargs: Any) -> list[dict[str, Any]]:
    """Collect every item of a paginated list call."""
    paginator = client.get_paginator(method)

    def _collect() -> list[dict[str, Any]]:
        """Gather the items of every page."""
        items: list[dict[str, Any]] = []
        for page in paginator.paginate(**kwargs):
            items.extend(page.get(key, []))
        return items

    return _call(method, _collect)


class AcmCertificateAuthority(CertificateAuthority):
    """Certificate authority backed by AWS Certificate Manager."""

    def __init__(self, client: Any):
        """Use an ACM client."""
        self.client = client

    def _to_description(self, certificate: dict[str, Any]) -> CertificateDescription:
        """Map a DescribeCertificate payload, including the resources that use it."""
        primary = certificate["DomainName"]
        sans = tuple(name for name in certificate.get("SubjectAlternativeNames", []) if name != primary)
        challenges = []
        for option in certificate.get("DomainValidationOptions", []):
            record = option.get("ResourceRecord")
            if not record:
                continue
            challenges.append(
                ValidationChallenge(
                    validation_domain=strip_wildcard(option.get("ValidationDomain") or option["DomainName"]),
                    record_name=record["Name"],
                    record_value=record["Value"],
                    record_type=record["Type"],
                )
            )
        return CertificateDescription(
            handle=certificate["CertificateArn"],
            primary_name=primary,
            alternate_names=sans,
            status=ACM_STATUS.get(certificate.get("Status", ""), CertificateStatus.REQUESTED),
            challenges=tuple(challenges),
            in_use_by=tuple(certificate.get("InUseBy", [])),
        )

    def find_certificate(self, names: tuple[str, ...]) -> CertificateDescription | None:
        """Return the non-failed certificate whose name set equals ``names``."""
        summaries = _paginate(
            self.client,
            "list_certificates",
            "CertificateSummaryList",
            CertificateStatuses=["PENDING_VALIDATION", "ISSUED"],
        )
        for summary in summaries:
            if summary.get("DomainName", "").lower() != names[0]:
                continue
            description = self.describe_certificate(summary["CertificateArn"])
            if description is None or description.status is CertificateStatus.FAILED:
                continue
            if name_key(description.primary_name, description.alternate_names) == names:
                return description
        return None

    def request_certificate(self, primary_name: str, alternate_names: tuple[str, ...], idempotency_token: str) -> str:
        """Request a DNS-validated certificate under the idempotency token."""
        kwargs: dict[str, Any] = {
            "DomainName": primary_name,
            "ValidationMethod": "DNS",
            "IdempotencyToken": idempotency_token,
        }
        if alternate_names:
            kwargs["SubjectAlternativeNames"] = [primary_name, *alternate_names]
        response = _call("acm.request_certificate", self.client.request_certificate, **kwargs)
        return response["CertificateArn"]

    def describe_certificate(self, handle: str) -> CertificateDescription | None:
        """Describe the certificate; None when ACM does not know it."""
        response = _call(
            "acm.describe_certificate",
            self.client.describe_certificate,
            not_found={"ResourceNotFoundException"},
            CertificateArn=handle,
        )
        if response is None:
            return None
        return self._to_description(response["Certificate"])

    def delete_certificate(self, handle: str) -> bool:
        """Delete the certificate; in-use errors are retried."""
        response = _call(
            "acm.delete_certificate",
            self.client.delete_certificate,
            not_found={"ResourceNotFoundException"},
            transient={"ResourceInUseException"},
            CertificateArn=handle,
        )
        return response is not None


class Route53DnsProvider(DnsProvider):
    """DNS provider backed by Route 53 hosted zones."""

    def __init__(self, client: Any):
        """Use a Route 53 client."""
        self.client = client

    def _find_set(self, zone_id: str, name: str, rtype: str) -> dict[str, Any] | None:
        """Return the record set named ``name`` of type ``rtype``."""
        response = _call(
            "route53.list_resource_record_sets",
            self.client.list_resource_record_sets,
            not_found={"NoSuchHostedZone"},
            HostedZoneId=zone_id,
            StartRecordName=ensure_absolute(name),
            StartRecordType=rtype,
            MaxItems="1",
        )
        if response is None:
            raise ZoneNotFoundError(f"Hosted zone {zone_id} does not exist.")
        for record_set in response.get("ResourceRecordSets", []):
            if ensure_absolute(record_set["Name"]) == ensure_absolute(name) and record_set["Type"] == rtype:
                return record_set
        return None

    def _change(self, zone_id: str, action: str, record_set: dict[str, Any]) -> str:
        """Submit one change batch and return its id."""
        response = _call(
            "route53.change_resource_record_sets",
            self.client.change_resource_record_sets,
            not_found={"NoSuchHostedZone"},
            HostedZoneId=zone_id,
            ChangeBatch={"Changes": [{"Action": action, "ResourceRecordSet": record_set}]},
        )
        if response is None:
            raise ZoneNotFoundError(f"Hosted zone {zone_id} does not exist.")
        return response["ChangeInfo"]["Id"]

    def list_zones(self) -> list[Zone]:
        """Return the public hosted zones."""
        zones = _paginate(self.client, "list_hosted_zones", "HostedZones")
        return [
            Zone(zone_id=zone["Id"].split("/")[-1], name=ensure_absolute(zone["Name"]))
            for zone in zones
            if not zone.get("Config", {}).get("PrivateZone", False)
        ]

    def get_record(self, zone_id: str, name: str, rtype: str) -> RecordHandle | None:
        """Return the record set as a handle."""
        record_set = self._find_set(zone_id, name, rtype)
        if record_set is None or "ResourceRecords" not in record_set:
            return None
        values = [entry["Value"] for entry in record_set["ResourceRecords"]]
        return RecordHandle(
            zone_id=zone_id,
            name=ensure_absolute(record_set["Name"]),
            type=rtype,
            value=values[0] if len(values) == 1 else " ".join(values),
            ttl=record_set.get("TTL"),
        )

    def upsert_record(self, zone_id: str, name: str, rtype: str, value: str, ttl: int) -> str:
        """UPSERT a single-value record set."""
        record_set = {"Name": name, "Type": rtype, "TTL": ttl, "ResourceRecords": [{"Value": value}]}
        return self._change(zone_id, "UPSERT", record_set)

    def delete_record(self, zone_id: str, name: str, rtype: str) -> bool:
        """Delete the record set; absence is not an error."""
        try:
            record_set = self._find_set(zone_id, name, rtype)
        except ZoneNotFoundError:
            return False
        if record_set is None:
            return False
        self._change(zone_id, "DELETE", record_set)
        return True

    def get_alias(self, zone_id: str, name: str) -> AliasRecord | None:
        """Return the alias A record for ``name``."""
        record_set = self._find_set(zone_id, name, "A")
        if record_set is None or "AliasTarget" not in record_set:
            return None
        target = record_set["AliasTarget"]
        return AliasRecord(
            name=ensure_absolute(record_set["Name"]),
            target_dns_name=target["DNSName"],
            target_zone_id=target["HostedZoneId"],
            evaluate_target_health=target.get("EvaluateTargetHealth", False),
        )

    def upsert_alias(self, zone_id: str, alias: AliasRecord) -> str:
        """UPSERT an alias A record."""
        record_set = {
            "Name": alias.canonical_name(),
            "Type": "A",
            "AliasTarget": {
                "HostedZoneId": alias.target_zone_id,
                "DNSName": alias.target_dns_name,
                "EvaluateTargetHealth": alias.evaluate_target_health,
            },
        }
        return self._change(zone_id, "UPSERT", record_set)

    def delete_alias(self, zone_id: str, name: str) -> bool:
        """Delete the alias A record; absence is not an error."""
        try:
            record_set = self._find_set(zone_id, name, "A")
        except ZoneNotFoundError:
            return False
        if record_set is None or "AliasTarget" not in record_set:
            return False
        self._change(zone_id, "DELETE", record_set)
        return True


def _health_check_kwargs(health_check: HealthCheckPolicy) -> dict[str, Any]:
    """Map a health check policy to ELBv2 keyword arguments."""
    return {
        "HealthCheckProtocol": health_check.protocol,
        "HealthCheckPort": health_check.port,
        "HealthCheckPath": health_check.path,
        "HealthCheckIntervalSeconds": health_check.interval,
        "HealthCheckTimeoutSeconds": health_check.timeout,
        "HealthyThresholdCount": health_check.healthy_threshold,
        "UnhealthyThresholdCount": health_check.unhealthy_threshold,
        "Matcher": {"HttpCode": health_check.matcher},
    }


class ElbV2LoadBalancerProvider(LoadBalancerProvider):
    """Load balancer provider backed by Elastic Load Balancing v2."""

    def __init__(self, client: Any):
        """Use an ELBv2 client."""
        self.client = client

    def _to_listener(self, data: dict[str, Any], public_endpoint: str | None) -> Listener:
        """Map a DescribeListeners entry, including its TLS policy."""
        certificates = data.get("Certificates") or [{}]
        forward = next((a for a in data.get("DefaultActions", []) if a.get("Type") == "forward"), {})
        return Listener(
            arn=data["ListenerArn"],
            load_balancer_arn=data["LoadBalancerArn"],
            port=data["Port"],
            protocol=data["Protocol"],
            certificate_handle=certificates[0].get("CertificateArn", ""),
            target_group_arn=forward.get("TargetGroupArn", ""),
            public_endpoint=public_endpoint,
            ssl_policy=data.get("SslPolicy"),
        )

    def _endpoint(self, load_balancer_arn: str) -> str | None:
        """Return the load balancer's DNS name."""
        lb = self.describe_load_balancer(load_balancer_arn)
        return lb.dns_name if lb else None

    def describe_load_balancer(self, arn: str) -> LoadBalancer | None:
        """Return the load balancer, or None when it does not exist."""
        response = _call(
            "elbv2.describe_load_balancers",
            self.client.describe_load_balancers,
            not_found={"LoadBalancerNotFound"},
            LoadBalancerArns=[arn],
        )
        if not response or not response.get("LoadBalancers"):
            return None
        data = response["LoadBalancers"][0]
        return LoadBalancer(arn=data["LoadBalancerArn"], dns_name=data["DNSName"], canonical_zone_id=data["CanonicalHostedZoneId"])

    def find_target_group(self, name: str) -> TargetGroup | None:
        """Return the target group called ``name``, if any."""
        response = _call(
            "elbv2.describe_target_groups",
            self.client.describe_target_groups,
            not_found={"TargetGroupNotFound"},
            Names=[name],
        )
        if not response or not response.get("TargetGroups"):
            return None
        data = response["TargetGroups"][0]
        health_check = HealthCheckPolicy(
            interval=data.get("HealthCheckIntervalSeconds", 30),
            timeout=data.get("HealthCheckTimeoutSeconds", 5),
            path=data.get("HealthCheckPath", "/"),
            matcher=data.get("Matcher", {}).get("HttpCode", "200"),
            healthy_threshold=data.get("HealthyThresholdCount", 3),
            unhealthy_threshold=data.get("UnhealthyThresholdCount", 3),
            protocol=data.get("HealthCheckProtocol", "HTTP"),
            port=data.get("HealthCheckPort", "traffic-port"),
        )
        return TargetGroup(
            arn=data["TargetGroupArn"],
            name=data["TargetGroupName"],
            port=data["Port"],
            protocol=data["Protocol"],
            vpc_id=data.get("VpcId", ""),
            health_check=health_check,
            attached=frozenset(self.attached_targets(data["TargetGroupArn"])),
        )

    def create_target_group(
        self, name: str, port: int, protocol: str, vpc_id: str, health_check: HealthCheckPolicy
    ) -> TargetGroup:
        """Create an instance target group with the health check."""
        response = _call(
            "elbv2.create_target_group",
            self.client.create_target_group,
            Name=name,
            Protocol=protocol,
            Port=port,
            VpcId=vpc_id,
            TargetType="instance",
            **_health_check_kwargs(health_check),
        )
        data = response["TargetGroups"][0]
        return TargetGroup(
            arn=data["TargetGroupArn"], name=name, port=port, protocol=protocol, vpc_id=vpc_id, health_check=health_check
        )

    def modify_health_check(self, arn: str, health_check: HealthCheckPolicy) -> None:
        """Update the group's health check settings."""
        _call(
            "elbv2.modify_target_group",
            self.client.modify_target_group,
            TargetGroupArn=arn,
            **_health_check_kwargs(health_check),
        )

    def delete_target_group(self, arn: str) -> bool:
        """Delete the group; in-use errors are retried."""
        response = _call(
            "elbv2.delete_target_group",
            self.client.delete_target_group,
            not_found={"TargetGroupNotFound"},
            transient={"ResourceInUse"},
            TargetGroupArn=arn,
        )
        return response is not None

    def attached_targets(self, arn: str) -> set[str]:
        """Return registered instances that are not draining."""
        response = _call(
            "elbv2.describe_target_health",
            self.client.describe_target_health,
            not_found={"TargetGroupNotFound"},
            TargetGroupArn=arn,
        )
        if not response:
            return set()
        return {
            item["Target"]["Id"]
            for item in response.get("TargetHealthDescriptions", [])
            if item.get("TargetHealth", {}).get("State") != "draining"
        }

    def register_targets(self, arn: str, instance_ids: list[str]) -> None:
        """Register instances with the group."""
        _call(
            "elbv2.register_targets",
            self.client.register_targets,
            TargetGroupArn=arn,
            Targets=[{"Id": instance_id} for instance_id in instance_ids],
        )

    def deregister_targets(self, arn: str, instance_ids: list[str]) -> None:
        """Deregister instances from the group."""
        _call(
            "elbv2.deregister_targets",
            self.client.deregister_targets,
            not_found={"TargetGroupNotFound"},
            TargetGroupArn=arn,
            Targets=[{"Id": instance_id} for instance_id in instance_ids],
        )

    def find_listener(self, load_balancer_arn: str, port: int) -> Listener | None:
        """Return the listener on ``port``, if any."""
        response = _call(
            "elbv2.describe_listeners",
            self.client.describe_listeners,
            not_found={"LoadBalancerNotFound"},
            LoadBalancerArn=load_balancer_arn,
        )
        for data in (response or {}).get("Listeners", []):
            if data["Port"] == port:
                return self._to_listener(data, self._endpoint(load_balancer_arn))
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
        """Create a listener that forwards to the target group."""
        kwargs: dict[str, Any] = {
            "LoadBalancerArn": load_balancer_arn,
            "Protocol": protocol,
            "Port": port,
            "Certificates": [{"CertificateArn": certificate_handle}],
            "DefaultActions": [{"Type": "forward", "TargetGroupArn": target_group_arn}],
        }
        if ssl_policy:
            kwargs["SslPolicy"] = ssl_policy
        response = _call("elbv2.create_listener", self.client.create_listener, **kwargs)
        return self._to_listener(response["Listeners"][0], self._endpoint(load_balancer_arn))

    def modify_listener(
        self,
        listener_arn: str,
        protocol: str,
        certificate_handle: str,
        target_group_arn: str,
        ssl_policy: str | None = None,
    ) -> Listener:
        """Replace certificate and default action in one call."""
        kwargs: dict[str, Any] = {
            "ListenerArn": listener_arn,
            "Protocol": protocol,
            "Certificates": [{"CertificateArn": certificate_handle}],
            "DefaultActions": [{"Type": "forward", "TargetGroupArn": target_group_arn}],
        }
        if ssl_policy:
            kwargs["SslPolicy"] = ssl_policy
        response = _call("elbv2.modify_listener", self.client.modify_listener, **kwargs)
        data = response["Listeners"][0]
        return self._to_listener(data, self._endpoint(data["LoadBalancerArn"]))

    def delete_listener(self, listener_arn: str) -> bool:
        """Delete the listener; absence is not an error."""
        response = _call(
            "elbv2.delete_listener",
            self.client.delete_listener,
            not_found={"ListenerNotFound"},
            ListenerArn=listener_arn,
        )
        return response is not None


def build_aws_providers(config: AppConfig) -> Providers:
    """Create boto3 clients from the configured profile and regions."""
    if config.aws_profile and config.aws_profile != "default":
        session = boto3.Session(profile_name=config.aws_profile)
    else:
        session = boto3.Session()
    return Providers(
        certificates=AcmCertificateAuthority(
            session.client("acm", region_name=config.certificate_region or config.aws_region)
        ),
        dns=Route53DnsProvider(session.client("route53")),
        load_balancers=ElbV2LoadBalancerProvider(session.client("elbv2", region_name=config.aws_region)),
    )
