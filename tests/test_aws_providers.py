"""Tests for certbind_ctl/providers/aws.py with stubbed boto3 clients."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from certbind_ctl.models import (
    AliasRecord,
    CertbindCtlError,
    CertificateStatus,
    HealthCheckPolicy,
    TransientProviderError,
    ZoneNotFoundError,
)
from certbind_ctl.providers.aws import (
    AcmCertificateAuthority,
    ElbV2LoadBalancerProvider,
    Route53DnsProvider,
    _call,
)

CERT_ARN = "arn:aws:acm:us-east-1:123456789012:certificate/0b9d4b1e"
LB_ARN = "arn:aws:elasticloadbalancing:us-east-1:123456789012:loadbalancer/app/edge/50dc6c495c0c9188"
TG_ARN = "arn:aws:elasticloadbalancing:us-east-1:123456789012:targetgroup/api-tg/73e2d6bc24d8a067"


def _client_error(code: str, status: int = 400, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, operation)


def _acm_certificate(status: str = "PENDING_VALIDATION") -> dict:
    return {
        "CertificateArn": CERT_ARN,
        "DomainName": "api.example.com",
        "SubjectAlternativeNames": ["api.example.com", "*.api.example.com"],
        "Status": status,
        "DomainValidationOptions": [
            {
                "DomainName": "api.example.com",
                "ValidationDomain": "api.example.com",
                "ResourceRecord": {
                    "Name": "_a1.api.example.com.",
                    "Type": "CNAME",
                    "Value": "_b2.acm-validations.aws.",
                },
            },
            {
                "DomainName": "*.api.example.com",
                "ValidationDomain": "*.api.example.com",
                "ResourceRecord": {
                    "Name": "_a1.api.example.com.",
                    "Type": "CNAME",
                    "Value": "_b2.acm-validations.aws.",
                },
            },
        ],
    }


class TestCall:
    def test_throttling_is_transient(self):
        func = MagicMock(side_effect=_client_error("ThrottlingException"))
        with pytest.raises(TransientProviderError):
            _call("acm.describe_certificate", func)

    def test_server_errors_are_transient(self):
        func = MagicMock(side_effect=_client_error("SomethingOdd", status=503))
        with pytest.raises(TransientProviderError):
            _call("route53.change_resource_record_sets", func)

    def test_connection_errors_are_transient(self):
        func = MagicMock(side_effect=EndpointConnectionError(endpoint_url="https://acm.us-east-1.amazonaws.com"))
        with pytest.raises(TransientProviderError):
            _call("acm.list_certificates", func)

    def test_not_found_returns_none(self):
        func = MagicMock(side_effect=_client_error("ResourceNotFoundException"))
        assert _call("acm.describe_certificate", func, not_found={"ResourceNotFoundException"}) is None

    def test_other_client_errors_are_permanent(self):
        func = MagicMock(side_effect=_client_error("AccessDenied", status=403))
        with pytest.raises(CertbindCtlError) as excinfo:
            _call("acm.request_certificate", func)
        assert not isinstance(excinfo.value, TransientProviderError)

    def test_passes_keyword_arguments(self):
        func = MagicMock(return_value={"ok": True})
        assert _call("op", func, Name="x") == {"ok": True}
        func.assert_called_once_with(Name="x")


class TestAcmCertificateAuthority:
    def test_request_sends_token_and_names(self):
        client = MagicMock()
        client.request_certificate.return_value = {"CertificateArn": CERT_ARN}
        authority = AcmCertificateAuthority(client)
        assert authority.request_certificate("api.example.com", ("*.api.example.com",), "t" * 32) == CERT_ARN
        client.request_certificate.assert_called_once_with(
            DomainName="api.example.com",
            ValidationMethod="DNS",
            IdempotencyToken="t" * 32,
            SubjectAlternativeNames=["api.example.com", "*.api.example.com"],
        )

    def test_describe_maps_status_and_challenges(self):
        client = MagicMock()
        client.describe_certificate.return_value = {"Certificate": _acm_certificate("ISSUED")}
        description = AcmCertificateAuthority(client).describe_certificate(CERT_ARN)
        assert description.status is CertificateStatus.ISSUED
        assert description.alternate_names == ("*.api.example.com",)
        assert [c.validation_domain for c in description.challenges] == ["api.example.com", "api.example.com"]

    def test_describe_reports_users(self):
        listener_arn = f"{LB_ARN}/listener/1"
        client = MagicMock()
        certificate = {**_acm_certificate("ISSUED"), "InUseBy": [listener_arn]}
        client.describe_certificate.return_value = {"Certificate": certificate}
        assert AcmCertificateAuthority(client).describe_certificate(CERT_ARN).in_use_by == (listener_arn,)

    def test_validation_timed_out_is_failed(self):
        client = MagicMock()
        client.describe_certificate.return_value = {"Certificate": _acm_certificate("VALIDATION_TIMED_OUT")}
        assert AcmCertificateAuthority(client).describe_certificate(CERT_ARN).status is CertificateStatus.FAILED

    def test_describe_missing(self):
        client = MagicMock()
        client.describe_certificate.side_effect = _client_error("ResourceNotFoundException")
        assert AcmCertificateAuthority(client).describe_certificate(CERT_ARN) is None

    def test_find_matches_name_set(self):
        client = MagicMock()
        client.get_paginator.return_value.paginate.return_value = [
            {"CertificateSummaryList": [{"CertificateArn": CERT_ARN, "DomainName": "api.example.com"}]}
        ]
        client.describe_certificate.return_value = {"Certificate": _acm_certificate()}
        authority = AcmCertificateAuthority(client)
        assert authority.find_certificate(("api.example.com", "*.api.example.com")).handle == CERT_ARN
        assert authority.find_certificate(("api.example.com",)) is None

    def test_delete_in_use_is_transient(self):
        client = MagicMock()
        client.delete_certificate.side_effect = _client_error("ResourceInUseException")
        with pytest.raises(TransientProviderError):
            AcmCertificateAuthority(client).delete_certificate(CERT_ARN)

    def test_delete_missing(self):
        client = MagicMock()
        client.delete_certificate.side_effect = _client_error("ResourceNotFoundException")
        assert AcmCertificateAuthority(client).delete_certificate(CERT_ARN) is False


class TestRoute53DnsProvider:
    def test_list_zones_skips_private(self):
        client = MagicMock()
        client.get_paginator.return_value.paginate.return_value = [
            {
                "HostedZones": [
                    {"Id": "/hostedzone/Z1", "Name": "example.com.", "Config": {"PrivateZone": False}},
                    {"Id": "/hostedzone/Z2", "Name": "corp.example.com.", "Config": {"PrivateZone": True}},
                ]
            }
        ]
        zones = Route53DnsProvider(client).list_zones()
        assert [(z.zone_id, z.name) for z in zones] == [("Z1", "example.com.")]

    def test_upsert_record(self):
        client = MagicMock()
        client.change_resource_record_sets.return_value = {"ChangeInfo": {"Id": "/change/C1"}}
        change = Route53DnsProvider(client).upsert_record("Z1", "_a1.api.example.com.", "CNAME", "_b2.aws.", 300)
        assert change == "/change/C1"
        batch = client.change_resource_record_sets.call_args.kwargs["ChangeBatch"]
        assert batch["Changes"][0]["Action"] == "UPSERT"
        assert batch["Changes"][0]["ResourceRecordSet"]["TTL"] == 300

    def test_upsert_into_missing_zone(self):
        client = MagicMock()
        client.change_resource_record_sets.side_effect = _client_error("NoSuchHostedZone", status=404)
        with pytest.raises(ZoneNotFoundError):
            Route53DnsProvider(client).upsert_record("Z9", "a.example.com.", "CNAME", "b.", 300)

    def test_get_record(self):
        client = MagicMock()
        client.list_resource_record_sets.return_value = {
            "ResourceRecordSets": [
                {
                    "Name": "_a1.api.example.com.",
                    "Type": "CNAME",
                    "TTL": 300,
                    "ResourceRecords": [{"Value": "_b2.acm-validations.aws."}],
                }
            ]
        }
        record = Route53DnsProvider(client).get_record("Z1", "_A1.api.example.com", "CNAME")
        assert record.value == "_b2.acm-validations.aws."
        assert record.ttl == 300

    def test_get_record_ignores_neighbours(self):
        client = MagicMock()
        client.list_resource_record_sets.return_value = {
            "ResourceRecordSets": [{"Name": "zzz.example.com.", "Type": "CNAME", "ResourceRecords": [{"Value": "x."}]}]
        }
        assert Route53DnsProvider(client).get_record("Z1", "_a1.example.com.", "CNAME") is None

    def test_delete_absent_record(self):
        client = MagicMock()
        client.list_resource_record_sets.return_value = {"ResourceRecordSets": []}
        assert Route53DnsProvider(client).delete_record("Z1", "_a1.example.com.", "CNAME") is False
        client.change_resource_record_sets.assert_not_called()

    def test_upsert_alias_evaluates_target_health(self):
        client = MagicMock()
        client.change_resource_record_sets.return_value = {"ChangeInfo": {"Id": "/change/C2"}}
        alias = AliasRecord("api.example.com", "edge-1.us-east-1.elb.amazonaws.com", "Z35SXDOTRQ7X7K")
        Route53DnsProvider(client).upsert_alias("Z1", alias)
        record_set = client.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"][0]["ResourceRecordSet"]
        assert record_set["Name"] == "api.example.com."
        assert record_set["Type"] == "A"
        assert record_set["AliasTarget"]["EvaluateTargetHealth"] is True


class TestElbV2LoadBalancerProvider:
    def _listener(self, certificate: str = CERT_ARN) -> dict:
        return {
            "ListenerArn": f"{LB_ARN}/listener/1",
            "LoadBalancerArn": LB_ARN,
            "Port": 443,
            "Protocol": "HTTPS",
            "Certificates": [{"CertificateArn": certificate}],
            "DefaultActions": [{"Type": "forward", "TargetGroupArn": TG_ARN}],
        }

    def _client(self) -> MagicMock:
        client = MagicMock()
        client.describe_load_balancers.return_value = {
            "LoadBalancers": [
                {
                    "LoadBalancerArn": LB_ARN,
                    "DNSName": "edge-1.us-east-1.elb.amazonaws.com",
                    "CanonicalHostedZoneId": "Z35SXDOTRQ7X7K",
                }
            ]
        }
        return client

    def test_create_listener(self):
        client = self._client()
        client.create_listener.return_value = {"Listeners": [self._listener()]}
        listener = ElbV2LoadBalancerProvider(client).create_listener(LB_ARN, 443, "HTTPS", CERT_ARN, TG_ARN)
        kwargs = client.create_listener.call_args.kwargs
        assert kwargs["Certificates"] == [{"CertificateArn": CERT_ARN}]
        assert kwargs["DefaultActions"] == [{"Type": "forward", "TargetGroupArn": TG_ARN}]
        assert "SslPolicy" not in kwargs
        assert listener.public_endpoint == "edge-1.us-east-1.elb.amazonaws.com"

    def test_modify_listener_is_one_call(self):
        client = self._client()
        client.modify_listener.return_value = {"Listeners": [self._listener("arn:new")]}
        listener = ElbV2LoadBalancerProvider(client).modify_listener(
            f"{LB_ARN}/listener/1", "HTTPS", "arn:new", TG_ARN, "ELBSecurityPolicy-TLS13-1-2-2021-06"
        )
        assert client.modify_listener.call_count == 1
        assert client.modify_listener.call_args.kwargs["SslPolicy"] == "ELBSecurityPolicy-TLS13-1-2-2021-06"
        assert listener.certificate_handle == "arn:new"

    def test_find_listener_reports_ssl_policy(self):
        client = self._client()
        client.describe_listeners.return_value = {
            "Listeners": [{**self._listener(), "SslPolicy": "ELBSecurityPolicy-2016-08"}]
        }
        listener = ElbV2LoadBalancerProvider(client).find_listener(LB_ARN, 443)
        assert listener.ssl_policy == "ELBSecurityPolicy-2016-08"

    def test_find_listener_by_port(self):
        client = self._client()
        client.describe_listeners.return_value = {"Listeners": [self._listener()]}
        provider = ElbV2LoadBalancerProvider(client)
        assert provider.find_listener(LB_ARN, 443).target_group_arn == TG_ARN
        assert provider.find_listener(LB_ARN, 8443) is None

    def test_attached_targets_excludes_draining(self):
        client = MagicMock()
        client.describe_target_health.return_value = {
            "TargetHealthDescriptions": [
                {"Target": {"Id": "i-0aaa"}, "TargetHealth": {"State": "healthy"}},
                {"Target": {"Id": "i-0bbb"}, "TargetHealth": {"State": "draining"}},
            ]
        }
        assert ElbV2LoadBalancerProvider(client).attached_targets(TG_ARN) == {"i-0aaa"}

    def test_create_target_group_health_check(self):
        client = MagicMock()
        client.create_target_group.return_value = {"TargetGroups": [{"TargetGroupArn": TG_ARN}]}
        health = HealthCheckPolicy(interval=60, timeout=5, path="/health")
        group = ElbV2LoadBalancerProvider(client).create_target_group("api-tg", 80, "HTTP", "vpc-1", health)
        kwargs = client.create_target_group.call_args.kwargs
        assert kwargs["HealthCheckIntervalSeconds"] == 60
        assert kwargs["HealthCheckPath"] == "/health"
        assert kwargs["Matcher"] == {"HttpCode": "200"}
        assert group.arn == TG_ARN

    def test_missing_target_group(self):
        client = MagicMock()
        client.describe_target_groups.side_effect = _client_error("TargetGroupNotFound")
        assert ElbV2LoadBalancerProvider(client).find_target_group("api-tg") is None

    def test_delete_missing_listener(self):
        client = MagicMock()
        client.delete_listener.side_effect = _client_error("ListenerNotFound")
        assert ElbV2LoadBalancerProvider(client).delete_listener(f"{LB_ARN}/listener/1") is False
