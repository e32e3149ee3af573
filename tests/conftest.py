"""Shared test fixtures."""

from __future__ import annotations

import pytest

from certbind_ctl.config import AppConfig, RetryPolicy
from certbind_ctl.controller import StackController
from certbind_ctl.models import HealthCheckPolicy, LoadBalancer, StackDefinition
from certbind_ctl.providers.memory import build_memory_providers
from certbind_ctl.state import StateStore

ZONE_ID = "Z0EXAMPLE"
LB_ARN = "arn:aws:elasticloadbalancing:us-east-1:123456789012:loadbalancer/app/edge/50dc6c495c0c9188"
LB_DNS = "edge-1234567890.us-east-1.elb.amazonaws.com"
LB_ZONE_ID = "Z35SXDOTRQ7X7K"


@pytest.fixture
def make_providers():
    """Build linked in-memory providers with an example.com zone and one load balancer."""

    def _make(**authority_options):
        return build_memory_providers(
            zones={ZONE_ID: "example.com"},
            load_balancers=[LoadBalancer(arn=LB_ARN, dns_name=LB_DNS, canonical_zone_id=LB_ZONE_ID)],
            **authority_options,
        )

    return _make


@pytest.fixture
def providers(make_providers):
    return make_providers()


@pytest.fixture
def fast_retry():
    return RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def config(fast_retry):
    return AppConfig(
        provider="memory",
        validation_timeout=5.0,
        validation_poll_interval=0.01,
        validation_record_ttl=300,
        max_workers=4,
        retry=fast_retry,
    )


@pytest.fixture
def stack():
    return StackDefinition(
        domain_name="api.example.com",
        alternate_names=["*.api.example.com"],
        load_balancer_arn=LB_ARN,
        vpc_id="vpc-0a1b2c3d",
        public_subnet_ids=["subnet-aaa", "subnet-bbb"],
        instance_ids=["i-0aaa", "i-0bbb"],
        target_group_name="api-tg",
        health_check=HealthCheckPolicy(interval=60, timeout=5, path="/health"),
    )


@pytest.fixture
def controller(config, providers):
    return StackController(config, providers=providers, state=StateStore())
