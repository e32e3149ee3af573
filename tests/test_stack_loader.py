"""Tests for certbind_ctl/stack_loader.py."""

from __future__ import annotations

import textwrap

import pytest

from certbind_ctl.models import StackDefinitionError
from certbind_ctl.stack_loader import load_stack

STACK = textwrap.dedent(
    """
    domain: API.Example.com.
    alternate_names:
      - "*.api.example.com"
      - api.example.com
      - "*.API.example.com"
    load_balancer_arn: {{ lb_arn }}
    vpc_id: vpc-0a1b2c3d
    public_subnet_ids: [subnet-aaa, subnet-bbb]
    instance_ids: [i-0aaa, i-0bbb]
    listener:
      protocol: https
    target_group:
      name: api-tg
      health_check:
        interval: 60
        timeout: 5
        path: /health
    validation_timeout: 600
    """
)

LB_ARN = "arn:aws:elasticloadbalancing:us-east-1:123456789012:loadbalancer/app/edge/50dc6c495c0c9188"


def _write(tmp_path, content: str):
    path = tmp_path / "stack.yaml"
    path.write_text(content)
    return path


def test_loads_stack(tmp_path):
    stack = load_stack(_write(tmp_path, STACK), {"lb_arn": LB_ARN})
    assert stack.domain_name == "api.example.com"
    assert stack.alternate_names == ["*.api.example.com"]
    assert stack.load_balancer_arn == LB_ARN
    assert stack.listener_port == 443
    assert stack.listener_protocol == "HTTPS"
    assert stack.target_port == 80
    assert stack.health_check.interval == 60
    assert stack.health_check.path == "/health"
    assert stack.instance_ids == ["i-0aaa", "i-0bbb"]
    assert stack.validation_timeout == 600


def test_environment_is_available_to_templates(tmp_path, monkeypatch):
    monkeypatch.setenv("EDGE_LB_ARN", LB_ARN)
    content = STACK.replace("{{ lb_arn }}", "{{ env['EDGE_LB_ARN'] }}")
    assert load_stack(_write(tmp_path, content)).load_balancer_arn == LB_ARN


def test_undefined_template_variable(tmp_path):
    with pytest.raises(StackDefinitionError, match="render"):
        load_stack(_write(tmp_path, STACK))


def test_invalid_yaml(tmp_path):
    with pytest.raises(StackDefinitionError, match="parse"):
        load_stack(_write(tmp_path, "domain: [unclosed"))


@pytest.mark.parametrize(
    "old, new",
    [
        ("protocol: https", "protocol: http"),
        ("timeout: 5", "timeout: 90"),
        ("name: api-tg", "name: ''"),
        ("validation_timeout: 600", "validation_timeout: -5"),
    ],
)
def test_rejects_invalid_stack(tmp_path, old, new):
    with pytest.raises(StackDefinitionError, match="validation"):
        load_stack(_write(tmp_path, STACK.replace(old, new)), {"lb_arn": LB_ARN})


def test_missing_target_group(tmp_path):
    content = STACK.split("target_group:")[0]
    with pytest.raises(StackDefinitionError):
        load_stack(_write(tmp_path, content), {"lb_arn": LB_ARN})
