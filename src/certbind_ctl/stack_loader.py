"""Load and validate desired-state stack YAML files."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined
from jinja2.exceptions import TemplateError
from pydantic import BaseModel, Field, field_validator, model_validator

from .models import HealthCheckPolicy, StackDefinition, StackDefinitionError

SECURE_PROTOCOLS = {"HTTPS", "TLS"}


def _normalise_name(value: str) -> str:
    """Lower-case a DNS name and drop the trailing dot."""
    return value.strip().lower().rstrip(".")


class HealthCheckSpec(BaseModel):
    """Schema for the target group health check."""

    interval: int = Field(default=30, ge=5, le=300)
    timeout: int = Field(default=5, ge=2, le=120)
    path: str = "/"
    matcher: str = "200"
    healthy_threshold: int = Field(default=3, ge=2, le=10)
    unhealthy_threshold: int = Field(default=3, ge=2, le=10)
    protocol: str = "HTTP"
    port: str = "traffic-port"

    @model_validator(mode="after")
    def _timeout_within_interval(self) -> "HealthCheckSpec":
        """Reject a per-check timeout longer than the interval."""
        if self.timeout > self.interval:
            raise ValueError("health_check.timeout must be <= health_check.interval")
        return self


class ListenerSpec(BaseModel):
    """Schema for the secure listener."""

    port: int = Field(default=443, ge=1, le=65535)
    protocol: str = "HTTPS"
    ssl_policy: str | None = None

    @field_validator("protocol")
    @classmethod
    def _secure_protocol(cls, value: str) -> str:
        """Only secure listener protocols carry a certificate."""
        upper = value.upper()
        if upper not in SECURE_PROTOCOLS:
            raise ValueError(f"listener.protocol must be one of {sorted(SECURE_PROTOCOLS)}")
        return upper


class TargetGroupSpec(BaseModel):
    """Schema for the target group receiving forwarded traffic."""

    name: str = Field(min_length=1, max_length=32)
    port: int = Field(default=80, ge=1, le=65535)
    protocol: str = "HTTP"
    health_check: HealthCheckSpec = Field(default_factory=HealthCheckSpec)


class StackSpec(BaseModel):
    """Schema for the YAML document."""

    domain: str = Field(min_length=1)
    alternate_names: list[str] = Field(default_factory=list)
    zone: str | None = None
    load_balancer_arn: str = Field(min_length=1)
    vpc_id: str = Field(min_length=1)
    public_subnet_ids: list[str] = Field(default_factory=list)
    instance_ids: list[str] = Field(default_factory=list)
    listener: ListenerSpec = Field(default_factory=ListenerSpec)
    target_group: TargetGroupSpec
    validation_timeout: float | None = Field(default=None, ge=0)

    @field_validator("domain", "zone")
    @classmethod
    def _normalise_domain(cls, value: str | None) -> str | None:
        """Normalise DNS names."""
        return _normalise_name(value) if value else value

    @field_validator("alternate_names")
    @classmethod
    def _normalise_alternates(cls, values: list[str]) -> list[str]:
        """Normalise alternate names, keeping their order."""
        seen: list[str] = []
        for value in values:
            name = _normalise_name(value)
            if name and name not in seen:
                seen.append(name)
        return seen


def _render_yaml(path: Path, extra_context: dict[str, Any] | None = None) -> str:
    """Render a YAML file through Jinja2."""
    env = Environment(
        loader=FileSystemLoader(str(path.parent)),
        undefined=StrictUndefined,
        autoescape=False,
        keep_trailing_newline=True,
    )
    template = env.get_template(path.name)
    context = {"env": os.environ}
    if extra_context:
        context.update(extra_context)
    return template.render(**context)


def stack_from_spec(spec: StackSpec) -> StackDefinition:
    """Convert a validated spec into a stack definition."""
    check = spec.target_group.health_check
    return StackDefinition(
        domain_name=spec.domain,
        alternate_names=[name for name in spec.alternate_names if name != spec.domain],
        zone_domain=spec.zone,
        load_balancer_arn=spec.load_balancer_arn,
        vpc_id=spec.vpc_id,
        public_subnet_ids=list(spec.public_subnet_ids),
        instance_ids=list(spec.instance_ids),
        target_group_name=spec.target_group.name,
        target_port=spec.target_group.port,
        target_protocol=spec.target_group.protocol.upper(),
        listener_port=spec.listener.port,
        listener_protocol=spec.listener.protocol,
        ssl_policy=spec.listener.ssl_policy,
        health_check=HealthCheckPolicy(
            interval=check.interval,
            timeout=check.timeout,
            path=check.path,
            matcher=check.matcher,
            healthy_threshold=check.healthy_threshold,
            unhealthy_threshold=check.unhealthy_threshold,
            protocol=check.protocol.upper(),
            port=check.port,
        ),
        validation_timeout=spec.validation_timeout,
    )


def load_stack(path: Path, template_vars: dict[str, Any] | None = None) -> StackDefinition:
    """Load a stack YAML file and turn it into a stack definition."""
    try:
        rendered = _render_yaml(path, template_vars)
    except TemplateError as exc:
        raise StackDefinitionError(f"Failed to render {path}: {exc}") from exc
    try:
        data = yaml.safe_load(rendered) or {}
    except yaml.YAMLError as exc:  # noqa: BLE001
        raise StackDefinitionError(f"Failed to parse YAML: {exc}") from exc

    try:
        spec = StackSpec(**data)
    except Exception as exc:  # noqa: BLE001
        raise StackDefinitionError(f"YAML validation error: {exc}") from exc
    return stack_from_spec(spec)
