"""High-level orchestration for certbind-ctl."""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, replace
from typing import Any

from .certificates import CertificateRequestManager, ValidationWaiter
from .config import AppConfig
from .dns_publisher import DNSRecordPublisher
from .graph import GraphResult, Node, NodeContext, ResourceGraph, ResourceGraphExecutor
from .listener import ListenerBinder
from .models import (
    AliasRecord,
    ApplyCancelledError,
    CertbindCtlError,
    CertificateGeneration,
    CertificateRequest,
    CertificateStatus,
    RecordHandle,
    StackDefinition,
    ValidationRecord,
    Zone,
    ZoneNotFoundError,
    ensure_absolute,
    name_key,
)
from .providers.base import Providers
from .state import NodeRecord, StateStore
from .targets import TargetRegistrar
from .validation import synthesize

LOG = logging.getLogger("certbind_ctl")

ZONE = "zone"
CERTIFICATE = "certificate"
VALIDATION_RECORDS = "validation-records"
CERTIFICATE_ISSUED = "certificate-issued"
TARGET_GROUP = "target-group"
TARGETS = "targets"
LISTENER = "listener"
ALIAS_RECORD = "alias-record"
SUPERSEDED = "superseded"
VALIDATION_RECORD_PREFIX = "validation-record:"
SUPERSEDED_KINDS = ("aliases", "listeners", "target_groups", "certificates")


@dataclass
class StackOutputs:
    """Observable results of a converged stack."""

    public_endpoint: str | None
    alias_name: str | None
    certificate_handle: str | None


def configure_logging(level: str) -> None:
    """Configure logging output."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_providers(config: AppConfig) -> Providers:
    """Return the provider bundle selected by ``config.provider``."""
    if config.provider == "aws":
        from .providers.aws import build_aws_providers

        return build_aws_providers(config)
    from .providers.memory import build_memory_providers

    return build_memory_providers()


class StackController:
    """Builds the provisioning graph for a stack and runs apply/destroy."""

    def __init__(
        self,
        config: AppConfig,
        providers: Providers | None = None,
        state: StateStore | None = None,
    ):
        """Wire components to providers, state and a shared cancellation event."""
        self.config = config
        self.providers = providers or build_providers(config)
        self.state = state if state is not None else StateStore(config.state_path)
        self.cancel_event = threading.Event()
        self.certificates = CertificateRequestManager(
            self.providers.certificates,
            config.retry,
            sleep=self._pause,
            poll_interval=config.validation_poll_interval,
            challenge_timeout=config.validation_timeout,
        )
        self.waiter = ValidationWaiter(
            self.providers.certificates,
            poll_interval=config.validation_poll_interval,
            retry=config.retry,
            cancel_event=self.cancel_event,
            check_propagation=config.validation_check_propagation,
        )
        self.publisher = DNSRecordPublisher(self.providers.dns, config.retry)
        self.binder = ListenerBinder(self.providers.load_balancers, config.retry)
        self.registrar = TargetRegistrar(self.providers.load_balancers, config.retry)
        self.executor = ResourceGraphExecutor(
            self.state,
            max_workers=config.max_workers,
            cancel_event=self.cancel_event,
        )

    def apply(self, stack: StackDefinition) -> GraphResult:
        """Converge the stack; safe to re-run after a failure or timeout."""
        self._stage_superseded(stack)
        graph = self.build_graph(stack)
        LOG.info("Applying stack for %s (%s nodes)", stack.domain_name, len(graph.nodes))
        result = self.executor.apply(graph)
        LOG.info("Apply complete for %s: %s node(s) changed", stack.domain_name, len(result.changed()))
        return result

    def destroy(self, stack: StackDefinition) -> GraphResult:
        """Remove every resource of the stack that exists."""
        graph = self.build_graph(stack, for_destroy=True)
        LOG.info("Destroying stack for %s", stack.domain_name)
        result = self.executor.destroy(graph)
        LOG.info("Destroy complete for %s", stack.domain_name)
        return result

    def cancel(self) -> None:
        """Abort a running apply (e.g. from a signal handler)."""
        self.executor.cancel()

    def outputs(self) -> StackOutputs:
        """Return the recorded public endpoint, alias and certificate."""
        listener = self.state.get(LISTENER)
        alias = self.state.get(ALIAS_RECORD)
        issued = self.state.get(CERTIFICATE_ISSUED)
        return StackOutputs(
            public_endpoint=listener.outputs.get("public_endpoint") if listener else None,
            alias_name=alias.outputs.get("name") if alias else None,
            certificate_handle=issued.outputs["certificate"]["handle"] if issued else None,
        )

    def _pause(self, seconds: float) -> None:
        """Sleep for ``seconds``; raise ApplyCancelledError when cancelled meanwhile."""
        if self.cancel_event.wait(seconds):
            raise ApplyCancelledError("Apply cancelled by operator.")

    def _stage_superseded(self, stack: StackDefinition) -> None:
        """Queue recorded resources that ``stack`` replaces.

        Queued resources are retired once the replacements are bound and the
        alias points at them, or on teardown.
        """
        record = self.state.get(SUPERSEDED)
        queued = {kind: list(record.outputs.get(kind, [])) if record else [] for kind in SUPERSEDED_KINDS}
        alias_name = ensure_absolute(stack.domain_name)
        listener_key = (stack.load_balancer_arn, stack.listener_port)

        certificate = self.state.get(CERTIFICATE)
        if certificate is not None:
            current = CertificateRequest.from_dict(certificate.outputs["certificate"])
            reason = None
            if current.name_key() != name_key(stack.domain_name, stack.alternate_names):
                reason = "names changed"
            else:
                description = self.certificates.describe(current)
                if description is None:
                    reason = "it no longer exists"
                elif description.status is CertificateStatus.FAILED:
                    reason = "validation failed"
            if reason is not None:
                _enqueue(queued["certificates"], replace(current, generation=CertificateGeneration.PREVIOUS).to_dict())
                LOG.info("Certificate %s will be retired after its replacement is bound (%s)", current.handle, reason)

        group = self.state.get(TARGET_GROUP)
        if group is not None and group.outputs.get("name") != stack.target_group_name:
            _enqueue(queued["target_groups"], {"arn": group.outputs["arn"], "name": group.outputs["name"]})
            LOG.info("Target group %s will be retired after the listener moves", group.outputs["name"])

        listener = self.state.get(LISTENER)
        outputs = listener.outputs if listener else {}
        if listener is not None and (outputs.get("load_balancer_arn"), outputs.get("port")) != listener_key:
            _enqueue(
                queued["listeners"],
                {"arn": outputs["arn"], "load_balancer_arn": outputs["load_balancer_arn"], "port": outputs["port"]},
            )
            LOG.info("Listener %s will be retired after the new one is bound", outputs["arn"])

        alias = self.state.get(ALIAS_RECORD)
        if alias is not None and alias.outputs.get("name") != alias_name:
            _enqueue(queued["aliases"], {"zone_id": alias.outputs["zone_id"], "name": alias.outputs["name"]})
            LOG.info("Alias %s will be removed after %s is published", alias.outputs["name"], alias_name)

        # the definition may have moved back to a queued identity
        queued["target_groups"] = [e for e in queued["target_groups"] if e["name"] != stack.target_group_name]
        queued["listeners"] = [e for e in queued["listeners"] if (e["load_balancer_arn"], e["port"]) != listener_key]
        queued["aliases"] = [e for e in queued["aliases"] if e["name"] != alias_name]

        pending = {kind: entries for kind, entries in queued.items() if entries}
        if pending == (record.outputs if record else {}):
            return
        self.state.put(SUPERSEDED, NodeRecord(fingerprint=record.fingerprint if record else "", outputs=pending))

    def build_graph(self, stack: StackDefinition, for_destroy: bool = False) -> ResourceGraph:
        """Return the certificate → validation → listener → alias graph for ``stack``."""
        nodes = _StackNodes(self, stack)
        graph = ResourceGraph()
        graph.add(Node(id=ZONE, apply=nodes.resolve_zone, observe=nodes.observe_zone, inputs=stack.lookup_domain()))
        graph.add(
            Node(
                id=CERTIFICATE,
                apply=nodes.request_certificate,
                observe=nodes.observe_certificate,
                destroy=nodes.delete_certificate,
                inputs=list(nodes.names),
            )
        )
        graph.add(
            Node(
                id=VALIDATION_RECORDS,
                apply=nodes.synthesize_records,
                observe=nodes.observe_records,
                depends_on=(CERTIFICATE, ZONE),
                inputs=list(nodes.names),
                fan_out=nodes.record_nodes,
                child_destroy=nodes.remove_validation_record,
            )
        )
        graph.add(
            Node(
                id=CERTIFICATE_ISSUED,
                apply=nodes.await_issuance,
                observe=nodes.observe_issuance,
                depends_on=(VALIDATION_RECORDS,),
                inputs=list(nodes.names),
            )
        )
        graph.add(
            Node(
                id=TARGET_GROUP,
                apply=nodes.ensure_target_group,
                observe=nodes.observe_target_group,
                destroy=nodes.delete_target_group,
                inputs=nodes.target_group_inputs(),
            )
        )
        graph.add(
            Node(
                id=TARGETS,
                apply=nodes.register_targets,
                observe=nodes.observe_targets,
                destroy=nodes.deregister_targets,
                depends_on=(TARGET_GROUP,),
                inputs=sorted(set(stack.instance_ids)),
            )
        )
        listener_depends_on: tuple[str, ...] = (CERTIFICATE_ISSUED, TARGET_GROUP)
        if for_destroy:
            # teardown walks edges backwards: superseded resources go after the
            # listener and before the certificate and target group
            graph.add(Node(id=SUPERSEDED, destroy=nodes.delete_superseded, depends_on=(CERTIFICATE, TARGET_GROUP)))
            listener_depends_on += (SUPERSEDED,)
        graph.add(
            Node(
                id=LISTENER,
                apply=nodes.bind_listener,
                observe=nodes.observe_listener,
                destroy=nodes.unbind_listener,
                depends_on=listener_depends_on,
                inputs=[stack.load_balancer_arn, stack.listener_port, stack.listener_protocol, stack.ssl_policy],
            )
        )
        graph.add(
            Node(
                id=ALIAS_RECORD,
                apply=nodes.publish_alias,
                observe=nodes.observe_alias,
                destroy=nodes.remove_alias,
                depends_on=(LISTENER, ZONE),
                inputs=ensure_absolute(stack.domain_name),
                writes=(ensure_absolute(stack.domain_name),),
            )
        )
        superseded = self.state.get(SUPERSEDED)
        if not for_destroy and superseded is not None and any(superseded.outputs.values()):
            graph.add(
                Node(
                    id=SUPERSEDED,
                    apply=nodes.retire_superseded,
                    destroy=nodes.delete_superseded,
                    depends_on=(ALIAS_RECORD,),
                )
            )
        return graph


class _StackNodes:
    """Node callbacks for one stack definition."""

    def __init__(self, controller: StackController, stack: StackDefinition):
        """Bind the callbacks to ``controller`` and ``stack``."""
        self.controller = controller
        self.stack = stack
        self.names = name_key(stack.domain_name, stack.alternate_names)
        self.config = controller.config

    # zone

    def _zone(self, ctx: NodeContext) -> Zone:
        """Return the zone resolved during this run."""
        outputs = ctx.output(ZONE)
        if not outputs:
            raise ZoneNotFoundError(f"Zone for {self.stack.lookup_domain()} was not resolved.")
        return Zone(zone_id=outputs["zone_id"], name=outputs["name"])

    def _teardown_zone(self, ctx: NodeContext) -> Zone | None:
        """Return the recorded zone or look it up; None when it is gone."""
        outputs = ctx.output(ZONE)
        if outputs:
            return Zone(zone_id=outputs["zone_id"], name=outputs["name"])
        try:
            return self.controller.publisher.resolve_zone(self.stack.lookup_domain())
        except ZoneNotFoundError:
            return None

    def resolve_zone(self, ctx: NodeContext) -> dict[str, Any]:
        """Resolve the hosted zone that owns the lookup domain."""
        zone = self.controller.publisher.resolve_zone(self.stack.lookup_domain())
        return {"zone_id": zone.zone_id, "name": zone.name}

    def observe_zone(self, ctx: NodeContext) -> dict[str, Any] | None:
        """Return the recorded zone while the provider still resolves to it."""
        outputs = self.resolve_zone(ctx)
        return outputs if outputs == ctx.recorded.outputs else None

    # certificate

    def _current_certificate(self, ctx: NodeContext) -> CertificateRequest:
        """Return the certificate produced by the certificate node."""
        return CertificateRequest.from_dict(ctx.output(CERTIFICATE)["certificate"])

    def request_certificate(self, ctx: NodeContext) -> dict[str, Any]:
        """Request (or reuse) the certificate for the stack's names."""
        replacing = ctx.recorded.outputs["certificate"]["handle"] if ctx.recorded else None
        request = self.controller.certificates.request_certificate(self.names[0], self.names[1:], replacing=replacing)
        return {"certificate": request.to_dict()}

    def observe_certificate(self, ctx: NodeContext) -> dict[str, Any] | None:
        """Keep the recorded certificate unless it failed or disappeared."""
        recorded = CertificateRequest.from_dict(ctx.recorded.outputs["certificate"])
        description = self.controller.certificates.describe(recorded)
        if description is None or description.status is CertificateStatus.FAILED:
            return None
        return ctx.recorded.outputs

    def delete_certificate(self, ctx: NodeContext) -> None:
        """Delete the recorded certificate, or one found by name."""
        if ctx.recorded is not None:
            handle = ctx.recorded.outputs["certificate"]["handle"]
        else:
            existing = self.controller.certificates.find(self.names[0], self.names[1:])
            if existing is None:
                return
            handle = existing.handle
        self.controller.certificates.delete(handle)

    # validation records

    def synthesize_records(self, ctx: NodeContext) -> dict[str, Any]:
        """Collapse the certificate's challenges into validation records."""
        request = self._current_certificate(ctx)
        records = synthesize(self.controller.certificates.challenges(request))
        LOG.info("Synthesized %s validation record(s) for %s", len(records), request.handle)
        return {"certificate_handle": request.handle, "records": [record.to_dict() for record in records]}

    def observe_records(self, ctx: NodeContext) -> dict[str, Any] | None:
        """Keep the recorded records while they belong to the current certificate."""
        if ctx.recorded.outputs.get("certificate_handle") == self._current_certificate(ctx).handle:
            return ctx.recorded.outputs
        return None

    def record_nodes(self, outputs: dict[str, Any]) -> list[Node]:
        """Build one publishing node per validation record."""
        nodes = []
        ttl = self.config.validation_record_ttl
        for data in outputs["records"]:
            record = ValidationRecord.from_dict(data)
            nodes.append(
                Node(
                    id=f"{VALIDATION_RECORD_PREFIX}{record.validation_domain}",
                    apply=lambda ctx, record=record: self.publish_record(ctx, record, ttl),
                    observe=lambda ctx, record=record: self.observe_record(ctx, record, ttl),
                    depends_on=(ZONE,),
                    inputs={**record.to_dict(), "ttl": ttl},
                    writes=(record.canonical_name(),),
                )
            )
        return nodes

    def publish_record(self, ctx: NodeContext, record: ValidationRecord, ttl: int) -> dict[str, Any]:
        """Publish one validation record and remember names it replaces."""
        handle = self.controller.publisher.publish(self._zone(ctx), record, ttl)
        outputs = _handle_outputs(handle, record.validation_domain)
        # a rotated certificate may validate the same domain under a new record name
        superseded = list(ctx.recorded.outputs.get("superseded", [])) if ctx.recorded else []
        if ctx.recorded is not None and ctx.recorded.outputs.get("name") not in (None, handle.name):
            previous = ctx.recorded.outputs
            superseded.append({"zone_id": previous["zone_id"], "name": previous["name"], "type": previous["type"]})
        if superseded:
            outputs["superseded"] = superseded
        return outputs

    def observe_record(self, ctx: NodeContext, record: ValidationRecord, ttl: int) -> dict[str, Any] | None:
        """Keep the record while the zone still serves it."""
        if self.controller.publisher.is_published(self._zone(ctx), record, ttl):
            return ctx.recorded.outputs
        return None

    def remove_validation_record(self, ctx: NodeContext) -> None:
        """Remove the record and every name it superseded."""
        if ctx.recorded is None:
            return
        outputs = ctx.recorded.outputs
        for entry in [outputs, *outputs.get("superseded", [])]:
            self.controller.publisher.remove(entry["zone_id"], entry["name"], entry["type"])

    # issuance

    def _record_handles(self, ctx: NodeContext) -> list[RecordHandle]:
        """Return handles of the validation records published in this run."""
        handles = []
        for data in ctx.output(VALIDATION_RECORDS).get("records", []):
            outputs = ctx.output(f"{VALIDATION_RECORD_PREFIX}{data['validation_domain']}")
            if outputs:
                handles.append(
                    RecordHandle(
                        zone_id=outputs["zone_id"],
                        name=outputs["name"],
                        type=outputs["type"],
                        value=outputs["value"],
                        ttl=outputs.get("ttl"),
                        change_id=outputs.get("change_id"),
                    )
                )
        return handles

    def await_issuance(self, ctx: NodeContext) -> dict[str, Any]:
        """Wait until the authority issues the current certificate."""
        timeout = self.stack.validation_timeout
        if timeout is None:
            timeout = self.config.validation_timeout
        issued = self.controller.waiter.await_issuance(self._current_certificate(ctx), self._record_handles(ctx), timeout)
        return {"certificate": issued.to_dict()}

    def observe_issuance(self, ctx: NodeContext) -> dict[str, Any] | None:
        """Keep the recorded issuance while the certificate is still issued."""
        current = self._current_certificate(ctx)
        if ctx.recorded.outputs["certificate"]["handle"] != current.handle:
            return None
        description = self.controller.certificates.describe(current)
        if description is None or description.status is not CertificateStatus.ISSUED:
            return None
        return ctx.recorded.outputs

    # target group and targets

    def target_group_inputs(self) -> dict[str, Any]:
        """Return the target group settings that define its fingerprint."""
        stack = self.stack
        return {
            "name": stack.target_group_name,
            "port": stack.target_port,
            "protocol": stack.target_protocol,
            "vpc_id": stack.vpc_id,
            "health_check": asdict(stack.health_check),
        }

    def ensure_target_group(self, ctx: NodeContext) -> dict[str, Any]:
        """Create the target group or repair its health check."""
        stack = self.stack
        group = self.controller.registrar.ensure_target_group(
            stack.target_group_name, stack.target_port, stack.target_protocol, stack.vpc_id, stack.health_check
        )
        return {"arn": group.arn, "name": group.name}

    def observe_target_group(self, ctx: NodeContext) -> dict[str, Any] | None:
        """Return the target group when it exists with the desired health check."""
        group = self.controller.registrar.find_target_group(self.stack.target_group_name)
        if group is None or group.health_check != self.stack.health_check:
            return None
        return {"arn": group.arn, "name": group.name}

    def _target_group_arn(self, ctx: NodeContext) -> str | None:
        """Return the recorded target group ARN, or look it up by name."""
        recorded = ctx.output(TARGET_GROUP).get("arn")
        if recorded:
            return recorded
        group = self.controller.registrar.find_target_group(self.stack.target_group_name)
        return group.arn if group else None

    def delete_target_group(self, ctx: NodeContext) -> None:
        """Delete the recorded target group, or one found by name."""
        arn = ctx.recorded.outputs.get("arn") if ctx.recorded else self._target_group_arn(ctx)
        if arn:
            self.controller.registrar.delete_target_group(arn)

    def register_targets(self, ctx: NodeContext) -> dict[str, Any]:
        """Register desired instances and deregister removed ones."""
        registrar = self.controller.registrar
        group = registrar.find_target_group(self.stack.target_group_name)
        if group is None:
            raise CertbindCtlError(f"Target group {self.stack.target_group_name} does not exist.")
        desired = sorted(set(self.stack.instance_ids))
        if ctx.recorded is not None:
            stale = set(ctx.recorded.outputs.get("instance_ids", [])) - set(desired)
            if stale:
                registrar.deregister_targets(group.arn, stale)
        registrar.register_targets(group, desired, self.stack.health_check)
        return {"target_group_arn": group.arn, "instance_ids": desired}

    def observe_targets(self, ctx: NodeContext) -> dict[str, Any] | None:
        """Keep the recorded targets while the group holds exactly the desired set."""
        arn = ctx.output(TARGET_GROUP)["arn"]
        attached = self.controller.registrar.attached(arn)
        desired = set(self.stack.instance_ids)
        stale = set(ctx.recorded.outputs.get("instance_ids", [])) - desired
        if desired <= attached and not (stale & attached) and ctx.recorded.outputs.get("target_group_arn") == arn:
            return ctx.recorded.outputs
        return None

    def deregister_targets(self, ctx: NodeContext) -> None:
        """Deregister every instance the stack registered."""
        arn = self._target_group_arn(ctx)
        if not arn:
            return
        instance_ids = set(self.stack.instance_ids)
        if ctx.recorded is not None:
            instance_ids |= set(ctx.recorded.outputs.get("instance_ids", []))
        self.controller.registrar.deregister_targets(arn, instance_ids)

    # listener

    def bind_listener(self, ctx: NodeContext) -> dict[str, Any]:
        """Bind the issued certificate and target group to the listener."""
        stack = self.stack
        binder = self.controller.binder
        certificate = CertificateRequest.from_dict(ctx.output(CERTIFICATE_ISSUED)["certificate"])
        listener = binder.bind_listener(
            stack.load_balancer_arn,
            stack.listener_port,
            stack.listener_protocol,
            certificate,
            ctx.output(TARGET_GROUP)["arn"],
            stack.ssl_policy,
        )
        load_balancer = binder.load_balancer(stack.load_balancer_arn)
        return {
            "arn": listener.arn,
            "load_balancer_arn": listener.load_balancer_arn,
            "port": listener.port,
            "protocol": listener.protocol,
            "certificate_handle": listener.certificate_handle,
            "target_group_arn": listener.target_group_arn,
            "public_endpoint": listener.public_endpoint,
            "canonical_zone_id": load_balancer.canonical_zone_id,
            "ssl_policy": listener.ssl_policy,
        }

    def observe_listener(self, ctx: NodeContext) -> dict[str, Any] | None:
        """Keep the recorded listener while it matches the desired binding."""
        listener = self.controller.binder.find(self.stack.load_balancer_arn, self.stack.listener_port)
        if listener is None:
            return None
        expected_certificate = ctx.output(CERTIFICATE_ISSUED)["certificate"]["handle"]
        if (
            listener.certificate_handle != expected_certificate
            or listener.target_group_arn != ctx.output(TARGET_GROUP)["arn"]
            or listener.protocol != self.stack.listener_protocol
            or (self.stack.ssl_policy is not None and listener.ssl_policy != self.stack.ssl_policy)
            or ctx.recorded.outputs.get("arn") != listener.arn
        ):
            return None
        return ctx.recorded.outputs

    def unbind_listener(self, ctx: NodeContext) -> None:
        """Delete the recorded listener, or the one on the configured port."""
        if ctx.recorded is not None:
            outputs = ctx.recorded.outputs
            self.controller.binder.unbind(outputs["load_balancer_arn"], outputs["port"], outputs["arn"])
        else:
            self.controller.binder.unbind(self.stack.load_balancer_arn, self.stack.listener_port)

    # alias record

    def _alias(self, ctx: NodeContext) -> AliasRecord:
        """Build the alias record that points at the listener's endpoint."""
        listener = ctx.output(LISTENER)
        if not listener.get("public_endpoint"):
            raise CertbindCtlError("Listener has no resolvable public endpoint; refusing to publish alias.")
        return AliasRecord(
            name=ensure_absolute(self.stack.domain_name),
            target_dns_name=listener["public_endpoint"],
            target_zone_id=listener["canonical_zone_id"],
            evaluate_target_health=True,
        )

    def publish_alias(self, ctx: NodeContext) -> dict[str, Any]:
        """Point the domain at the listener's public endpoint."""
        alias = self._alias(ctx)
        handle = self.controller.publisher.publish_alias(self._zone(ctx), alias)
        return {
            "zone_id": handle.zone_id,
            "name": handle.name,
            "target_dns_name": alias.target_dns_name,
            "target_zone_id": alias.target_zone_id,
            "evaluate_target_health": alias.evaluate_target_health,
        }

    def observe_alias(self, ctx: NodeContext) -> dict[str, Any] | None:
        """Keep the recorded alias while the zone still serves it."""
        alias = self._alias(ctx)
        if self.controller.publisher.is_alias_published(self._zone(ctx), alias):
            return ctx.recorded.outputs
        return None

    def remove_alias(self, ctx: NodeContext) -> None:
        """Remove the recorded alias, or the one for the stack's domain."""
        if ctx.recorded is not None:
            self.controller.publisher.remove_alias(ctx.recorded.outputs["zone_id"], ctx.recorded.outputs["name"])
            return
        zone = self._teardown_zone(ctx)
        if zone is not None:
            self.controller.publisher.remove_alias(zone.zone_id, ensure_absolute(self.stack.domain_name))

    # superseded resources

    def _remove_replaced(self, queued: dict[str, Any]) -> None:
        """Remove queued aliases, then listeners, then target groups."""
        controller = self.controller
        for alias in queued.get("aliases", []):
            controller.publisher.remove_alias(alias["zone_id"], alias["name"])
        for listener in queued.get("listeners", []):
            controller.binder.unbind(listener["load_balancer_arn"], listener["port"], listener["arn"])
        for group in queued.get("target_groups", []):
            controller.registrar.delete_target_group(group["arn"])

    def retire_superseded(self, ctx: NodeContext) -> dict[str, Any]:
        """Delete what the current stack replaced, now that the replacements serve traffic.

        Certificates some other resource still uses stay queued for the next
        run or teardown.
        """
        queued = ctx.recorded.outputs if ctx.recorded else {}
        self._remove_replaced(queued)
        current = ctx.output(CERTIFICATE_ISSUED)["certificate"]["handle"]
        kept = []
        for entry in queued.get("certificates", []):
            if entry["handle"] == current:
                continue
            description = self.controller.certificates.describe(CertificateRequest.from_dict(entry))
            if description is not None and description.in_use_by:
                LOG.info("Certificate %s is still used by %s", entry["handle"], ", ".join(description.in_use_by))
                kept.append(entry)
                continue
            self.controller.certificates.delete(entry["handle"])
        return {"certificates": kept} if kept else {}

    def delete_superseded(self, ctx: NodeContext) -> None:
        """Delete everything still queued; runs after the listener is gone."""
        if ctx.recorded is None:
            return
        self._remove_replaced(ctx.recorded.outputs)
        for entry in ctx.recorded.outputs.get("certificates", []):
            self.controller.certificates.delete(entry["handle"])


def _handle_outputs(handle: RecordHandle, validation_domain: str) -> dict[str, Any]:
    """Return JSON-safe outputs for a published validation record."""
    return {
        "validation_domain": validation_domain,
        "zone_id": handle.zone_id,
        "name": handle.name,
        "type": handle.type,
        "value": handle.value,
        "ttl": handle.ttl,
        "change_id": handle.change_id,
    }


def _enqueue(entries: list[dict[str, Any]], entry: dict[str, Any]) -> None:
    """Append ``entry`` unless an entry with the same identity is queued."""
    identity = entry.get("handle") or entry.get("arn") or entry.get("name")
    if all((e.get("handle") or e.get("arn") or e.get("name")) != identity for e in entries):
        entries.append(entry)
