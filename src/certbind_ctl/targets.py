"""Target groups and backend registrations."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable, Iterable

from .config import RetryPolicy
from .models import HealthCheckPolicy, TargetGroup
from .providers.base import LoadBalancerProvider
from .retry import call_with_retry

LOG = logging.getLogger("certbind_ctl")


class TargetRegistrar:
    """Attaches instances to a target group; attach and detach are idempotent."""

    def __init__(
        self,
        load_balancers: LoadBalancerProvider,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Wrap ``load_balancers`` with the retry policy."""
        self.load_balancers = load_balancers
        self.retry = retry or RetryPolicy()
        self.sleep = sleep

    def _call(self, description: str, func: Callable[[], object]):
        """Run ``func`` under the retry policy."""
        return call_with_retry(func, self.retry, description, sleep=self.sleep)

    def find_target_group(self, name: str) -> TargetGroup | None:
        """Return the target group called ``name``, if any."""
        return self._call(f"find target group {name}", lambda: self.load_balancers.find_target_group(name))

    def ensure_target_group(
        self,
        name: str,
        port: int,
        protocol: str,
        vpc_id: str,
        health_check: HealthCheckPolicy,
    ) -> TargetGroup:
        """Create the target group or bring its health check in line."""
        group = self.find_target_group(name)
        if group is None:
            group = self._call(
                f"create target group {name}",
                lambda: self.load_balancers.create_target_group(name, port, protocol, vpc_id, health_check),
            )
            LOG.info("Created target group %s (%s)", name, group.arn)
            return group
        if group.health_check != health_check:
            self._set_health_check(group, health_check)
            group = replace(group, health_check=health_check)
        return group

    def _set_health_check(self, group: TargetGroup, health_check: HealthCheckPolicy) -> None:
        """Apply ``health_check`` to the group."""
        self._call(
            f"modify health check of {group.name}",
            lambda: self.load_balancers.modify_health_check(group.arn, health_check),
        )
        LOG.info("Updated health check of %s: %s", group.name, health_check)

    def attached(self, target_group_arn: str) -> set[str]:
        """Return the instance ids registered with the group."""
        return self._call(
            f"describe targets of {target_group_arn}",
            lambda: self.load_balancers.attached_targets(target_group_arn),
        )

    def register_targets(
        self,
        target_group: TargetGroup,
        instance_ids: Iterable[str],
        health_check: HealthCheckPolicy | None = None,
    ) -> list[str]:
        """Attach ``instance_ids``; returns the ids that were not yet attached."""
        if health_check is not None and target_group.health_check != health_check:
            self._set_health_check(target_group, health_check)

        current = self.attached(target_group.arn)
        missing = sorted(set(instance_ids) - current)
        if not missing:
            LOG.debug("All targets already attached to %s", target_group.name)
            return []
        self._call(
            f"register targets with {target_group.name}",
            lambda: self.load_balancers.register_targets(target_group.arn, missing),
        )
        LOG.info("Registered %s with %s", ", ".join(missing), target_group.name)
        return missing

    def deregister_targets(self, target_group_arn: str, instance_ids: Iterable[str]) -> list[str]:
        """Detach ``instance_ids``; ids not attached are ignored."""
        current = self.attached(target_group_arn)
        present = sorted(set(instance_ids) & current)
        if not present:
            return []
        self._call(
            f"deregister targets from {target_group_arn}",
            lambda: self.load_balancers.deregister_targets(target_group_arn, present),
        )
        LOG.info("Deregistered %s from %s", ", ".join(present), target_group_arn)
        return present

    def delete_target_group(self, target_group_arn: str) -> bool:
        """Delete the target group; absence is not an error."""
        deleted = self._call(
            f"delete target group {target_group_arn}",
            lambda: self.load_balancers.delete_target_group(target_group_arn),
        )
        if deleted:
            LOG.info("Deleted target group %s", target_group_arn)
        return deleted
