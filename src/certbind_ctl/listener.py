"""Bind issued certificates to secure listeners."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable

from .config import RetryPolicy
from .models import CertbindCtlError, CertificateNotReadyError, CertificateRequest, Listener, LoadBalancer
from .providers.base import LoadBalancerProvider
from .retry import call_with_retry

LOG = logging.getLogger("certbind_ctl")


class ListenerBinder:
    """Creates or updates the listener's certificate and default forward action."""

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

    def load_balancer(self, arn: str) -> LoadBalancer:
        """Return the load balancer or fail if it does not exist."""
        lb = self._call(f"describe load balancer {arn}", lambda: self.load_balancers.describe_load_balancer(arn))
        if lb is None:
            raise CertbindCtlError(f"Load balancer {arn} does not exist.")
        return lb

    def find(self, load_balancer_arn: str, port: int) -> Listener | None:
        """Return the listener on ``port`` if present."""
        return self._call(
            f"find listener {load_balancer_arn}:{port}",
            lambda: self.load_balancers.find_listener(load_balancer_arn, port),
        )

    def bind_listener(
        self,
        load_balancer_arn: str,
        port: int,
        protocol: str,
        certificate: CertificateRequest,
        target_group_arn: str,
        ssl_policy: str | None = None,
    ) -> Listener:
        """Point the listener at ``certificate`` and ``target_group_arn``.

        Changes are applied with a single modify call so the listener always
        has a certificate and a default action.
        """
        if not certificate.is_issued():
            raise CertificateNotReadyError(
                f"Certificate {certificate.handle} is {certificate.status.value}; refusing to bind listener."
            )

        existing = self.find(load_balancer_arn, port)
        if existing is None:
            listener = self._call(
                f"create listener {load_balancer_arn}:{port}",
                lambda: self.load_balancers.create_listener(
                    load_balancer_arn, port, protocol, certificate.handle, target_group_arn, ssl_policy
                ),
            )
            LOG.info("Created %s listener on port %s with %s", protocol, port, certificate.handle)
        elif (
            existing.certificate_handle == certificate.handle
            and existing.target_group_arn == target_group_arn
            and existing.protocol == protocol
            and (ssl_policy is None or existing.ssl_policy == ssl_policy)
        ):
            LOG.debug("Listener %s already bound", existing.arn)
            listener = existing
        else:
            listener = self._call(
                f"modify listener {existing.arn}",
                lambda: self.load_balancers.modify_listener(
                    existing.arn, protocol, certificate.handle, target_group_arn, ssl_policy
                ),
            )
            LOG.info(
                "Rebound listener %s: certificate %s -> %s, target group %s -> %s, policy %s -> %s",
                existing.arn,
                existing.certificate_handle,
                certificate.handle,
                existing.target_group_arn,
                target_group_arn,
                existing.ssl_policy,
                ssl_policy or existing.ssl_policy,
            )

        if not listener.public_endpoint:
            listener = replace(listener, public_endpoint=self.load_balancer(load_balancer_arn).dns_name)
        return listener

    def unbind(self, load_balancer_arn: str, port: int, listener_arn: str | None = None) -> bool:
        """Delete the listener by ARN, or the one on ``port``; absence is not an error."""
        if listener_arn is None:
            existing = self.find(load_balancer_arn, port)
            if existing is None:
                return False
            listener_arn = existing.arn
        deleted = self._call(
            f"delete listener {listener_arn}",
            lambda: self.load_balancers.delete_listener(listener_arn),
        )
        if deleted:
            LOG.info("Deleted listener %s", listener_arn)
        return deleted
