"""Certificate requests and the bounded wait for issuance."""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Sequence

from .config import RetryPolicy
from .models import (
    ApplyCancelledError,
    CertbindCtlError,
    CertificateGeneration,
    CertificateRequest,
    CertificateStatus,
    CertificateValidationFailedError,
    RecordHandle,
    StackDefinitionError,
    ValidationChallenge,
    ValidationTimeoutError,
    name_key,
)
from .propagation import pending_records
from .providers.base import CertificateAuthority, CertificateDescription
from .retry import call_with_retry

LOG = logging.getLogger("certbind_ctl")

DEFAULT_VALIDATION_TIMEOUT = 300.0


def idempotency_token(names: Sequence[str], replacing: str | None = None) -> str:
    """Return a stable token (32 alphanumerics) for a canonical name set.

    ``replacing`` is the handle of the certificate a new request supersedes;
    it is folded into the token.
    """
    parts = list(names) if replacing is None else [*names, replacing]
    return hashlib.sha256(",".join(parts).encode("utf-8")).hexdigest()[:32]


class CertificateRequestManager:
    """Registers DNS-validated certificate requests with the authority."""

    def __init__(
        self,
        authority: CertificateAuthority,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = 10.0,
        challenge_timeout: float = DEFAULT_VALIDATION_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Configure retry and challenge polling for ``authority``."""
        self.authority = authority
        self.retry = retry or RetryPolicy()
        self.sleep = sleep
        self.poll_interval = poll_interval
        self.challenge_timeout = challenge_timeout
        self.clock = clock

    def _call(self, description: str, func: Callable[[], object]):
        """Run ``func`` under the retry policy."""
        return call_with_retry(func, self.retry, description, sleep=self.sleep)

    def request_certificate(
        self,
        primary_name: str,
        alternate_names: Sequence[str] = (),
        generation: CertificateGeneration = CertificateGeneration.CURRENT,
        replacing: str | None = None,
    ) -> CertificateRequest:
        """Return the live request for these names or register a new one.

        Pass the handle of a failed or vanished certificate as ``replacing``
        to get a fresh request instead of that one back.
        """
        if not primary_name or not primary_name.strip():
            raise StackDefinitionError("Certificate primary name must not be empty.")
        names = name_key(primary_name, list(alternate_names))
        primary, sans = names[0], tuple(names[1:])

        existing = self._call(f"find certificate for {primary}", lambda: self.authority.find_certificate(names))
        if existing is not None:
            LOG.info("Reusing certificate %s for %s", existing.handle, ", ".join(names))
            status = existing.status if existing.status is CertificateStatus.ISSUED else CertificateStatus.REQUESTED
            return CertificateRequest(
                primary_name=primary,
                alternate_names=sans,
                status=status,
                handle=existing.handle,
                generation=generation,
            )

        token = idempotency_token(names, replacing)
        handle = self._call(
            f"request certificate for {primary}",
            lambda: self.authority.request_certificate(primary, sans, token),
        )
        LOG.info("Requested certificate %s for %s", handle, ", ".join(names))
        return CertificateRequest(
            primary_name=primary,
            alternate_names=sans,
            status=CertificateStatus.REQUESTED,
            handle=handle,
            generation=generation,
        )

    def find(self, primary_name: str, alternate_names: Sequence[str] = ()) -> CertificateDescription | None:
        """Return a live certificate for exactly these names, if any."""
        names = name_key(primary_name, list(alternate_names))
        return self._call(f"find certificate for {names[0]}", lambda: self.authority.find_certificate(names))

    def describe(self, request: CertificateRequest) -> CertificateDescription | None:
        """Return what the authority currently reports about ``request``."""
        return self._call(
            f"describe certificate {request.handle}",
            lambda: self.authority.describe_certificate(request.handle),
        )

    def challenges(self, request: CertificateRequest) -> tuple[ValidationChallenge, ...]:
        """Return the DNS challenges once the authority has produced one per name.

        The authority fills in validation options asynchronously after the
        request, so this polls every ``poll_interval`` seconds for up to
        ``challenge_timeout`` seconds and then raises ValidationTimeoutError.
        """
        expected = len(request.names())
        deadline = self.clock() + self.challenge_timeout
        while True:
            description = self.describe(request)
            if description is None:
                raise CertbindCtlError(f"Certificate {request.handle} no longer exists.")
            if len(description.challenges) >= expected:
                LOG.info("Certificate %s has %s validation challenge(s)", request.handle, len(description.challenges))
                return description.challenges

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ValidationTimeoutError(
                    f"Certificate {request.handle} has only {len(description.challenges)}/{expected} "
                    f"validation challenges after {self.challenge_timeout}s.",
                    request,
                )
            LOG.debug(
                "Certificate %s has %s/%s validation challenges; polling again",
                request.handle,
                len(description.challenges),
                expected,
            )
            self.sleep(min(self.poll_interval, remaining))

    def delete(self, handle: str) -> bool:
        """Delete a certificate; absence is not an error."""
        deleted = self._call(f"delete certificate {handle}", lambda: self.authority.delete_certificate(handle))
        if deleted:
            LOG.info("Deleted certificate %s", handle)
        return deleted


class ValidationWaiter:
    """Polls the authority until a certificate is issued or the timeout expires."""

    def __init__(
        self,
        authority: CertificateAuthority,
        poll_interval: float = 10.0,
        retry: RetryPolicy | None = None,
        cancel_event: threading.Event | None = None,
        check_propagation: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Configure polling, retry and cancellation."""
        self.authority = authority
        self.poll_interval = poll_interval
        self.retry = retry or RetryPolicy()
        self.cancel_event = cancel_event or threading.Event()
        self.check_propagation = check_propagation
        self.clock = clock

    def _wait(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless the wait is cancelled."""
        if self.cancel_event.wait(seconds):
            raise ApplyCancelledError("Validation wait cancelled by operator.")

    def await_issuance(
        self,
        request: CertificateRequest,
        record_handles: Sequence[RecordHandle] = (),
        timeout: float = DEFAULT_VALIDATION_TIMEOUT,
    ) -> CertificateRequest:
        """Return the request with status Issued.

        Raises ValidationTimeoutError (carrying the Failed request) when the
        deadline passes, and CertificateValidationFailedError when the
        authority rejects validation. Neither removes published records.
        """
        if timeout <= 0:
            failed = replace(request, status=CertificateStatus.FAILED)
            raise ValidationTimeoutError(f"Certificate {request.handle} not issued (timeout {timeout}s).", failed)
        if request.is_issued():
            return request

        pending = replace(request, status=CertificateStatus.PENDING_VALIDATION)
        deadline = self.clock() + timeout
        LOG.info("Waiting up to %ss for certificate %s to be issued", timeout, request.handle)
        while True:
            if self.cancel_event.is_set():
                raise ApplyCancelledError("Validation wait cancelled by operator.")
            if self.check_propagation and record_handles:
                missing = pending_records(record_handles)
                if missing:
                    LOG.info("Validation records not yet visible: %s", ", ".join(h.name for h in missing))

            description = call_with_retry(
                lambda: self.authority.describe_certificate(request.handle),
                self.retry,
                f"poll certificate {request.handle}",
                sleep=self._wait,
            )
            if description is None:
                raise CertbindCtlError(f"Certificate {request.handle} disappeared while waiting for issuance.")
            if description.status is CertificateStatus.ISSUED:
                LOG.info("Certificate %s issued", request.handle)
                return replace(pending, status=CertificateStatus.ISSUED)
            if description.status is CertificateStatus.FAILED:
                raise CertificateValidationFailedError(
                    f"Authority rejected validation of certificate {request.handle}.",
                    replace(pending, status=CertificateStatus.FAILED),
                )

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ValidationTimeoutError(
                    f"Certificate {request.handle} not issued within {timeout}s.",
                    replace(pending, status=CertificateStatus.FAILED),
                )
            LOG.debug("Certificate %s still pending; %.1fs left", request.handle, remaining)
            self._wait(min(self.poll_interval, remaining))
