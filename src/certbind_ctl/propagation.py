"""DNS propagation checks built on dnspython."""

from __future__ import annotations

from typing import Iterable, List

from .models import CertbindCtlError, RecordHandle, ensure_absolute


def pending_records(
    handles: Iterable[RecordHandle],
    nameservers: list[str] | None = None,
    timeout: float = 5.0,
) -> List[RecordHandle]:
    """Return the handles whose value is not yet visible to the resolver."""
    try:
        import dns.exception
        import dns.resolver
    except ImportError as exc:  # noqa: BLE001
        raise CertbindCtlError("dnspython is required for propagation checks.") from exc

    resolver = dns.resolver.Resolver()
    if nameservers:
        resolver.nameservers = nameservers
    resolver.lifetime = timeout

    pending: List[RecordHandle] = []
    for handle in handles:
        try:
            answer = resolver.resolve(handle.name, handle.type)
        except dns.exception.DNSException:
            pending.append(handle)
            continue
        seen = {rdata.to_text().strip('"') for rdata in answer}
        expected = handle.value.strip('"')
        if handle.type.upper() == "CNAME":
            seen = {ensure_absolute(value) for value in seen}
            expected = ensure_absolute(expected)
        if expected not in seen:
            pending.append(handle)
    return pending
