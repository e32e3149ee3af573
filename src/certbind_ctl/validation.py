"""Turn authority challenges into deduplicated DNS validation records."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List

from .models import RecordConflictError, ValidationChallenge, ValidationRecord, ensure_absolute


def _group_key(challenge: ValidationChallenge) -> str:
    """Return the validation domain a challenge belongs to."""
    return challenge.validation_domain.strip().lower().rstrip(".")


def _shape(challenge: ValidationChallenge) -> tuple[str, str, str]:
    """Return the comparable (name, type, value) of a challenge."""
    rtype = challenge.record_type.upper()
    value = challenge.record_value.strip()
    if rtype == "CNAME":
        value = ensure_absolute(value)
    return ensure_absolute(challenge.record_name), rtype, value


def synthesize(challenges: Iterable[ValidationChallenge]) -> list[ValidationRecord]:
    """Collapse challenges into one record per validation domain.

    Output is sorted by validation domain, so any ordering of the same
    challenges yields the same list.
    """
    groups: Dict[str, List[ValidationChallenge]] = defaultdict(list)
    for challenge in challenges:
        groups[_group_key(challenge)].append(challenge)

    records: list[ValidationRecord] = []
    for domain in sorted(groups):
        shapes = {_shape(challenge) for challenge in groups[domain]}
        if len(shapes) > 1:
            raise RecordConflictError(
                f"Challenges for validation domain {domain} disagree on record name/value/type."
            )
        name, rtype, value = shapes.pop()
        records.append(ValidationRecord(validation_domain=domain, name=name, value=value, type=rtype))
    return records
