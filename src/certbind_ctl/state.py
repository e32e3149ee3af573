"""Persisted per-node results used to make re-apply idempotent."""

from __future__ import annotations

import hashlib
import json
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .models import StateError

STATE_VERSION = 1


def fingerprint(inputs: Any) -> str:
    """Return a stable digest of a node's desired inputs."""
    payload = json.dumps(inputs, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class NodeRecord:
    """What a node produced the last time it converged."""

    fingerprint: str
    outputs: dict[str, Any] = field(default_factory=dict)
    parent: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; ``parent`` is only written for fan-out children."""
        data: dict[str, Any] = {"fingerprint": self.fingerprint, "outputs": self.outputs}
        if self.parent:
            data["parent"] = self.parent
        return data


class StateStore:
    """Node records keyed by node id, flushed to a JSON file on every change.

    Without a path the store lives in memory only.
    """

    def __init__(self, path: Path | None = None):
        """Load existing records when ``path`` exists."""
        self.path = path
        self._lock = threading.Lock()
        self._nodes: dict[str, NodeRecord] = {}
        if path is not None and path.exists():
            self._nodes = self._load(path)

    @staticmethod
    def _load(path: Path) -> dict[str, NodeRecord]:
        """Read and validate a state file."""
        try:
            data = json.loads(path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise StateError(f"Failed to read state file {path}: {exc}") from exc
        version = data.get("version", STATE_VERSION)
        if version != STATE_VERSION:
            raise StateError(f"Unsupported state version {version} in {path}.")
        nodes: dict[str, NodeRecord] = {}
        for node_id, entry in data.get("nodes", {}).items():
            nodes[node_id] = NodeRecord(
                fingerprint=entry.get("fingerprint", ""),
                outputs=entry.get("outputs", {}),
                parent=entry.get("parent"),
            )
        return nodes

    def _flush(self) -> None:
        """Write the records atomically; no-op without a path."""
        if self.path is None:
            return
        payload = {
            "version": STATE_VERSION,
            "nodes": {node_id: record.to_dict() for node_id, record in sorted(self._nodes.items())},
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StateError(f"Failed to write state file {self.path}: {exc}") from exc

    def get(self, node_id: str) -> NodeRecord | None:
        """Return the record for ``node_id`` if one exists."""
        with self._lock:
            return self._nodes.get(node_id)

    def put(self, node_id: str, record: NodeRecord) -> None:
        """Store ``record`` and flush the file."""
        with self._lock:
            self._nodes[node_id] = record
            self._flush()

    def delete(self, node_id: str) -> None:
        """Forget ``node_id``; unknown ids are ignored."""
        with self._lock:
            if self._nodes.pop(node_id, None) is not None:
                self._flush()

    def items(self) -> list[tuple[str, NodeRecord]]:
        """Return a snapshot of every record."""
        with self._lock:
            return list(self._nodes.items())

    def children(self, parent_id: str) -> list[tuple[str, NodeRecord]]:
        """Return the records generated by a fan-out parent."""
        return [(node_id, record) for node_id, record in self.items() if record.parent == parent_id]
