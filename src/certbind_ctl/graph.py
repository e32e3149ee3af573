"""Dependency graph execution with dynamic fan-out, idempotent re-apply and teardown."""

from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable

from .models import ApplyCancelledError, ApplyFailedError, CertbindCtlError
from .state import NodeRecord, StateStore, fingerprint

LOG = logging.getLogger("certbind_ctl")


class NodeStatus(str, enum.Enum):
    """Outcome of a node in one run."""

    SUCCEEDED = "succeeded"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    DESTROYED = "destroyed"


OK_STATUSES = {NodeStatus.SUCCEEDED, NodeStatus.UNCHANGED, NodeStatus.DESTROYED}


@dataclass
class NodeContext:
    """What a node callback can see while it runs."""

    node_id: str
    recorded: NodeRecord | None
    outputs: dict[str, dict[str, Any]]
    cancel_event: threading.Event

    def output(self, node_id: str) -> dict[str, Any]:
        """Return the outputs of another node (empty when it never ran)."""
        return self.outputs.get(node_id, {})


@dataclass
class Node:
    """One step of the provisioning graph.

    ``apply`` returns JSON-serialisable outputs. ``observe`` is consulted when
    the recorded fingerprint matches ``inputs`` and returns outputs when the
    resource is already in the desired state (None otherwise). ``fan_out``
    builds child nodes from the outputs; dependents of the node also wait for
    every child. ``writes`` names external keys (DNS record names) that must
    not be written concurrently.
    """

    id: str
    apply: Callable[[NodeContext], dict[str, Any]] | None = None
    destroy: Callable[[NodeContext], None] | None = None
    observe: Callable[[NodeContext], dict[str, Any] | None] | None = None
    depends_on: tuple[str, ...] = ()
    inputs: Any = None
    fan_out: Callable[[dict[str, Any]], list["Node"]] | None = None
    child_destroy: Callable[[NodeContext], None] | None = None
    writes: tuple[str, ...] = ()
    parent: str | None = None


class ResourceGraph:
    """Nodes plus their dependency edges, in insertion order."""

    def __init__(self) -> None:
        """Start with an empty graph."""
        self.nodes: dict[str, Node] = {}
        self._writers: dict[str, str] = {}

    def __contains__(self, node_id: str) -> bool:
        """Return True when ``node_id`` is part of the graph."""
        return node_id in self.nodes

    def add(self, node: Node) -> Node:
        """Add a node, chaining it after the previous writer of each key it writes."""
        if node.id in self.nodes:
            raise CertbindCtlError(f"Duplicate graph node '{node.id}'.")
        for key in node.writes:
            previous = self._writers.get(key)
            if previous is not None and previous not in node.depends_on:
                node.depends_on = (*node.depends_on, previous)
            self._writers[key] = node.id
        self.nodes[node.id] = node
        return node

    def dependents(self, node_id: str) -> list[str]:
        """Return ids of nodes that depend on ``node_id``."""
        return [other.id for other in self.nodes.values() if node_id in other.depends_on]

    def add_children(self, parent_id: str, children: list[Node]) -> list[str]:
        """Attach fan-out children to ``parent_id``; the parent's dependents wait for them."""
        waiting = [dep for dep in self.dependents(parent_id)]
        added: list[str] = []
        for child in children:
            child.parent = parent_id
            if parent_id not in child.depends_on:
                child.depends_on = (parent_id, *child.depends_on)
            if child.destroy is None:
                child.destroy = self.nodes[parent_id].child_destroy
            self.add(child)
            added.append(child.id)
        for dependent_id in waiting:
            dependent = self.nodes[dependent_id]
            dependent.depends_on = (*dependent.depends_on, *[c for c in added if c not in dependent.depends_on])
        return added

    def order(self) -> list[str]:
        """Return node ids in dependency order; fails on unknown edges or cycles."""
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep not in self.nodes:
                    raise CertbindCtlError(f"Node '{node.id}' depends on unknown node '{dep}'.")
        remaining = {node_id: set(node.depends_on) for node_id, node in self.nodes.items()}
        ordered: list[str] = []
        while remaining:
            ready = [node_id for node_id, deps in remaining.items() if not deps]
            if not ready:
                raise CertbindCtlError(f"Dependency cycle between {sorted(remaining)}.")
            for node_id in ready:
                ordered.append(node_id)
                del remaining[node_id]
            for deps in remaining.values():
                deps.difference_update(ready)
        return ordered


@dataclass
class NodeResult:
    """Status and outputs of one node."""

    node_id: str
    status: NodeStatus
    outputs: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None


@dataclass
class GraphResult:
    """Per-node results of an apply or destroy run."""

    mode: str
    nodes: dict[str, NodeResult] = field(default_factory=dict)
    first_failure: str | None = None

    def status(self, node_id: str) -> NodeStatus | None:
        """Return the node's status, or None when it was not part of the run."""
        result = self.nodes.get(node_id)
        return result.status if result else None

    def outputs(self, node_id: str) -> dict[str, Any]:
        """Return the outputs the node produced or observed."""
        result = self.nodes.get(node_id)
        return result.outputs if result else {}

    def changed(self) -> list[str]:
        """Return ids of nodes that performed work."""
        return [
            node_id
            for node_id, result in self.nodes.items()
            if result.status in {NodeStatus.SUCCEEDED, NodeStatus.DESTROYED}
        ]

    def failures(self) -> list[NodeResult]:
        """Return the results of nodes that failed."""
        return [result for result in self.nodes.values() if result.status is NodeStatus.FAILED]


class ResourceGraphExecutor:
    """Runs graph nodes concurrently as their dependencies succeed."""

    def __init__(
        self,
        state: StateStore,
        max_workers: int = 4,
        cancel_event: threading.Event | None = None,
    ):
        """Configure the worker pool and the shared cancellation event."""
        self.state = state
        self.max_workers = max_workers
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        """Stop scheduling new nodes and abort blocking waits."""
        self.cancel_event.set()

    def apply(self, graph: ResourceGraph) -> GraphResult:
        """Converge every node; raises ApplyFailedError naming the first failure."""
        return self._run(graph, "apply")

    def destroy(self, graph: ResourceGraph) -> GraphResult:
        """Tear down every node in reverse dependency order."""
        for node_id in list(graph.nodes):
            node = graph.nodes[node_id]
            if node.child_destroy is None:
                continue
            recorded = [Node(id=child_id) for child_id, _ in self.state.children(node_id) if child_id not in graph]
            graph.add_children(node_id, recorded)
        return self._run(graph, "destroy")

    def _deps(self, graph: ResourceGraph, mode: str, node_id: str) -> list[str]:
        """Return the nodes that must finish before ``node_id`` in ``mode``."""
        if mode == "apply":
            return list(graph.nodes[node_id].depends_on)
        return graph.dependents(node_id)

    def _context(self, mode: str, node_id: str, result: GraphResult) -> NodeContext:
        """Build the callback context for ``node_id``."""
        if mode == "apply":
            outputs = {key: value.outputs for key, value in result.nodes.items()}
        else:
            outputs = {key: record.outputs for key, record in self.state.items()}
        return NodeContext(
            node_id=node_id,
            recorded=self.state.get(node_id),
            outputs=outputs,
            cancel_event=self.cancel_event,
        )

    def _apply_node(self, node: Node, ctx: NodeContext) -> tuple[NodeStatus, dict[str, Any]]:
        """Observe the node when its inputs are unchanged, otherwise apply it."""
        recorded = ctx.recorded
        if recorded is not None and node.observe is not None and recorded.fingerprint == fingerprint(node.inputs):
            observed = node.observe(ctx)
            if observed is not None:
                return NodeStatus.UNCHANGED, observed
        if node.apply is None:
            return NodeStatus.SUCCEEDED, {}
        return NodeStatus.SUCCEEDED, node.apply(ctx) or {}

    @staticmethod
    def _destroy_node(node: Node, ctx: NodeContext) -> tuple[NodeStatus, dict[str, Any]]:
        """Run the node's destroy callback."""
        if node.destroy is not None:
            node.destroy(ctx)
        return NodeStatus.DESTROYED, {}

    def _schedule(
        self,
        graph: ResourceGraph,
        mode: str,
        pending: list[str],
        running: dict[Future, str],
        result: GraphResult,
        pool: ThreadPoolExecutor,
    ) -> bool:
        """Submit runnable nodes and skip blocked ones; return True when anything changed."""
        changed = False
        for node_id in list(pending):
            if self.cancel_event.is_set():
                result.nodes[node_id] = NodeResult(node_id, NodeStatus.SKIPPED)
                pending.remove(node_id)
                changed = True
                continue
            deps = self._deps(graph, mode, node_id)
            statuses = [result.status(dep) for dep in deps]
            if any(status is not None and status not in OK_STATUSES for status in statuses):
                LOG.info("Skipping %s %s: a dependency did not succeed", mode, node_id)
                result.nodes[node_id] = NodeResult(node_id, NodeStatus.SKIPPED)
                pending.remove(node_id)
                changed = True
            elif all(status in OK_STATUSES for status in statuses):
                node = graph.nodes[node_id]
                ctx = self._context(mode, node_id, result)
                runner = self._apply_node if mode == "apply" else self._destroy_node
                LOG.info("Starting %s %s", mode, node_id)
                running[pool.submit(runner, node, ctx)] = node_id
                pending.remove(node_id)
                changed = True
        return changed

    def _finish(
        self,
        graph: ResourceGraph,
        mode: str,
        node_id: str,
        future: Future,
        pending: list[str],
        result: GraphResult,
    ) -> None:
        """Record a completed node, persist its state and expand fan-out children."""
        node = graph.nodes[node_id]
        try:
            status, outputs = future.result()
        except ApplyCancelledError as exc:
            LOG.warning("%s %s cancelled", mode, node_id)
            result.nodes[node_id] = NodeResult(node_id, NodeStatus.CANCELLED, error=exc)
            self.cancel_event.set()
            return
        except Exception as exc:  # noqa: BLE001
            LOG.error("%s %s failed: %s", mode, node_id, exc)
            result.nodes[node_id] = NodeResult(node_id, NodeStatus.FAILED, error=exc)
            if result.first_failure is None:
                result.first_failure = node_id
            return

        if mode == "destroy":
            self.state.delete(node_id)
            result.nodes[node_id] = NodeResult(node_id, status)
            LOG.info("Destroyed %s", node_id)
            return

        self.state.put(node_id, NodeRecord(fingerprint=fingerprint(node.inputs), outputs=outputs, parent=node.parent))
        result.nodes[node_id] = NodeResult(node_id, status, outputs=outputs)
        LOG.info("%s %s", "Converged" if status is NodeStatus.SUCCEEDED else "Unchanged", node_id)
        if node.fan_out is not None:
            try:
                children = node.fan_out(outputs)
                added = graph.add_children(node_id, children)
            except Exception as exc:  # noqa: BLE001
                LOG.error("Fan-out of %s failed: %s", node_id, exc)
                result.nodes[node_id] = NodeResult(node_id, NodeStatus.FAILED, outputs=outputs, error=exc)
                if result.first_failure is None:
                    result.first_failure = node_id
                return
            LOG.info("%s generated %s child node(s)", node_id, len(added))
            pending.extend(added)

    def _run(self, graph: ResourceGraph, mode: str) -> GraphResult:
        """Schedule nodes as their dependencies finish until the graph is done."""
        order = graph.order()
        pending = order if mode == "apply" else list(reversed(order))
        running: dict[Future, str] = {}
        result = GraphResult(mode=mode)
        self.cancel_event.clear()

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="certbind") as pool:
            try:
                while pending or running:
                    while self._schedule(graph, mode, pending, running, result, pool):
                        pass
                    if not running:
                        break
                    done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                    for future in done:
                        self._finish(graph, mode, running.pop(future), future, pending, result)
            except KeyboardInterrupt:
                LOG.warning("Interrupted; waiting for %s running node(s) to stop", len(running))
                self.cancel()
                done, _ = wait(list(running))
                for future in done:
                    self._finish(graph, mode, running.pop(future), future, pending, result)

        for node_id in pending:
            result.nodes[node_id] = NodeResult(node_id, NodeStatus.SKIPPED)

        if result.first_failure is not None:
            failed = result.nodes[result.first_failure]
            raise ApplyFailedError(result.first_failure, failed.error, result)
        if self.cancel_event.is_set():
            raise ApplyCancelledError(f"{mode} cancelled; {len(result.changed())} node(s) completed.")
        return result
