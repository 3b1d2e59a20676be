"""Build task graph and scheduler.

Each target pair becomes a node listing the files it is built from and
the nodes it depends on. A tool image is built FROM its kernel image, so
a tool node depends on the kernel node of the same kernel, architecture
and variant when that kernel is part of the run.

The scheduler runs ready nodes on a worker pool. When a node fails, every
node downstream of it is resolved without running.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generic, TypeVar

from kernel_imagegen.errors import InputError
from kernel_imagegen.targets.schema import BuildTarget

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass
class TaskNode:
    """One target pair in the build graph.

    Attributes:
        target: Target built by this node.
        inputs: Files the build reads (Dockerfile, configs, patches).
        depends_on: Keys of nodes that must complete first.
    """

    target: BuildTarget
    inputs: list[Path] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        """Unique node key."""
        return self.target.label


def collect_inputs(target: BuildTarget, source_dir: Path) -> list[Path]:
    """List the files a target's build depends on.

    Args:
        target: Build target.
        source_dir: Directory holding Dockerfiles, configs and patches.

    Returns:
        Sorted list of input paths; the Dockerfile is always first even
        when it does not exist, so callers can report it missing.
    """
    dockerfile = "Dockerfile" if target.tool is None else f"Dockerfile.{target.tool}"
    inputs = [source_dir / dockerfile]
    if target.tool is None:
        series = target.series
        extra: list[Path] = sorted(source_dir.glob(f"config-{series}*"))
        patches_dir = source_dir / f"patches-{series}"
        if patches_dir.is_dir():
            extra += sorted(p for p in patches_dir.iterdir() if p.is_file())
        inputs += extra
    return inputs


class TaskGraph:
    """Directed acyclic graph of build nodes."""

    def __init__(self, nodes: Iterable[TaskNode] = ()) -> None:
        self.nodes: dict[str, TaskNode] = {}
        for node in nodes:
            self.add(node)

    def add(self, node: TaskNode) -> None:
        """Add a node; keys must be unique."""
        if node.key in self.nodes:
            raise InputError(f"Duplicate build target: {node.key}")
        self.nodes[node.key] = node

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, key: object) -> bool:
        return key in self.nodes

    def dependents(self, key: str) -> list[str]:
        """Keys of nodes that directly depend on ``key``."""
        return [k for k, n in self.nodes.items() if key in n.depends_on]

    def descendants(self, key: str) -> list[str]:
        """Keys of all nodes transitively depending on ``key``."""
        seen: list[str] = []
        queue = deque(self.dependents(key))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.append(current)
            queue.extend(self.dependents(current))
        return seen

    def topological_order(self) -> list[str]:
        """Node keys ordered so that dependencies come first.

        Raises:
            InputError: If a dependency is unknown or the graph has a cycle.
        """
        in_degree: dict[str, int] = {}
        for key, node in self.nodes.items():
            for dep in node.depends_on:
                if dep not in self.nodes:
                    raise InputError(f"{key} depends on unknown target {dep}")
            in_degree[key] = len(node.depends_on)

        queue = deque(k for k, d in in_degree.items() if d == 0)
        order: list[str] = []
        while queue:
            key = queue.popleft()
            order.append(key)
            for child in self.dependents(key):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(order) != len(self.nodes):
            raise InputError("Build target dependencies contain a cycle")
        return order

    def missing_inputs(self, key: str) -> list[Path]:
        """Required inputs of a node that do not exist (its Dockerfile)."""
        node = self.nodes[key]
        if not node.inputs:
            return []
        dockerfile = node.inputs[0]
        return [] if dockerfile.exists() else [dockerfile]


def build_task_graph(targets: Iterable[BuildTarget], source_dir: Path) -> TaskGraph:
    """Build the task graph for a set of targets.

    Args:
        targets: Targets to build.
        source_dir: Directory holding Dockerfiles, configs and patches.

    Returns:
        TaskGraph with tool nodes depending on their kernel nodes.
    """
    targets = list(dict.fromkeys(targets))
    labels = {t.label for t in targets}
    graph = TaskGraph()
    for target in targets:
        depends_on: list[str] = []
        if target.tool is not None:
            kernel_label = target.kernel_target().label
            if kernel_label in labels:
                depends_on.append(kernel_label)
        graph.add(
            TaskNode(
                target=target,
                inputs=collect_inputs(target, source_dir),
                depends_on=depends_on,
            )
        )
    return graph


class GraphScheduler(Generic[R]):
    """Run graph nodes on a worker pool in dependency order.

    Args:
        run_node: Processes one node; must not raise.
        is_failure: Tells whether a node result is a failure.
        skip_node: Produces the result of a node whose upstream failed.
        max_workers: Worker pool size.
    """

    def __init__(
        self,
        run_node: Callable[[TaskNode], R],
        is_failure: Callable[[R], bool],
        skip_node: Callable[[TaskNode, str], R],
        max_workers: int = 1,
    ) -> None:
        self.run_node = run_node
        self.is_failure = is_failure
        self.skip_node = skip_node
        self.max_workers = max_workers

    def run(self, graph: TaskGraph) -> dict[str, R]:
        """Run every node of the graph.

        Returns:
            Mapping of node key to result, in topological order.
        """
        order = graph.topological_order()
        waiting = {key: set(graph.nodes[key].depends_on) for key in order}
        results: dict[str, R] = {}
        submitted: set[str] = set()

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures: dict[Future[R], str] = {}

            def submit_ready() -> None:
                for key in order:
                    if key in submitted or waiting[key]:
                        continue
                    submitted.add(key)
                    futures[executor.submit(self.run_node, graph.nodes[key])] = key

            submit_ready()
            while futures:
                done, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in done:
                    key = futures.pop(future)
                    result = future.result()
                    results[key] = result
                    if self.is_failure(result):
                        for downstream in graph.descendants(key):
                            if downstream not in submitted:
                                submitted.add(downstream)
                                logger.warning(
                                    "Not building %s: %s failed", downstream, key
                                )
                                results[downstream] = self.skip_node(
                                    graph.nodes[downstream], key
                                )
                    for child in graph.dependents(key):
                        waiting[child].discard(key)
                submit_ready()

        return {key: results[key] for key in order}


__all__ = [
    "GraphScheduler",
    "TaskGraph",
    "TaskNode",
    "build_task_graph",
    "collect_inputs",
]
