"""Tests for builds/graph.py module."""

import threading
from pathlib import Path

import pytest

from kernel_imagegen.builds.graph import (
    GraphScheduler,
    TaskGraph,
    TaskNode,
    build_task_graph,
    collect_inputs,
)
from kernel_imagegen.errors import InputError
from kernel_imagegen.targets.schema import BuildTarget


def target(version: str = "6.6.13", tool: str | None = None, **fields) -> BuildTarget:
    return BuildTarget(kernel_version=version, architecture="x86_64", tool=tool, **fields)


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """A kernel source directory with configs and patches for 6.6.x."""
    (tmp_path / "Dockerfile").write_text("FROM scratch\n")
    (tmp_path / "Dockerfile.perf").write_text("FROM scratch\n")
    (tmp_path / "config-6.6.x-x86_64").write_text("")
    (tmp_path / "config-6.6.x-aarch64").write_text("")
    (tmp_path / "config-5.15.x-x86_64").write_text("")
    patches = tmp_path / "patches-6.6.x"
    patches.mkdir()
    (patches / "0001-fix.patch").write_text("")
    return tmp_path


class TestCollectInputs:
    """Tests for collect_inputs function."""

    def test_kernel_inputs(self, source_dir: Path) -> None:
        inputs = collect_inputs(target(), source_dir)
        assert inputs[0] == source_dir / "Dockerfile"
        assert source_dir / "config-6.6.x-aarch64" in inputs
        assert source_dir / "config-6.6.x-x86_64" in inputs
        assert source_dir / "patches-6.6.x" / "0001-fix.patch" in inputs
        assert source_dir / "config-5.15.x-x86_64" not in inputs

    def test_tool_inputs(self, source_dir: Path) -> None:
        assert collect_inputs(target(tool="perf"), source_dir) == [
            source_dir / "Dockerfile.perf"
        ]


class TestBuildTaskGraph:
    """Tests for build_task_graph function."""

    def test_tool_depends_on_kernel(self, source_dir: Path) -> None:
        graph = build_task_graph([target(), target(tool="perf")], source_dir)
        assert graph.nodes["6.6.13/perf/x86_64"].depends_on == ["6.6.13/x86_64"]
        assert graph.nodes["6.6.13/x86_64"].depends_on == []

    def test_tool_without_kernel_in_run(self, source_dir: Path) -> None:
        """A tool whose kernel is not part of the run has no dependency."""
        graph = build_task_graph([target(tool="perf")], source_dir)
        assert graph.nodes["6.6.13/perf/x86_64"].depends_on == []

    def test_variants_are_distinct(self, source_dir: Path) -> None:
        graph = build_task_graph(
            [target(), target(debug=True), target(tool="perf", debug=True)], source_dir
        )
        assert graph.nodes["6.6.13-dbg/perf/x86_64"].depends_on == ["6.6.13-dbg/x86_64"]

    def test_duplicates_collapsed(self, source_dir: Path) -> None:
        graph = build_task_graph([target(), target()], source_dir)
        assert len(graph) == 1

    def test_missing_dockerfile(self, source_dir: Path) -> None:
        graph = build_task_graph([target(tool="bcc")], source_dir)
        assert graph.missing_inputs("6.6.13/bcc/x86_64") == [source_dir / "Dockerfile.bcc"]

    def test_present_dockerfile(self, source_dir: Path) -> None:
        graph = build_task_graph([target()], source_dir)
        assert graph.missing_inputs("6.6.13/x86_64") == []


class TestTaskGraph:
    """Tests for TaskGraph."""

    def test_duplicate_key_rejected(self) -> None:
        graph = TaskGraph([TaskNode(target())])
        with pytest.raises(InputError, match="Duplicate"):
            graph.add(TaskNode(target()))

    def test_topological_order(self) -> None:
        graph = TaskGraph(
            [
                TaskNode(target(tool="perf"), depends_on=["6.6.13/x86_64"]),
                TaskNode(target()),
            ]
        )
        assert graph.topological_order() == ["6.6.13/x86_64", "6.6.13/perf/x86_64"]

    def test_unknown_dependency(self) -> None:
        graph = TaskGraph([TaskNode(target(), depends_on=["nope"])])
        with pytest.raises(InputError, match="unknown target"):
            graph.topological_order()

    def test_cycle(self) -> None:
        graph = TaskGraph(
            [
                TaskNode(target(), depends_on=["6.6.13/perf/x86_64"]),
                TaskNode(target(tool="perf"), depends_on=["6.6.13/x86_64"]),
            ]
        )
        with pytest.raises(InputError, match="cycle"):
            graph.topological_order()

    def test_descendants(self) -> None:
        graph = TaskGraph(
            [
                TaskNode(target()),
                TaskNode(target(tool="perf"), depends_on=["6.6.13/x86_64"]),
                TaskNode(target(tool="bcc"), depends_on=["6.6.13/x86_64"]),
                TaskNode(target("5.15.27")),
            ]
        )
        assert sorted(graph.descendants("6.6.13/x86_64")) == [
            "6.6.13/bcc/x86_64",
            "6.6.13/perf/x86_64",
        ]
        assert graph.descendants("5.15.27/x86_64") == []


class TestGraphScheduler:
    """Tests for GraphScheduler."""

    def make_graph(self) -> TaskGraph:
        return TaskGraph(
            [
                TaskNode(target()),
                TaskNode(target(tool="perf"), depends_on=["6.6.13/x86_64"]),
                TaskNode(target("5.15.27")),
                TaskNode(target("5.15.27", tool="perf"), depends_on=["5.15.27/x86_64"]),
            ]
        )

    def test_dependencies_complete_first(self) -> None:
        finished: list[str] = []
        lock = threading.Lock()

        def run_node(node: TaskNode) -> str:
            for dep in node.depends_on:
                assert dep in finished
            with lock:
                finished.append(node.key)
            return "ok"

        scheduler = GraphScheduler(
            run_node=run_node,
            is_failure=lambda r: r == "failed",
            skip_node=lambda node, upstream: "skipped",
            max_workers=4,
        )
        results = scheduler.run(self.make_graph())
        assert set(results.values()) == {"ok"}
        assert len(finished) == 4

    def test_failure_propagates_downstream(self) -> None:
        ran: list[str] = []

        def run_node(node: TaskNode) -> str:
            ran.append(node.key)
            return "failed" if node.key == "6.6.13/x86_64" else "ok"

        scheduler = GraphScheduler(
            run_node=run_node,
            is_failure=lambda r: r == "failed",
            skip_node=lambda node, upstream: f"upstream {upstream}",
            max_workers=1,
        )
        results = scheduler.run(self.make_graph())

        assert "6.6.13/perf/x86_64" not in ran
        assert results["6.6.13/perf/x86_64"] == "upstream 6.6.13/x86_64"
        assert results["5.15.27/perf/x86_64"] == "ok"

    def test_results_in_topological_order(self) -> None:
        scheduler = GraphScheduler(
            run_node=lambda node: node.key,
            is_failure=lambda r: False,
            skip_node=lambda node, upstream: None,
            max_workers=2,
        )
        graph = self.make_graph()
        assert list(scheduler.run(graph)) == graph.topological_order()

    def test_runs_concurrently(self) -> None:
        """Independent nodes run at the same time."""
        barrier = threading.Barrier(2, timeout=5)

        def run_node(node: TaskNode) -> str:
            barrier.wait()
            return "ok"

        graph = TaskGraph([TaskNode(target()), TaskNode(target("5.15.27"))])
        scheduler = GraphScheduler(
            run_node=run_node,
            is_failure=lambda r: False,
            skip_node=lambda node, upstream: "skipped",
            max_workers=2,
        )
        assert scheduler.run(graph) == {"6.6.13/x86_64": "ok", "5.15.27/x86_64": "ok"}
