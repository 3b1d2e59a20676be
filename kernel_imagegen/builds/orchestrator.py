"""Build and push orchestration.

This module provides the high-level pipeline:
- run(): resolve the content hash, plan the task graph and process every
  target pair on a worker pool
- Per pair: PENDING -> BUILT (build unless the rebuild gate says the image
  already exists) -> TAGGED (push hash-qualified and floating tags)
- Once every pair has pushed: update the shared multi-arch manifest lists
  (TAGGED -> PUSHED)
- Per-pair failures are isolated and collected into a RunSummary

A dirty working tree aborts a push run before any pair starts. Nothing is
rolled back: every tag is content-addressed and re-running the pipeline
resumes where it stopped, since already-pushed images are skipped.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from kernel_imagegen.builds.content_hash import (
    GitVcs,
    VcsBackend,
    compute_content_hash,
    require_clean,
    require_pushable,
)
from kernel_imagegen.builds.gate import should_build
from kernel_imagegen.builds.graph import GraphScheduler, TaskGraph, TaskNode, build_task_graph
from kernel_imagegen.builds.runner import BuildRequest, BuildResult
from kernel_imagegen.builds.tags import (
    ContentHash,
    ImageIdentifier,
    builder_image_identifier,
    resolve_tags,
)
from kernel_imagegen.errors import (
    INPUT_ERROR,
    UPSTREAM_FAILED,
    DirtyTreeError,
    KernelImagegenError,
    VcsError,
)
from kernel_imagegen.types import Architecture, PairOutcome, PairState, RunMode

if TYPE_CHECKING:
    from kernel_imagegen.config import Settings
    from kernel_imagegen.registry import RegistryBackend
    from kernel_imagegen.targets.schema import BuildTarget

logger = logging.getLogger(__name__)


class BuildBackend(Protocol):
    """Produces a locally loadable image for a build request."""

    def build(self, request: BuildRequest) -> BuildResult: ...


@dataclass
class PairReport:
    """Progress and outcome of one target pair.

    Attributes:
        target: Target of the pair.
        hash_qualified: Hash-qualified identifier.
        floating: Floating identifier.
        state: Current lifecycle state.
        built: Whether the build backend was invoked.
        pushed: Whether images were pushed.
        outcome: Final outcome, set when processing ends.
        code: Error code of a failure.
        reason: Failure reason or skip explanation.
        log_path: Build log, if a build ran.
        manifests: Manifest lists awaiting update, by reference.
    """

    target: BuildTarget
    hash_qualified: ImageIdentifier
    floating: ImageIdentifier
    state: PairState = PairState.PENDING
    built: bool = False
    pushed: bool = False
    outcome: PairOutcome | None = None
    code: str | None = None
    reason: str | None = None
    log_path: str | None = None
    manifests: dict[str, list[ImageIdentifier]] = field(default_factory=dict)

    def advance(self, state: PairState) -> None:
        """Move to the next lifecycle state."""
        logger.debug("%s: %s -> %s", self.target.label, self.state.value, state.value)
        self.state = state

    def mark_failed(self, code: str, reason: str) -> None:
        """Mark this pair as failed."""
        self.state = PairState.FAILED
        self.outcome = PairOutcome.FAILED
        self.code = code
        self.reason = reason

    def finish(self) -> None:
        """Set the outcome of a pair that completed without failure."""
        if self.built or self.pushed:
            self.outcome = PairOutcome.SUCCEEDED
        else:
            self.outcome = PairOutcome.SKIPPED
            self.reason = "already up to date"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "target": self.target.label,
            "kernel_version": self.target.kernel_version,
            "architecture": self.target.architecture.value,
            "tool": self.target.tool,
            "debug": self.target.debug,
            "extra": self.target.extra,
            "image": self.hash_qualified.reference,
            "floating": self.floating.reference,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "built": self.built,
            "pushed": self.pushed,
            "code": self.code,
            "reason": self.reason,
            "log_path": self.log_path,
        }


@dataclass
class RunSummary:
    """Aggregate result of an orchestrator run."""

    mode: RunMode
    content_hash: ContentHash
    reports: list[PairReport] = field(default_factory=list)

    def _with(self, outcome: PairOutcome) -> list[PairReport]:
        return [r for r in self.reports if r.outcome == outcome]

    @property
    def succeeded(self) -> list[PairReport]:
        return self._with(PairOutcome.SUCCEEDED)

    @property
    def skipped(self) -> list[PairReport]:
        return self._with(PairOutcome.SKIPPED)

    @property
    def failed(self) -> list[PairReport]:
        return self._with(PairOutcome.FAILED)

    @property
    def ok(self) -> bool:
        """True if no pair failed."""
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "mode": self.mode.value,
            "content_hash": str(self.content_hash),
            "succeeded": len(self.succeeded),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "pairs": [r.to_dict() for r in self.reports],
        }


class Orchestrator:
    """Drives builds and pushes for a set of targets.

    Args:
        settings: Application settings.
        build_backend: Container build backend.
        registry: Registry backend.
        vcs: Version control backend used for content hashing.
    """

    def __init__(
        self,
        settings: Settings,
        build_backend: BuildBackend,
        registry: RegistryBackend,
        vcs: VcsBackend | None = None,
    ) -> None:
        self.settings = settings
        self.build_backend = build_backend
        self.registry = registry
        self.vcs = vcs or GitVcs()

    def content_hash(self) -> ContentHash:
        """Resolve the content hash of the build directory.

        Raises:
            VcsError: If git fails.
            InputError: If a configured hash override is malformed.
        """
        if self.settings.hash_override:
            return ContentHash.parse(self.settings.hash_override)
        return compute_content_hash(
            self.settings.source_dir, self.settings.hash_commit, self.vcs
        )

    def revision(self, content_hash: ContentHash) -> str | None:
        """Commit recorded in image labels; None for dirty trees."""
        if content_hash.dirty:
            return None
        try:
            return self.vcs.head_commit(self.settings.source_dir)
        except VcsError as e:
            logger.warning("Cannot determine source revision: %s", e)
            return None

    def plan(self, targets: Iterable[BuildTarget]) -> TaskGraph:
        """Build the task graph for a set of targets."""
        return build_task_graph(targets, self.settings.source_dir)

    def run(
        self,
        targets: Sequence[BuildTarget],
        mode: RunMode = RunMode.BUILD,
        force: bool = False,
        content_hash: ContentHash | None = None,
    ) -> RunSummary:
        """Build (and optionally push) every target.

        Args:
            targets: Targets to process.
            mode: Stop after building, or also push.
            force: Rebuild and re-push even if images exist.
            content_hash: Precomputed content hash.

        Returns:
            RunSummary listing the outcome of every pair.

        Raises:
            DirtyTreeError: If pushing with uncommitted changes.
            VcsError: If the content hash cannot be computed.
            InputError: If the targets cannot be planned.
        """
        if content_hash is None:
            content_hash = self.content_hash()
        if mode is RunMode.PUSH:
            if self.settings.hash_override:
                require_clean(content_hash)
            else:
                require_pushable(
                    self.settings.source_dir,
                    content_hash,
                    self.settings.hash_commit,
                    self.vcs,
                )

        graph = self.plan(targets)
        revision = self.revision(content_hash)
        logger.info(
            "Processing %d target(s) with content hash %s (%s mode)",
            len(graph),
            content_hash,
            mode.value,
        )

        scheduler: GraphScheduler[PairReport] = GraphScheduler(
            run_node=lambda node: self.process_pair(
                node, mode, force, content_hash, revision, graph
            ),
            is_failure=lambda report: report.outcome is PairOutcome.FAILED,
            skip_node=lambda node, upstream: self._upstream_failed(
                node, upstream, content_hash
            ),
            max_workers=self.settings.max_concurrent_builds,
        )
        results = scheduler.run(graph)
        if mode is RunMode.PUSH:
            self._publish_manifests(list(results.values()))

        summary = RunSummary(
            mode=mode, content_hash=content_hash, reports=list(results.values())
        )
        logger.info(
            "Done: %d succeeded, %d skipped, %d failed",
            len(summary.succeeded),
            len(summary.skipped),
            len(summary.failed),
        )
        return summary

    def _new_report(self, target: BuildTarget, content_hash: ContentHash) -> PairReport:
        tags = resolve_tags(target, content_hash, self.settings)
        return PairReport(
            target=target,
            hash_qualified=tags.hash_qualified,
            floating=tags.floating,
        )

    def _upstream_failed(
        self, node: TaskNode, upstream: str, content_hash: ContentHash
    ) -> PairReport:
        report = self._new_report(node.target, content_hash)
        report.mark_failed(UPSTREAM_FAILED, f"upstream {upstream} failed")
        return report

    def process_pair(
        self,
        node: TaskNode,
        mode: RunMode,
        force: bool,
        content_hash: ContentHash,
        revision: str | None,
        graph: TaskGraph,
    ) -> PairReport:
        """Run the strictly ordered stages of one pair.

        Never raises: failures are recorded on the returned report.
        """
        report = self._new_report(node.target, content_hash)
        try:
            missing = graph.missing_inputs(node.key)
            if missing:
                report.mark_failed(
                    INPUT_ERROR,
                    "missing build input(s): " + ", ".join(str(p) for p in missing),
                )
                return report

            self._build_stage(report, force, content_hash, revision)
            if mode is RunMode.PUSH:
                self._push_stage(report)
            if not report.manifests:
                report.finish()
        except KernelImagegenError as e:
            logger.error("%s failed: %s", node.key, e)
            report.mark_failed(e.code, str(e))
            report.log_path = report.log_path or getattr(e, "log_path", None)
        except Exception as e:
            logger.exception("Unexpected error processing %s", node.key)
            report.mark_failed("internal_error", str(e))
        return report

    def _build_stage(
        self,
        report: PairReport,
        force: bool,
        content_hash: ContentHash,
        revision: str | None,
    ) -> None:
        """PENDING -> BUILT."""
        target = report.target
        if not should_build(report.hash_qualified, force, self.registry):
            logger.info("%s is up to date, skipping build", report.hash_qualified)
            report.advance(PairState.BUILT)
            return

        kernel_image = None
        if target.tool is not None:
            kernel_image = resolve_tags(
                target.kernel_target(), content_hash, self.settings
            ).hash_qualified

        logger.info("Building %s", report.hash_qualified)
        result = self.build_backend.build(
            BuildRequest(
                target=target,
                image=report.hash_qualified,
                kernel_image=kernel_image,
                revision=revision,
            )
        )
        report.log_path = str(result.log_path)
        report.built = True
        report.advance(PairState.BUILT)

    def _push_stage(self, report: PairReport) -> None:
        """BUILT -> TAGGED.

        Pushes the images of a pair and records the manifest lists they
        belong to. Images that were not rebuilt are already in the registry
        under their hash-qualified tag and are not pushed again.
        """
        hash_qualified = report.hash_qualified
        floating = report.floating

        if not report.built:
            report.advance(PairState.TAGGED)
            report.advance(PairState.PUSHED)
            return

        if hash_qualified.is_dirty:
            raise DirtyTreeError(f"Refusing to push dirty image {hash_qualified}")

        self.registry.push(hash_qualified)
        self.registry.tag(hash_qualified.reference, floating.reference)
        report.advance(PairState.TAGGED)
        self.registry.push(floating)

        images = [hash_qualified, floating]
        if report.target.tool is None and self.settings.push_builder_image:
            images.append(self._push_builder_image(report.target))

        report.pushed = True
        report.manifests = {
            image.manifest_reference: [image.for_arch(arch) for arch in Architecture]
            for image in images
        }

    def _push_builder_image(self, target: BuildTarget) -> ImageIdentifier:
        """Publish the builder image under the kernel's builder tag."""
        builder = builder_image_identifier(target, self.settings)
        self.registry.tag(self.settings.builder_image, builder.reference)
        self.registry.push(builder)
        return builder

    def _publish_manifests(self, reports: list[PairReport]) -> None:
        """TAGGED -> PUSHED.

        The architectures of a target share manifest lists, so each list
        is updated once, after every pair of the run has pushed. Runs on
        the calling thread; a failed update fails every pair sharing it.
        """
        owners: dict[str, list[PairReport]] = {}
        constituents: dict[str, list[ImageIdentifier]] = {}
        for report in reports:
            if report.outcome is not None:
                continue
            for reference, images in report.manifests.items():
                owners.setdefault(reference, []).append(report)
                constituents.setdefault(reference, images)

        for reference, images in constituents.items():
            try:
                self.registry.update_manifest_list(reference, images)
            except KernelImagegenError as e:
                logger.error("Manifest list %s failed: %s", reference, e)
                self._fail_all(owners[reference], e.code, str(e))
            except Exception as e:
                logger.exception("Unexpected error updating manifest list %s", reference)
                self._fail_all(owners[reference], "internal_error", str(e))

        for report in reports:
            if report.outcome is None:
                report.advance(PairState.PUSHED)
                report.finish()

    @staticmethod
    def _fail_all(reports: list[PairReport], code: str, reason: str) -> None:
        for report in reports:
            if report.outcome is None:
                report.mark_failed(code, reason)


__all__ = ["BuildBackend", "Orchestrator", "PairReport", "RunSummary"]
