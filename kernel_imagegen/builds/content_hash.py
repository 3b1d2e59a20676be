"""Content hashing of the build directory.

This module handles:
- Git tree hash lookup for a directory at a commit
- Dirty working tree detection against the checkout tip
- Combining both into the ContentHash used in image tags

Identical directory content yields the identical tree hash; any change to
a tracked or untracked-but-added file yields a different one.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Protocol

from kernel_imagegen.builds.tags import ContentHash
from kernel_imagegen.errors import DirtyTreeError, VcsError

logger = logging.getLogger(__name__)

TIP_REF = "HEAD"


class VcsBackend(Protocol):
    """Version control operations needed for content hashing."""

    def tree_hash(self, path: Path, ref: str) -> str: ...

    def is_dirty(self, path: Path) -> bool: ...

    def head_commit(self, path: Path) -> str: ...

    def resolve_commit(self, path: Path, ref: str) -> str: ...


class GitVcs:
    """Git implementation of VcsBackend using the git CLI."""

    def __init__(self, git_bin: str = "git", timeout: int = 60) -> None:
        self.git_bin = git_bin
        self.timeout = timeout

    def _run(
        self, args: list[str], cwd: Path, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self.git_bin, *args]
        logger.debug("Running: %s (cwd=%s)", shlex.join(cmd), cwd)
        try:
            return subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=check,
            )
        except subprocess.CalledProcessError as e:
            raise VcsError(
                f"{shlex.join(cmd)} failed: {(e.stderr or '').strip()}"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise VcsError(f"{shlex.join(cmd)} timed out after {self.timeout}s") from e
        except OSError as e:
            raise VcsError(f"Failed to run git: {e}") from e

    def tree_hash(self, path: Path, ref: str = TIP_REF) -> str:
        """Return the git object hash of ``path`` at ``ref``.

        Raises:
            VcsError: If git fails or the path is not tracked at ref.
        """
        path = path.resolve()
        cwd = path if path.is_dir() else path.parent
        toplevel = self._run(["rev-parse", "--show-toplevel"], cwd=cwd).stdout.strip()
        if Path(toplevel).resolve() == path:
            # ls-tree on the root lists its entries, not the root tree itself
            result = self._run(["rev-parse", f"{ref}^{{tree}}"], cwd=cwd)
            return result.stdout.strip()

        result = self._run(["ls-tree", "--full-tree", ref, "--", str(path)], cwd=cwd)
        # Output: "<mode> <type> <hash>\t<path>"
        fields = result.stdout.split()
        if len(fields) < 3:
            raise VcsError(f"{path} is not tracked at {ref}")
        return fields[2]

    def is_dirty(self, path: Path) -> bool:
        """Return True if the working tree under ``path`` differs from HEAD."""
        path = path.resolve()
        cwd = path if path.is_dir() else path.parent
        self._run(["update-index", "-q", "--refresh"], cwd=cwd, check=False)
        result = self._run(
            ["diff-index", "--quiet", TIP_REF, "--", str(path)],
            cwd=cwd,
            check=False,
        )
        if result.returncode not in (0, 1):
            raise VcsError(
                f"git diff-index failed for {path}: {result.stderr.strip()}"
            )
        return result.returncode == 1

    def head_commit(self, path: Path) -> str:
        """Return the commit hash of the checkout tip."""
        return self.resolve_commit(path, TIP_REF)

    def resolve_commit(self, path: Path, ref: str) -> str:
        """Return the commit hash a ref names.

        Raises:
            VcsError: If the ref does not name a commit.
        """
        path = path.resolve()
        result = self._run(
            ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"],
            cwd=path if path.is_dir() else path.parent,
        )
        return result.stdout.strip()


def is_checkout_tip(path: Path, commit_ref: str, vcs: VcsBackend) -> bool:
    """Whether a ref names the commit currently checked out.

    Branch names, tags, ``HEAD~0`` and full commit hashes of the tip all
    count, not just the literal ``HEAD``.
    """
    if commit_ref == TIP_REF:
        return True
    return vcs.resolve_commit(path, commit_ref) == vcs.head_commit(path)


def compute_content_hash(
    path: Path,
    commit_ref: str = TIP_REF,
    vcs: VcsBackend | None = None,
) -> ContentHash:
    """Compute the content hash of a build directory.

    The dirty marker is only considered when hashing the checkout tip;
    any other commit is by definition clean.

    Args:
        path: Build directory.
        commit_ref: Commit to hash (defaults to the checkout tip).
        vcs: Version control backend (defaults to git).

    Returns:
        ContentHash for the directory.

    Raises:
        VcsError: If the version control backend fails.
    """
    if vcs is None:
        vcs = GitVcs()

    tree_hash = vcs.tree_hash(path, commit_ref)
    dirty = False
    if is_checkout_tip(path, commit_ref, vcs):
        dirty = vcs.is_dirty(path)

    content_hash = ContentHash(tree_hash=tree_hash, dirty=dirty)
    if dirty:
        logger.warning("Working tree %s has uncommitted changes", path)
    logger.debug("Content hash of %s at %s: %s", path, commit_ref, content_hash)
    return content_hash


def require_clean(content_hash: ContentHash) -> None:
    """Refuse to continue with a dirty content hash.

    Raises:
        DirtyTreeError: If the hash carries the dirty marker.
    """
    if content_hash.dirty:
        raise DirtyTreeError(
            "Your repository is not clean. Will not push image "
            f"(content hash {content_hash})"
        )


def require_pushable(
    path: Path,
    content_hash: ContentHash,
    commit_ref: str = TIP_REF,
    vcs: VcsBackend | None = None,
) -> None:
    """Refuse to push unless the working tree matches the tagged commit.

    Images are always built from the working tree. When the hash names
    a commit other than the checkout tip, that commit's tree must equal
    the tip tree and the working tree must be clean.

    Raises:
        DirtyTreeError: If the working tree differs from the tagged commit.
        VcsError: If the version control backend fails.
    """
    require_clean(content_hash)
    if vcs is None:
        vcs = GitVcs()
    if is_checkout_tip(path, commit_ref, vcs):
        return

    if vcs.tree_hash(path, TIP_REF) != content_hash.tree_hash or vcs.is_dirty(path):
        raise DirtyTreeError(
            f"Working tree of {path} differs from {commit_ref}. Will not push image "
            f"(content hash {content_hash})"
        )


__all__ = [
    "TIP_REF",
    "GitVcs",
    "VcsBackend",
    "compute_content_hash",
    "is_checkout_tip",
    "require_clean",
    "require_pushable",
]
