"""Workspace path discipline and generated-file detection.

Every read, write, listing and directory creation performed on behalf of
sandboxed code resolves its path through resolve_within_root(), which
guarantees the result is the sandbox root or a descendant of it.
"""

from __future__ import annotations

import hashlib
import logging
import os
import posixpath
import shutil
from collections.abc import Mapping
from pathlib import Path

from py_code_sandbox.errors import PathSecurityError

logger = logging.getLogger(__name__)

_HASH_CHUNK_SIZE = 64 * 1024


def map_container_path(incoming: str, path_mappings: Mapping[str, str] | None = None) -> str:
    """Translate a container-side path into its local counterpart.

    Args:
        incoming: Path as reported by in-container tooling (or a plain path).
        path_mappings: Container prefix -> local prefix pairs.

    Returns:
        The rewritten path, or the incoming path unchanged when no prefix
        matches. The longest matching prefix wins; ties go to the first entry.
    """
    if not path_mappings:
        return incoming

    normalized = posixpath.normpath(incoming)
    best: tuple[str, str] | None = None
    for container_prefix_raw, local_prefix in path_mappings.items():
        container_prefix = posixpath.normpath(container_prefix_raw).rstrip("/") or "/"
        if container_prefix == "/":
            matches = normalized.startswith("/")
        else:
            matches = normalized == container_prefix or normalized.startswith(
                container_prefix + "/"
            )
        if matches and (best is None or len(container_prefix) > len(best[0])):
            best = (container_prefix, local_prefix)

    if best is None:
        return incoming

    container_prefix, local_prefix = best
    rest = normalized[len(container_prefix) :].lstrip("/")
    local = posixpath.normpath(local_prefix)
    return posixpath.join(local, rest) if rest else local


def resolve_within_root(
    root: str | Path,
    incoming: str,
    path_mappings: Mapping[str, str] | None = None,
) -> Path:
    """Resolve a path under a sandbox root.

    Args:
        root: Sandbox root directory.
        incoming: Relative path, absolute path, or container path.
        path_mappings: Optional container prefix -> local prefix pairs.

    Returns:
        Canonical absolute path equal to root or below it.

    Raises:
        PathSecurityError: If the path escapes the root (including through
            symlinks). Nothing on disk is touched before this check.
    """
    root_path = Path(root).resolve()
    if "\x00" in incoming:
        raise PathSecurityError(incoming, str(root_path))

    mapped = map_container_path(incoming, path_mappings)
    candidate = Path(mapped)
    if not candidate.is_absolute():
        candidate = root_path / candidate

    # resolve() canonicalizes '..' and follows symlinks that already exist
    resolved = candidate.resolve()
    if resolved != root_path and not resolved.is_relative_to(root_path):
        logger.warning(f"Rejected path outside sandbox root: {incoming!r}")
        raise PathSecurityError(incoming, str(root_path))
    return resolved


def _hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_HASH_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


def snapshot_workspace(root: str | Path) -> dict[str, str]:
    """Map every file under root to a content hash.

    Keys are posix-style paths relative to root. Symlinks are recorded by
    their target string and never followed.
    """
    root_path = Path(root)
    snapshot: dict[str, str] = {}
    if not root_path.is_dir():
        return snapshot

    for dirpath, dirnames, filenames in os.walk(root_path, followlinks=False):
        current = Path(dirpath)
        # Symlinked directories are listed in dirnames but must not be walked
        for name in list(dirnames):
            if (current / name).is_symlink():
                dirnames.remove(name)
                filenames.append(name)
        for name in filenames:
            file_path = current / name
            rel = file_path.relative_to(root_path).as_posix()
            try:
                if file_path.is_symlink():
                    target = os.readlink(file_path)
                    snapshot[rel] = "link:" + hashlib.sha256(target.encode()).hexdigest()
                elif file_path.is_file():
                    snapshot[rel] = _hash_file(file_path)
            except OSError as e:
                # Files can disappear or be unreadable (container-owned modes)
                logger.debug(f"Skipping {rel} in workspace snapshot: {e}")
    return snapshot


def diff_snapshots(before: Mapping[str, str], after: Mapping[str, str]) -> list[str]:
    """Return files that are new or whose content changed, sorted."""
    return sorted(path for path, digest in after.items() if before.get(path) != digest)


def clear_workspace(root: str | Path) -> None:
    """Remove everything inside root, keeping root itself."""
    root_path = Path(root)
    if not root_path.is_dir():
        root_path.mkdir(parents=True, exist_ok=True)
        return
    for entry in root_path.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()
