"""File tools for structured multi-file generation inside a sandbox root.

These are the operations an agent uses to lay out a project before running
it: create a whole structure, write one file, read one file, list files.
All of them resolve paths through resolve_within_root(), optionally after
translating container paths (e.g. "/workspace/src/app.py") to local ones.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from py_code_sandbox.workspace import resolve_within_root

logger = logging.getLogger(__name__)


class FileTools:
    """Sandboxed file operations rooted at one directory.

    Usage:
        tools = FileTools(workspace_dir, {"/workspace": "."})
        tools.write_file("/workspace/main.py", "print('hi')")
        tools.list_files()  # {"files": ["main.py"]}
    """

    def __init__(
        self,
        root: str | Path,
        path_mappings: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize file tools.

        Args:
            root: Sandbox root. Created if it does not exist.
            path_mappings: Container prefix -> local prefix pairs.
        """
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._root = self._root.resolve()
        self._path_mappings = dict(path_mappings or {})

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, path: str) -> Path:
        """Resolve a path within the sandbox root (raises PathSecurityError)."""
        return resolve_within_root(self._root, path, self._path_mappings)

    def _relative(self, resolved: Path) -> str:
        return resolved.relative_to(self._root).as_posix()

    def create_file_structure(self, structure: Mapping[str, Any]) -> dict[str, Any]:
        """Create files and directories from a structure description.

        Args:
            structure: {"files": [{"path", "content", "description"?}],
                        "dirs": [...], "dependencies": [...]}

        Returns:
            Dict with created files, created dirs (trailing "/"), a summary
            and the declared dependencies (metadata only).

        Raises:
            PathSecurityError: If any path escapes the root. Every path is
                checked before anything is written.
        """
        files = list(structure.get("files") or [])
        dirs = list(structure.get("dirs") or [])

        resolved_dirs = [(d, self.resolve(d)) for d in dirs]
        resolved_files = [(f, self.resolve(f["path"])) for f in files]

        created_dirs: list[str] = []

        def ensure_dir(target: Path) -> None:
            if target.exists():
                return
            # Record every missing ancestor below root, outermost first
            missing = [target]
            missing.extend(p for p in target.parents if p.is_relative_to(self._root))
            missing = [p for p in missing if p != self._root and not p.exists()]
            target.mkdir(parents=True, exist_ok=True)
            for path in sorted(missing, key=lambda p: len(p.parts)):
                created_dirs.append(self._relative(path) + "/")

        for _, target in resolved_dirs:
            ensure_dir(target)

        generated: list[dict[str, Any]] = []
        for spec, target in resolved_files:
            ensure_dir(target.parent)
            content = spec.get("content", "")
            if isinstance(content, bytes):
                target.write_bytes(content)
            else:
                target.write_text(content, encoding="utf-8")
            generated.append({"path": spec["path"], "description": spec.get("description")})

        summary_lines: list[str] = []
        if created_dirs:
            summary_lines.append(f"Created {len(created_dirs)} directories")
            summary_lines.extend(created_dirs)
        if generated:
            summary_lines.append(f"Generated {len(generated)} files")
            summary_lines.extend(f["path"] for f in generated)

        logger.debug(f"Created {len(generated)} files and {len(created_dirs)} dirs in {self._root}")
        return {
            "files": generated,
            "dirs": created_dirs,
            "summary": "\n".join(summary_lines),
            "dependencies": list(structure.get("dependencies") or []),
        }

    def write_file(self, path: str, content: str | bytes) -> dict[str, str]:
        """Write a file, creating parent directories."""
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")
        return {"written": path}

    def read_bytes(self, path: str) -> bytes:
        """Read a file's raw bytes."""
        return self.resolve(path).read_bytes()

    def read_file(self, path: str) -> dict[str, str]:
        """Read a file, returning its content base64-encoded."""
        return {"content_base64": base64.b64encode(self.read_bytes(path)).decode("ascii")}

    def list_files(self, path: str = ".") -> dict[str, list[str]]:
        """List files and directories below path, recursively.

        Directories end with "/". Entries are relative to the listed path.
        Symlinked directories are listed but not descended into.
        """
        base = self.resolve(path)

        def walk(current: Path, prefix: str) -> list[str]:
            results: list[str] = []
            for entry in sorted(current.iterdir(), key=lambda p: p.name):
                rel = f"{prefix}{entry.name}"
                if entry.is_dir() and not entry.is_symlink():
                    results.append(rel + "/")
                    results.extend(walk(entry, rel + "/"))
                else:
                    results.append(rel)
            return results

        return {"files": walk(base, "")}
