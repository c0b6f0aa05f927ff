"""Path confinement for file operations."""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath

from apprentice.errors import SandboxViolation

DEFAULT_MOUNT_POINT = "/sandbox"


class Sandbox:
    """Resolves agent-supplied paths inside a per-session root directory.

    Relative paths resolve against the root. Absolute paths must either sit
    under the virtual mount point (``/sandbox`` by default, mapped onto the
    root) or already point inside the real root. The resolved path, with
    symlinks followed, must stay inside the root.
    """

    def __init__(self, root: str | Path, *, mount_point: str = DEFAULT_MOUNT_POINT) -> None:
        self.root = Path(root).expanduser().resolve()
        self.mount_point = PurePosixPath(mount_point or DEFAULT_MOUNT_POINT)

    def resolve(self, path: str) -> Path:
        resolved = Path(os.path.realpath(self._candidate(path)))
        if not resolved.is_relative_to(self.root):
            raise SandboxViolation(f"Path escapes the sandbox root: {path}")
        return resolved

    def resolve_entry(self, path: str) -> Path:
        """Resolve ``path`` without following a symlink in its last component.

        Used by operations that act on the directory entry itself (Delete).
        """
        candidate = Path(os.path.normpath(self._candidate(path)))
        if candidate == self.root:
            return self.root
        parent = Path(os.path.realpath(candidate.parent))
        if not parent.is_relative_to(self.root):
            raise SandboxViolation(f"Path escapes the sandbox root: {path}")
        return parent / candidate.name

    def relative(self, path: Path) -> str:
        """Render a resolved path the way the agent addresses it."""
        try:
            relative = path.relative_to(self.root)
        except ValueError:
            return str(path)
        return relative.as_posix() or "."

    def _candidate(self, path: str) -> Path:
        if not path or "\x00" in path:
            raise SandboxViolation(f"Invalid path: {path!r}")

        candidate = Path(path)
        if path.startswith("~"):
            try:
                candidate = candidate.expanduser()
            except RuntimeError as exc:
                # Unknown user or no home directory.
                raise SandboxViolation(f"Cannot expand home directory in path: {path}") from exc
        if candidate.is_absolute():
            return self._map_absolute(path, candidate)
        return self.root / candidate

    def _map_absolute(self, raw: str, candidate: Path) -> Path:
        posix = PurePosixPath(raw)
        if posix == self.mount_point or posix.is_relative_to(self.mount_point):
            return self.root.joinpath(*posix.relative_to(self.mount_point).parts)
        if candidate.is_relative_to(self.root):
            return candidate
        raise SandboxViolation(f"Absolute path outside the sandbox: {raw}")
