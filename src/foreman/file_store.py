"""SecureFileStore: filesystem access scoped to allow-listed roots.

All persistence in the engine goes through this store. Paths are resolved and
checked against the allowed roots before any I/O; with no roots configured the
store is unrestricted (local development). Blocking I/O runs in a worker
thread so the event loop never stalls on disk.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable

from foreman.errors import AccessDeniedError

logger = logging.getLogger(__name__)


class SecureFileStore:
    def __init__(self, allowed_roots: Iterable[str | Path] = ()):
        self._roots: list[Path] = []
        for root in allowed_roots:
            self.add_allowed_root(root)

    @property
    def allowed_roots(self) -> list[Path]:
        return list(self._roots)

    def add_allowed_root(self, root: str | Path) -> None:
        resolved = Path(root).expanduser().resolve()
        if resolved not in self._roots:
            self._roots.append(resolved)

    def is_allowed(self, path: str | Path) -> bool:
        if not self._roots:
            return True
        resolved = Path(path).expanduser().resolve()
        return any(resolved == root or root in resolved.parents for root in self._roots)

    def validate(self, path: str | Path) -> Path:
        """Resolve ``path`` and raise AccessDeniedError outside the roots."""
        resolved = Path(path).expanduser().resolve()
        if not self.is_allowed(resolved):
            raise AccessDeniedError(f"Access denied: {path} is not in an allowed directory")
        return resolved

    # ── Async operations ─────────────────────────────────────────────────

    async def exists(self, path: str | Path) -> bool:
        target = self.validate(path)
        return await asyncio.to_thread(target.exists)

    async def is_dir(self, path: str | Path) -> bool:
        target = self.validate(path)
        return await asyncio.to_thread(target.is_dir)

    async def read_text(self, path: str | Path) -> str:
        target = self.validate(path)
        return await asyncio.to_thread(target.read_text, encoding="utf-8")

    async def write_text(self, path: str | Path, content: str) -> None:
        """Write atomically: temp file in the same directory, then replace."""
        target = self.validate(path)
        await asyncio.to_thread(_atomic_write, target, content)

    async def mkdir(self, path: str | Path) -> None:
        target = self.validate(path)
        await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)

    async def rm(self, path: str | Path) -> None:
        """Remove a file or directory tree; missing paths are ignored."""
        target = self.validate(path)
        await asyncio.to_thread(_remove, target)

    async def listdir(self, path: str | Path) -> list[Path]:
        target = self.validate(path)

        def _list() -> list[Path]:
            if not target.is_dir():
                return []
            return sorted(target.iterdir())

        return await asyncio.to_thread(_list)

    async def copy_file(self, src: str | Path, dest: str | Path) -> None:
        source = Path(src).expanduser().resolve()
        target = self.validate(dest)

        def _copy() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)

        await asyncio.to_thread(_copy)


def _atomic_write(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def _remove(target: Path) -> None:
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    elif target.exists() or target.is_symlink():
        target.unlink()
