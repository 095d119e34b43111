"""Vault file storage.

The dispatcher only talks to the :class:`FileStore` protocol. The bundled
implementation, :class:`LocalVault`, serves a directory of notes on the
local disk; every path is relative to the vault root and may not escape
it.
"""

import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass
class FileEntry:
    path: str
    is_dir: bool = False


@dataclass
class SearchSnippet:
    text: str
    match_index: int


@dataclass
class SearchMatch:
    path: str
    snippets: list[SearchSnippet] = field(default_factory=list)


@dataclass
class OperationResult:
    success: bool
    error: str | None = None


class FileStore(Protocol):
    async def list_files(self, path: str = "", recursive: bool = True) -> list[FileEntry]: ...

    async def read_file(self, path: str) -> str | None: ...

    async def search_files(self, term: str) -> list[SearchMatch]: ...

    async def write_file(self, path: str, content: str) -> bool: ...

    async def delete_file(self, path: str) -> OperationResult: ...

    async def move_file(self, source: str, destination: str) -> OperationResult: ...


class VaultPathError(ValueError):
    """A path points outside the vault or into an excluded area."""


AGENT_DIR_EXCLUSION = "Vault AI/**"


def exclusion_pattern(glob: str) -> re.Pattern:
    """Translate an exclusion glob. ``**`` spans folders, ``*`` does not.

    A pattern ending in ``/`` excludes the folder and everything in it.
    """
    pattern = re.escape(glob.strip()).replace(r"\*\*", "\0").replace(r"\*", "[^/]*").replace("\0", ".*")
    if glob.strip().endswith("/"):
        pattern += ".*"
    return re.compile(f"^{pattern}$")


def compile_search_pattern(term: str) -> re.Pattern:
    """Compile *term* case-insensitively, as a literal if it is not a valid regex."""
    try:
        return re.compile(term, re.IGNORECASE)
    except re.error:
        return re.compile(re.escape(term), re.IGNORECASE)


class LocalVault:
    """A vault backed by a local directory.

    Paths matching an exclusion are invisible: they are not listed or
    searched, read as missing, and refuse writes, moves and deletes. The
    ``Vault AI`` folder, where conversations are kept, is always excluded.

    Args:
        root: The vault directory.
        exclusions: Extra glob patterns relative to the root, e.g.
            ``private/**`` or ``*.secret.md``.
        ignored: Directory names skipped when listing and searching.
        snippet_radius: Characters of context on each side of a match.
        max_snippets: Snippets returned per matching file.
    """

    def __init__(
        self,
        root: Path | str,
        exclusions: list[str] | tuple[str, ...] = (),
        ignored: tuple[str, ...] = (".git", ".obsidian", ".trash"),
        snippet_radius: int = 60,
        max_snippets: int = 5,
    ):
        self.root = Path(root).expanduser().resolve()
        self.exclusions = [AGENT_DIR_EXCLUSION, *(e for e in exclusions if e.strip())]
        self._excluded = [exclusion_pattern(e) for e in self.exclusions]
        self.ignored = ignored
        self.snippet_radius = snippet_radius
        self.max_snippets = max_snippets

    def is_excluded(self, relative: str) -> bool:
        return any(
            p.match(relative) or p.match(relative + "/") for p in self._excluded
        )

    def resolve(self, path: str) -> Path:
        """Absolute path for *path*.

        Raises:
            VaultPathError: If *path* leaves the vault or is excluded.
        """
        target = (self.root / path.strip().lstrip("/")).resolve()
        if target != self.root and not target.is_relative_to(self.root):
            raise VaultPathError(f"Path is outside the vault: {path}")
        if target != self.root and self.is_excluded(self.relative(target)):
            raise VaultPathError(f"Path is excluded: {path}")
        return target

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def _walk(self, folder: Path, recursive: bool) -> list[Path]:
        found = []
        for child in sorted(folder.iterdir()):
            if child.name in self.ignored or self.is_excluded(self.relative(child)):
                continue
            found.append(child)
            if recursive and child.is_dir():
                found.extend(self._walk(child, recursive))
        return found

    # -- reads ---------------------------------------------------------------

    async def list_files(self, path: str = "", recursive: bool = True) -> list[FileEntry]:
        try:
            folder = self.resolve(path)
        except VaultPathError as e:
            logger.warning(str(e))
            return []
        if not folder.is_dir():
            return []
        paths = await asyncio.to_thread(self._walk, folder, recursive)
        return [FileEntry(path=self.relative(p), is_dir=p.is_dir()) for p in paths]

    async def read_file(self, path: str) -> str | None:
        try:
            target = self.resolve(path)
        except VaultPathError as e:
            logger.warning(str(e))
            return None
        if not target.is_file():
            return None
        return await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")

    async def search_files(self, term: str) -> list[SearchMatch]:
        if not term.strip():
            return []
        pattern = compile_search_pattern(term)
        return await asyncio.to_thread(self._search, pattern)

    def _search(self, pattern: re.Pattern) -> list[SearchMatch]:
        matches = []
        for path in self._walk(self.root, recursive=True):
            if not path.is_file():
                continue
            relative = self.relative(path)
            try:
                text = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                text = ""

            snippets = []
            for found in pattern.finditer(text):
                if len(snippets) >= self.max_snippets:
                    break
                start = max(found.start() - self.snippet_radius, 0)
                end = min(found.end() + self.snippet_radius, len(text))
                snippets.append(SearchSnippet(text=text[start:end], match_index=found.start()))

            if snippets or pattern.search(relative):
                matches.append(SearchMatch(path=relative, snippets=snippets))
        return matches

    # -- writes --------------------------------------------------------------

    async def write_file(self, path: str, content: str) -> bool:
        target = self.resolve(path)
        if target == self.root or target.is_dir():
            return False

        def write():
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        await asyncio.to_thread(write)
        logger.info(f"Wrote {self.relative(target)}")
        return True

    async def delete_file(self, path: str) -> OperationResult:
        try:
            target = self.resolve(path)
        except VaultPathError as e:
            return OperationResult(success=False, error=str(e))
        if not target.exists() or target == self.root:
            return OperationResult(success=False, error=f"File not found: {path}")

        if target.is_dir():
            await asyncio.to_thread(shutil.rmtree, target)
        else:
            await asyncio.to_thread(target.unlink)
        logger.info(f"Deleted {path}")
        return OperationResult(success=True)

    async def move_file(self, source: str, destination: str) -> OperationResult:
        try:
            src = self.resolve(source)
            dst = self.resolve(destination)
        except VaultPathError as e:
            return OperationResult(success=False, error=str(e))
        if not src.exists() or src == self.root:
            return OperationResult(success=False, error=f"File not found: {source}")
        if dst.exists():
            return OperationResult(success=False, error=f"Destination already exists: {destination}")

        def move():
            dst.parent.mkdir(parents=True, exist_ok=True)
            os.replace(src, dst)

        await asyncio.to_thread(move)
        logger.info(f"Moved {source} to {destination}")
        return OperationResult(success=True)
