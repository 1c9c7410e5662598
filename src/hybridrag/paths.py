"""Candidate file discovery.

PathResolver turns a file or directory root into a lazy stream of absolute
file paths, applying extension filters and gitignore-style ignore rules.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from .config import IMAGE_EXTENSIONS, PDF_EXTENSIONS, EngineConfig
from .errors import InvalidSource
from .models import CollectionStats

logger = logging.getLogger(__name__)


def relpath(root: Path, p: Path) -> str:
    return str(p.relative_to(root)).replace("\\", "/")


def _glob_to_regex(pattern: str) -> str:
    """Translate a gitignore glob into a regex over forward-slash paths.

    `*` and `?` never cross a slash; `**` does.
    """
    out: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("/**", i) and i + 3 == n:
            out.append("/.*")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif c == "*":
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[":
            j = pattern.find("]", i + 1)
            if j == -1:
                out.append(re.escape(c))
                i += 1
            else:
                body = pattern[i + 1:j]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = j + 1
        else:
            out.append(re.escape(c))
            i += 1
    return "".join(out)


@dataclass(frozen=True)
class IgnoreRule:
    """One gitignore-style rule.

    Rules without a slash match a basename at any depth; rules with a slash
    are anchored to `base` (the directory the rule was declared in).
    """
    pattern: str
    negate: bool
    dir_only: bool
    anchored: bool
    base: str
    regex: re.Pattern

    @property
    def target(self) -> str:
        """The rule pattern as a path from the walk root."""
        body = self.pattern.lstrip("!\\").strip("/")
        return f"{self.base}/{body}" if self.base else body

    @staticmethod
    def parse(line: str, base: str = "") -> "IgnoreRule | None":
        raw = line.rstrip("\n").rstrip()
        if not raw or raw.startswith("#"):
            return None
        negate = raw.startswith("!")
        if negate:
            raw = raw[1:]
        elif raw.startswith("\\!") or raw.startswith("\\#"):
            raw = raw[1:]
        dir_only = raw.endswith("/")
        raw = raw.rstrip("/")
        if not raw:
            return None
        anchored = "/" in raw
        raw = raw.lstrip("/")
        regex = re.compile(_glob_to_regex(raw) + r"\Z")
        return IgnoreRule(pattern=line.strip(), negate=negate, dir_only=dir_only,
                          anchored=anchored, base=base, regex=regex)

    def matches(self, rel_path: str, is_dir: bool) -> bool:
        if self.dir_only and not is_dir:
            return False
        if self.base:
            if not rel_path.startswith(self.base + "/"):
                return False
            rel_path = rel_path[len(self.base) + 1:]
        if self.anchored:
            return bool(self.regex.match(rel_path))
        return bool(self.regex.match(rel_path.rsplit("/", 1)[-1]))


def parse_rules(lines: list[str] | tuple[str, ...], base: str = "") -> list[IgnoreRule]:
    rules = []
    for line in lines:
        rule = IgnoreRule.parse(line, base)
        if rule is not None:
            rules.append(rule)
    return rules


def is_ignored(rel_path: str, is_dir: bool, rules: list[IgnoreRule], inherited: bool = False) -> bool:
    """Evaluate rules in order; the last matching rule decides.

    `inherited` is the verdict when no rule matches: True for paths inside an
    excluded directory.
    """
    ignored = inherited
    for rule in rules:
        if rule.matches(rel_path, is_dir):
            ignored = not rule.negate
    return ignored


def may_reinclude(rel_dir: str, rules: list[IgnoreRule]) -> bool:
    """True when a negation after the last rule excluding rel_dir names a path beneath it."""
    last = -1
    for i, rule in enumerate(rules):
        if not rule.negate and rule.matches(rel_dir, True):
            last = i
    prefix = rel_dir + "/"
    return any(r.negate and r.anchored and r.target.startswith(prefix) for r in rules[last + 1:])


@dataclass(frozen=True)
class PathFilter:
    allowed_extensions: frozenset[str]
    ignore_patterns: tuple[str, ...] = ()
    recursive: bool = True
    max_file_size: int = 10 * 1024 * 1024
    skip_hidden: bool = True
    respect_gitignore: bool = True

    @staticmethod
    def from_config(cfg: EngineConfig, extensions: list[str] | None = None,
                    recursive: bool | None = None) -> "PathFilter":
        exts = {e.lower().lstrip(".") for e in (extensions or cfg.extensions)}
        if cfg.skip_images:
            exts -= set(IMAGE_EXTENSIONS)
        if cfg.skip_pdfs:
            exts -= set(PDF_EXTENSIONS)
        return PathFilter(
            allowed_extensions=frozenset(exts),
            ignore_patterns=tuple(cfg.ignore),
            recursive=cfg.recursive if recursive is None else recursive,
            max_file_size=cfg.max_file_size,
            skip_hidden=cfg.skip_hidden,
            respect_gitignore=cfg.respect_gitignore,
        )

    def extension_allowed(self, p: Path) -> bool:
        return p.suffix.lower().lstrip(".") in self.allowed_extensions


@dataclass
class ResolvedPaths:
    """Lazy, restartable sequence of candidate paths.

    Each iteration re-walks the filesystem and resets `stats`.
    """
    root: Path
    filters: PathFilter
    stats: CollectionStats = field(default_factory=CollectionStats)

    def __iter__(self) -> Iterator[Path]:
        self.stats = CollectionStats()
        if self.root.is_file():
            self.stats.total_found = 1
            self.stats.collected = 1
            yield self.root
            return
        rules = parse_rules(self.filters.ignore_patterns)
        visited: set[str] = set()
        yield from self._walk(self.root, rules, visited)

    def _walk(self, directory: Path, rules: list[IgnoreRule], visited: set[str],
              excluded: bool = False) -> Iterator[Path]:
        """Yield files under directory. `excluded` marks a directory that an ignore
        rule matched but a later negation may re-include something inside."""
        real = os.path.realpath(directory)
        if real in visited:
            logger.debug(f"Skipping already visited directory (symlink cycle?): {directory}")
            return
        visited.add(real)

        if self.filters.respect_gitignore:
            gi = directory / ".gitignore"
            if gi.is_file():
                base = "" if directory == self.root else relpath(self.root, directory)
                lines = gi.read_text(encoding="utf-8", errors="replace").splitlines()
                rules = rules + parse_rules(lines, base)

        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            logger.warning(f"Cannot read directory {directory}: {e}")
            return

        for entry in entries:
            p = Path(entry.path)
            rel = relpath(self.root, p)
            try:
                is_dir = entry.is_dir()
            except OSError:
                continue

            if self.filters.skip_hidden and entry.name.startswith("."):
                if not is_dir:
                    self.stats.total_found += 1
                self.stats.skipped_hidden += 1
                continue

            if is_dir:
                if not self.filters.recursive:
                    continue
                if is_ignored(rel, True, rules, excluded):
                    if may_reinclude(rel, rules):
                        yield from self._walk(p, rules, visited, excluded=True)
                    else:
                        self.stats.skipped_ignored += 1
                    continue
                yield from self._walk(p, rules, visited)
                continue

            self.stats.total_found += 1
            if is_ignored(rel, False, rules, excluded):
                self.stats.skipped_ignored += 1
                continue
            if not self.filters.extension_allowed(p):
                self.stats.skipped_extension += 1
                continue
            try:
                size = p.stat().st_size
            except OSError as e:
                logger.warning(f"Cannot stat {p}: {e}")
                continue
            if size > self.filters.max_file_size:
                logger.debug(f"Skipping {rel}: {size} bytes exceeds max_file_size")
                self.stats.skipped_size += 1
                continue

            self.stats.collected += 1
            yield p.absolute()


@dataclass
class PathResolver:
    filters: PathFilter

    def resolve(self, root: str | Path) -> ResolvedPaths:
        """Validate root and return the candidate stream.

        Raises InvalidSource when a file root is missing or unsupported, or a
        directory root does not exist.
        """
        p = Path(root).expanduser()
        if not p.exists():
            raise InvalidSource(f"Path does not exist: {p}")
        p = p.absolute()
        if p.is_file():
            if not self.filters.extension_allowed(p):
                raise InvalidSource(f"Unsupported file extension: {p.suffix or '(none)'} ({p})")
            if p.stat().st_size > self.filters.max_file_size:
                raise InvalidSource(f"File exceeds max_file_size ({self.filters.max_file_size} bytes): {p}")
        elif not p.is_dir():
            raise InvalidSource(f"Not a file or directory: {p}")
        return ResolvedPaths(root=p, filters=self.filters)
