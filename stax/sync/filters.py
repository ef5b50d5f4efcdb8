"""
Include/exclude rule evaluation for file transfers

Rules follow rsync conventions:
    - a pattern without '/' matches a file or directory name at any depth
    - a pattern containing '/' is matched against the whole relative path
      ('/' at the start anchors it explicitly)
    - a trailing '/' restricts the pattern to directories
    - '*' stays within a path segment, '**' crosses segments
A rule that matches a directory also covers everything below it.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from stax.utils.security import validate_glob

BUILTIN_EXCLUDES = (
    ".git/",
    "node_modules/",
    "vendor/",
    ".DS_Store",
    "Thumbs.db",
    "*.log",
    "*.tmp",
    "*.swp",
    "*.stax-part",
    "/cache/",
    "uploads/cache/",
    "uploads/*-cache/",
    "uploads/wpo-cache/",
)

IGNORE_FILE_NAME = ".staxignore"


def _glob_to_regex(pattern: str) -> "re.Pattern":
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "*":
            if pattern[i:i + 2] == "**":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "[":
            end = pattern.find("]", i + 1)
            if end < 0:
                out.append(re.escape(ch))
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z")


@dataclass(frozen=True)
class FilterRule:
    pattern: str
    include: bool

    @property
    def dir_only(self) -> bool:
        return self.pattern.endswith("/")

    @property
    def anchored(self) -> bool:
        return "/" in self.pattern.rstrip("/")

    def _regex(self):
        body = self.pattern.rstrip("/").lstrip("/")
        return _glob_to_regex(body)

    def matches(self, rel_path: str, is_dir: bool) -> bool:
        """
        Checks the path and each of its parent directories against the pattern
        """
        regex = self._regex()
        parts = rel_path.strip("/").split("/")
        for depth in range(1, len(parts) + 1):
            candidate_is_dir = depth < len(parts) or is_dir
            if self.dir_only and not candidate_is_dir:
                continue
            if self.anchored:
                target = "/".join(parts[:depth])
            else:
                target = parts[depth - 1]
            if regex.match(target):
                return True
        return False


class PathFilter:
    """
    Ordered rule list; the first matching rule decides, no match means include
    """

    def __init__(self, include_globs: Iterable[str] = (), exclude_globs: Iterable[str] = (),
                 use_builtins: bool = True):
        self.builtins = [FilterRule(p, include=False) for p in BUILTIN_EXCLUDES] if use_builtins else []
        self.rules: List[FilterRule] = []
        for pattern in include_globs:
            self.rules.append(FilterRule(validate_glob(pattern), include=True))
        for pattern in exclude_globs:
            self.rules.append(FilterRule(validate_glob(pattern), include=False))

    def decide(self, rel_path: str, is_dir: bool = False) -> Tuple[bool, Optional[FilterRule]]:
        """
        Returns whether the path is transferred and which rule decided it
        """
        for rule in self.builtins:
            if rule.matches(rel_path, is_dir):
                return False, rule
        for rule in self.rules:
            if rule.matches(rel_path, is_dir):
                return rule.include, rule
        return True, None

    def allows(self, rel_path: str, is_dir: bool = False) -> bool:
        return self.decide(rel_path, is_dir)[0]


def load_ignore_file(project_dir: Path) -> List[str]:
    """
    Reads exclude patterns from the project's .staxignore, skipping blanks and comments
    """
    path = Path(project_dir) / IGNORE_FILE_NAME
    if not path.exists():
        return []
    patterns = []
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                patterns.append(line)
    return patterns


def scope_rules(scope: str) -> Tuple[List[str], List[str]]:
    """
    Maps a files scope to include and exclude patterns

    Args:
        scope: all, themes, plugins, mu-plugins or no-uploads

    Returns:
        Tuple[List[str], List[str]]: Include patterns and exclude patterns
    """
    if scope == "themes":
        return ["/themes/"], ["*"]
    if scope == "plugins":
        return ["/plugins/"], ["*"]
    if scope == "mu-plugins":
        return ["/mu-plugins/"], ["*"]
    if scope == "no-uploads":
        return [], ["/uploads/"]
    if scope == "all":
        return [], []
    raise ValueError(f"Unknown files scope '{scope}'")
