from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import PurePosixPath


GITIGNORE_FILENAME = ".gitignore"


def _normalize_pattern(pattern: str) -> str:
    normalized = pattern.strip().replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _match_pattern(path: str, pattern: str) -> bool:
    path_obj = PurePosixPath(path)
    norm = _normalize_pattern(pattern)
    if not norm:
        return False
    # Support both repo-root anchored and recursive matching styles.
    return (
        path_obj.match(norm)
        or path_obj.match(f"**/{norm}")
        or (norm.endswith("/") and path.startswith(norm))
    )


@dataclass(slots=True, frozen=True)
class IgnoreRule:
    pattern: str
    negated: bool = False
    anchored: bool = False
    directory_only: bool = False

    def matches(self, path: str) -> bool:
        parts = path.split("/")
        # A directory rule matches through any ancestor; a plain rule also matches the file itself.
        stop = len(parts) - 1 if self.directory_only else len(parts)
        for index in range(1, stop + 1):
            candidate = "/".join(parts[:index])
            if self.anchored:
                if fnmatchcase(candidate, self.pattern):
                    return True
            elif fnmatchcase(parts[index - 1], self.pattern):
                return True
        return False


def parse_gitignore(text: str) -> tuple[IgnoreRule, ...]:
    rules: list[IgnoreRule] = []
    for raw_line in text.splitlines():
        line = raw_line.rstrip()
        if not line or line.startswith("#"):
            continue
        negated = line.startswith("!")
        if negated:
            line = line[1:]
        directory_only = line.endswith("/")
        line = line.rstrip("/")
        # A slash anywhere but the end anchors the pattern to the root.
        anchored = "/" in line
        line = line.lstrip("/")
        if line.startswith("**/"):
            line = line[3:]
            anchored = "/" in line
        if not line:
            continue
        rules.append(
            IgnoreRule(
                pattern=line,
                negated=negated,
                anchored=anchored,
                directory_only=directory_only,
            )
        )
    return tuple(rules)


@dataclass(slots=True)
class PathFilter:
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    ignore_rules: tuple[IgnoreRule, ...] = ()

    def is_ignored(self, path: str) -> bool:
        ignored = False
        for rule in self.ignore_rules:
            if rule.matches(path):
                ignored = not rule.negated
        return ignored

    def matches(self, path: str) -> bool:
        if self.include_patterns and not any(
            _match_pattern(path, pattern) for pattern in self.include_patterns
        ):
            return False
        if any(_match_pattern(path, pattern) for pattern in self.exclude_patterns):
            return False
        if self.ignore_rules and self.is_ignored(path):
            return False
        return True

    def with_gitignore(self, text: str) -> "PathFilter":
        return PathFilter(
            include_patterns=self.include_patterns,
            exclude_patterns=self.exclude_patterns,
            ignore_rules=self.ignore_rules + parse_gitignore(text),
        )


def build_path_filter(
    include_patterns: list[str] | tuple[str, ...] | None = None,
    exclude_patterns: list[str] | tuple[str, ...] | None = None,
    *,
    gitignore_text: str | None = None,
) -> PathFilter:
    include = tuple(_normalize_pattern(pattern) for pattern in (include_patterns or []) if pattern)
    exclude = tuple(_normalize_pattern(pattern) for pattern in (exclude_patterns or []) if pattern)
    rules = parse_gitignore(gitignore_text) if gitignore_text else ()
    return PathFilter(include_patterns=include, exclude_patterns=exclude, ignore_rules=rules)
