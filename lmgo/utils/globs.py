"""Gitignore-style glob matching for model exclusion patterns."""

from __future__ import annotations

from collections.abc import Iterable
from functools import lru_cache
import re


def _translate_class(pattern: str, start: int) -> tuple[str, int] | None:
    """Translate a ``[...]`` class starting at ``start``; None if unterminated."""

    i = start + 1
    negate = False
    if i < len(pattern) and pattern[i] in "!^":
        negate = True
        i += 1
    # A leading ']' is part of the class.
    if i < len(pattern) and pattern[i] == "]":
        i += 1
    end = pattern.find("]", i)
    if end == -1:
        return None
    body = pattern[start + 1 + (1 if negate else 0) : end].replace("\\", "\\\\")
    body = body.replace("/", "")
    prefix = "^/" if negate else ""
    return f"[{prefix}{body}]", end + 1


@lru_cache(maxsize=256)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """Compile a single glob pattern into an anchored regular expression.

    ``*`` matches any run of non-separator characters, ``?`` a single
    non-separator character, ``[...]`` a character class and ``**`` zero or
    more whole path segments.
    """
    pat = pattern.strip().lstrip("/")
    directory_only = pat.endswith("/")
    pat = pat.rstrip("/")

    parts: list[str] = []
    i = 0
    n = len(pat)
    while i < n:
        char = pat[i]
        if char == "*":
            if pat.startswith("**", i):
                at_segment_start = i == 0 or pat[i - 1] == "/"
                after = i + 2
                if at_segment_start and after < n and pat[after] == "/":
                    parts.append("(?:[^/]+/)*")
                    i = after + 1
                    continue
                parts.append(".*")
                i = after
                continue
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "[":
            translated = _translate_class(pat, i)
            if translated is None:
                parts.append(re.escape(char))
            else:
                regex, i = translated
                parts.append(regex)
                continue
        else:
            parts.append(re.escape(char))
        i += 1

    body = "".join(parts)
    if directory_only:
        body += "/.*"
    return re.compile(f"^{body}$")


def _candidates(rel_path: str) -> list[str]:
    segments = [segment for segment in rel_path.replace("\\", "/").split("/") if segment]
    # The full path plus every parent directory, so excluding a directory
    # excludes everything beneath it.
    prefixes = ["/".join(segments[: idx + 1]) for idx in range(len(segments))]
    return prefixes


def matches_any(rel_path: str, patterns: Iterable[str]) -> bool:
    """Return True if ``rel_path`` is matched by any of ``patterns``.

    Parameters
    ----------
    rel_path : str
        Path relative to the scanned root. Backslashes are treated as separators.
    patterns : Iterable[str]
        Glob patterns. A pattern without ``/`` also matches a bare path
        segment at any depth (for example the file name).
    """
    candidates = _candidates(rel_path)
    if not candidates:
        return False
    full_paths = candidates + [candidate + "/" for candidate in candidates[:-1]]
    names = candidates[-1].split("/")
    segments = names + [name + "/" for name in names[:-1]]

    for raw in patterns:
        pattern = raw.strip()
        if not pattern or pattern.startswith("#"):
            continue
        regex = compile_glob(pattern)
        anchored = "/" in pattern.rstrip("/")
        if any(regex.match(candidate) for candidate in full_paths):
            return True
        if not anchored and any(regex.match(segment) for segment in segments):
            return True
    return False
