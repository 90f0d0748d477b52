"""Path, URI and glob helpers shared by document sync and the watch bridge.

Glob syntax follows the patterns editors hand to language clients:

- ``*`` matches any run of characters inside one path segment
- ``?`` matches one character inside a segment
- ``**`` as a whole segment matches zero or more segments
- ``[abc]`` / ``[!abc]`` character classes
- ``{a,b}`` alternatives (may contain ``/``)

Paths are compared with ``/`` separators.
"""

import fnmatch
import os
from pathlib import Path, PurePosixPath
from typing import List, Optional, Sequence


def uri_from_path(path: str) -> str:
    """Convert a file path to a ``file://`` URI."""
    return Path(os.path.abspath(path)).as_uri()


def to_posix(path: str) -> str:
    return path.replace(os.sep, "/") if os.sep != "/" else path


def relative_posix(path: str, root: str) -> Optional[str]:
    """Return ``path`` relative to ``root`` with ``/`` separators.

    Returns None when ``path`` lies outside ``root``.
    """
    try:
        rel = os.path.relpath(os.path.abspath(path), os.path.abspath(root))
    except ValueError:
        # Different drives on Windows
        return None
    if rel == os.pardir or rel.startswith(os.pardir + os.sep):
        return None
    return to_posix(rel)


def expand_braces(pattern: str) -> List[str]:
    """Expand ``{a,b}`` alternatives, including nested ones.

    >>> expand_braces("src/{a,b}/*.noul")
    ['src/a/*.noul', 'src/b/*.noul']
    """
    start = pattern.find("{")
    if start < 0:
        return [pattern]

    depth = 0
    options: List[str] = []
    last = start + 1
    for i in range(start, len(pattern)):
        ch = pattern[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                options.append(pattern[last:i])
                prefix, suffix = pattern[:start], pattern[i + 1:]
                expanded: List[str] = []
                for option in options:
                    expanded.extend(expand_braces(prefix + option + suffix))
                return expanded
        elif ch == "," and depth == 1:
            options.append(pattern[last:i])
            last = i + 1

    # Unbalanced brace: treat literally
    return [pattern]


def _match_segments(pattern: Sequence[str], parts: Sequence[str]) -> bool:
    if not pattern:
        return not parts
    head = pattern[0]
    if head == "**":
        rest = pattern[1:]
        # ** swallows zero or more segments
        return any(_match_segments(rest, parts[i:]) for i in range(len(parts) + 1))
    if not parts:
        return False
    return fnmatch.fnmatchcase(parts[0], head) and _match_segments(pattern[1:], parts[1:])


def glob_match(pattern: str, path: str) -> bool:
    """Check whether a ``/``-separated path matches a glob pattern."""
    parts = [p for p in PurePosixPath(to_posix(path)).parts if p != "/"]
    for alternative in expand_braces(pattern):
        segments = [s for s in alternative.split("/") if s]
        if _match_segments(segments, parts):
            return True
    return False
