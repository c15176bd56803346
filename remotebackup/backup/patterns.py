"""
rsync exclude-format pattern lists.

Exclude and incremental lists are plain files in rsync ``--exclude-from``
format. They are handed to rsync untouched, but the reconciliation step also
needs to decide locally whether an archived file belongs to the incremental
set, so this module implements the subset of rsync's matching rules that
such lists use:

- blank lines and lines starting with ``#`` or ``;`` are ignored
- a leading ``/`` anchors the pattern at the transfer root
- a trailing ``/`` only matches directories
- a pattern without ``/`` (or ``**``) matches the final path component
- ``*`` and ``?`` stop at ``/``, ``**`` does not
- rules are tried in order and the first match decides; a ``+ `` rule
  keeps the path, anything else excludes it
- a path is excluded when it, or any directory above it, is excluded
- a ``!`` line clears the rules read so far
"""

import re
from pathlib import PurePath
from typing import Iterable, List, Optional


def load_pattern_file(path) -> List[str]:
    """
    Read an rsync exclude-format file.

    Args:
        path: File to read

    Returns:
        List of patterns in file order, comments and blank lines removed
    """
    patterns = []
    with open(path, 'r', encoding='utf-8', errors='surrogateescape') as f:
        for line in f:
            line = line.rstrip('\r\n')
            if not line.strip() or line[0] in '#;':
                continue
            # Explicit exclude rule prefix
            if line.startswith('- '):
                line = line[2:]
            patterns.append(line)
    return patterns


def read_raw_lines(path) -> List[str]:
    """Return a pattern file's lines verbatim (used for the run report)."""
    with open(path, 'r', encoding='utf-8', errors='surrogateescape') as f:
        return f.read().splitlines()


def _translate(pattern: str) -> str:
    """Translate an rsync wildcard pattern into a regex fragment."""
    i, n = 0, len(pattern)
    out = []
    while i < n:
        c = pattern[i]
        if c == '*':
            if i + 1 < n and pattern[i + 1] == '*':
                out.append('.*')
                i += 2
                continue
            out.append('[^/]*')
        elif c == '?':
            out.append('[^/]')
        elif c == '[':
            j = pattern.find(']', i + 2)
            if j == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:j]
                if body.startswith('!'):
                    body = '^' + body[1:]
                out.append('[' + body.replace('\\', '\\\\') + ']')
                i = j
        else:
            out.append(re.escape(c))
        i += 1
    return ''.join(out)


class Pattern:
    """A single compiled rsync exclude pattern."""

    def __init__(self, pattern: str):
        self.raw = pattern
        self.include = False

        text = pattern
        if text.startswith('+ '):
            self.include = True
            text = text[2:]

        self.dir_only = text.endswith('/')
        text = text.rstrip('/')
        self.anchored = text.startswith('/')
        text = text.lstrip('/')

        self.whole_path = self.anchored or '/' in text or '**' in text
        body = _translate(text)
        if not text:
            self._regex = None
        elif self.anchored:
            self._regex = re.compile(f'^{body}$', re.DOTALL)
        elif self.whole_path:
            self._regex = re.compile(f'^(?:.*/)?{body}$', re.DOTALL)
        else:
            self._regex = re.compile(f'^{body}$', re.DOTALL)

    def matches(self, relpath: str, is_dir: bool = False) -> bool:
        """Match one path (no ancestor walk)."""
        if self._regex is None:
            return False
        if self.dir_only and not is_dir:
            return False
        subject = relpath if self.whole_path else relpath.rsplit('/', 1)[-1]
        return self._regex.match(subject) is not None

    def __repr__(self):
        return f'<Pattern {self.raw!r}>'


class PatternSet:
    """
    An ordered collection of rsync exclude patterns.

    ``matches()`` answers "would rsync have excluded this path with these
    patterns": walking down from the top, each directory and finally the
    path itself is checked against the rules in order, and the first rule
    that matches decides. An excluded directory excludes everything below it.
    """

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        self.patterns = []
        for p in patterns or []:
            if p.strip() == '!':
                self.patterns = []
                continue
            self.patterns.append(Pattern(p))

    @classmethod
    def from_file(cls, path) -> 'PatternSet':
        return cls(load_pattern_file(path))

    def __bool__(self):
        return bool(self.patterns)

    def __len__(self):
        return len(self.patterns)

    def _first_match(self, relpath: str, is_dir: bool) -> Optional[Pattern]:
        for p in self.patterns:
            if p.matches(relpath, is_dir):
                return p
        return None

    def matches(self, relpath, is_dir: bool = False) -> bool:
        """
        Check whether a path relative to the transfer root is covered.

        Args:
            relpath: Relative path (str or Path), '/'-separated
            is_dir: True if the path itself is a directory

        Returns:
            True if the path or one of its ancestors is excluded
        """
        if isinstance(relpath, PurePath):
            relpath = relpath.as_posix()
        parts = [p for p in relpath.strip('/').split('/') if p]
        if not parts:
            return False

        for depth in range(1, len(parts) + 1):
            candidate = '/'.join(parts[:depth])
            candidate_is_dir = depth < len(parts) or is_dir
            rule = self._first_match(candidate, candidate_is_dir)
            if rule is not None and not rule.include:
                return True
        return False
