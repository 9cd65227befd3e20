"""Source file tracking and source-position reporting for the tree parser."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, replace
from typing import IO, Optional

from .util import FatalError, escape_path, join_path

__all__ = [
    "MAX_SRCFILE_DEPTH",
    "SourceFile",
    "SourcePosition",
    "SourceTracker",
]

MAX_SRCFILE_DEPTH = 200
_STDIN_NAME = "<stdin>"


def _dirname(path: str) -> Optional[str]:
    slash = path.rfind("/")
    return path[:slash] if slash >= 0 else None


@dataclass
class SourceFile:
    """State of one source file being read: name, directory and cursor."""

    name: Optional[str]
    dir: Optional[str] = None
    lineno: int = 1
    colno: int = 1
    prev: Optional["SourceFile"] = field(default=None, repr=False)
    stream: Optional[IO[bytes]] = field(default=None, repr=False, compare=False)
    tracker: Optional["SourceTracker"] = field(default=None, repr=False, compare=False)


@dataclass
class SourcePosition:
    """A span in a source file; positions may be chained through ``next``."""

    first_line: int = 0
    first_column: int = 0
    last_line: int = 0
    last_column: int = 0
    file: Optional[SourceFile] = None
    next: Optional["SourcePosition"] = None

    def copy(self) -> "SourcePosition":
        """Return a standalone copy carrying a snapshot of the file state."""
        if self.next is not None:
            raise ValueError("cannot copy a chained source position")
        snapshot = replace(self.file) if self.file is not None else None
        return replace(self, file=snapshot, next=None)

    def extend(self, newtail: Optional["SourcePosition"]) -> "SourcePosition":
        """Append *newtail* to the end of this chain and return the head."""
        last = self
        while last.next is not None:
            last = last.next
        last.next = newtail
        return self

    def describe(self) -> str:
        """Describe the span as ``file:line.col[-[line.]col]``."""
        fname = "<no-file>"
        if self.file is not None and self.file.name:
            fname = self.file.name
        if self.first_line != self.last_line:
            return (
                f"{fname}:{self.first_line}.{self.first_column}"
                f"-{self.last_line}.{self.last_column}"
            )
        if self.first_column != self.last_column:
            return f"{fname}:{self.first_line}.{self.first_column}-{self.last_column}"
        return f"{fname}:{self.first_line}.{self.first_column}"

    def _comment(self, first_line: bool, level: int) -> str:
        fresh = None
        if self.file is None:
            fname = "<no-file>"
        elif not self.file.name:
            fname = "<no-filename>"
        elif level > 1:
            fname = self.file.name
        else:
            if self.file.tracker is not None:
                fresh = self.file.tracker.shorten_to_initial_path(self.file.name)
            fname = fresh if fresh is not None else self.file.name

        if level > 1:
            text = (
                f"{fname}:{self.first_line}:{self.first_column}"
                f"-{self.last_line}:{self.last_column}"
            )
        else:
            text = f"{fname}:{self.first_line if first_line else self.last_line}"

        if self.next is not None:
            return f"{text}, {self.next._comment(first_line, level)}"
        return text

    def string_first(self, level: int) -> str:
        """Annotation text for the chain, using the first line of each span."""
        return self._comment(True, level)

    def string_last(self, level: int) -> str:
        """Annotation text for the chain, using the last line of each span."""
        return self._comment(False, level)

    def error_message(self, prefix: str, message: str) -> str:
        """Format a diagnostic line such as ``ERROR: file:1.2 message``."""
        return f"{prefix}: {self.describe()} {message}"


class SourceTracker:
    """Keeps the stack of open source files and the include search path."""

    def __init__(self, depfile: Optional[IO[str]] = None) -> None:
        self.depfile = depfile
        self.current: Optional[SourceFile] = None
        self.search_paths: list[str] = []
        self.depth = 0
        self.initial_path: Optional[str] = None
        self.initial_pathlen = 0
        self._initial_cpp = True

    def _set_initial_path(self, fname: str) -> None:
        self.initial_path = fname
        self.initial_pathlen = fname.count("/")

    def shorten_to_initial_path(self, fname: str) -> Optional[str]:
        """Express *fname* relative to the first file's directory, if they share one."""
        if self.initial_path is None:
            return None
        prevslash = None
        slashes = 0
        for index, (a, b) in enumerate(zip(fname, self.initial_path)):
            if a != b:
                break
            if a == "/":
                prevslash = index
                slashes += 1
        if prevslash is None:
            return None
        diff = self.initial_pathlen - slashes
        return "../" * diff + fname[prevslash + 1:]

    def add_search_path(self, dirname: str) -> None:
        """Append a directory to the include search path."""
        self.search_paths.append(dirname)

    def _candidates(self, fname: str):
        cur_dir = self.current.dir if self.current is not None else None
        for dirname in (cur_dir, *self.search_paths):
            if dirname is None or fname.startswith("/"):
                yield fname
            else:
                yield join_path(dirname, fname)

    def relative_open(self, fname: str) -> tuple[IO[bytes], str]:
        """Open *fname*, searching the current directory then the search path.

        Returns the open binary stream and the name it was found under.
        """
        if fname == "-":
            stream = sys.stdin.buffer
            fullname = _STDIN_NAME
        else:
            stream = None
            last_error: Optional[OSError] = None
            for candidate in self._candidates(fname):
                try:
                    stream = open(candidate, "rb")
                except OSError as exc:
                    last_error = exc
                    continue
                fullname = candidate
                break
            if stream is None:
                reason = os.strerror(last_error.errno) if last_error and last_error.errno else str(last_error)
                raise FatalError(f'Couldn\'t open "{fname}": {reason}')

        if self.depfile is not None:
            self.depfile.write(" " + escape_path(fullname))
        return stream, fullname

    def push(self, fname: str) -> SourceFile:
        """Open *fname* and make it the current source file."""
        if self.depth >= MAX_SRCFILE_DEPTH:
            raise FatalError("Includes nested too deeply")
        self.depth += 1
        stream, fullname = self.relative_open(fname)
        srcfile = SourceFile(
            name=fullname,
            dir=_dirname(fullname),
            prev=self.current,
            stream=stream,
            tracker=self,
        )
        self.current = srcfile
        if self.depth == 1:
            self._set_initial_path(fullname)
        return srcfile

    def pop(self) -> bool:
        """Close the current file; return whether an enclosing file remains."""
        srcfile = self.current
        if srcfile is None:
            raise RuntimeError("no source file is open")
        self.current = srcfile.prev
        if srcfile.stream is not None and srcfile.name != _STDIN_NAME:
            try:
                srcfile.stream.close()
            except OSError as exc:
                raise FatalError(f'Error closing "{srcfile.name}": {exc.strerror}') from exc
        return self.current is not None

    def update(self, pos: SourcePosition, text: str) -> None:
        """Advance the current file's cursor over *text*, recording the span in *pos*."""
        current = self.current
        if current is None:
            raise RuntimeError("no source file is open")
        pos.file = current
        pos.first_line = current.lineno
        pos.first_column = current.colno
        for char in text:
            if char == "\n":
                current.lineno += 1
                current.colno = 1
            else:
                current.colno += 1
        pos.last_line = current.lineno
        pos.last_column = current.colno

    def set_line(self, name: str, lineno: int) -> None:
        """Apply a line marker: the current input now comes from *name* at *lineno*."""
        current = self.current
        if current is None:
            raise RuntimeError("no source file is open")
        current.name = name
        current.lineno = lineno
        if self._initial_cpp:
            self._initial_cpp = False
            self._set_initial_path(name)