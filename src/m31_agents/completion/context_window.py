"""Bounded prompt assembly around the cursor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

__all__ = ["ContextWindow", "ContextWindowBuilder"]


@dataclass(slots=True, frozen=True)
class ContextWindow:
    """Text surrounding the cursor, split at the cursor position."""

    header: str
    prefix_text: str
    line_prefix: str
    suffix: str
    start_line: int
    end_line: int

    @property
    def prompt(self) -> str:
        body = self.prefix_text + self.suffix
        if self.header:
            return f"{self.header}\n\n{body}"
        return body

    @property
    def is_empty(self) -> bool:
        return not self.line_prefix.strip()


class ContextWindowBuilder:
    """Builds a :class:`ContextWindow` from document lines.

    The window covers ``lines_before`` lines above the cursor and
    ``lines_after`` lines below it. The cursor line is split at the cursor
    column: the part before it ends ``prefix_text`` and the part after it
    starts ``suffix``, so no text appears in both.
    """

    def __init__(self, *, lines_before: int = 10, lines_after: int = 5) -> None:
        if lines_before < 0 or lines_after < 0:
            raise ValueError("lines_before and lines_after must be non-negative")
        self.lines_before = lines_before
        self.lines_after = lines_after

    def build(
        self,
        lines: Sequence[str],
        line: int,
        column: int,
        *,
        header: str | None = None,
    ) -> ContextWindow:
        header = header or ""
        if not lines:
            return ContextWindow(header="", prefix_text="", line_prefix="", suffix="", start_line=0, end_line=0)

        last_line = len(lines) - 1
        line = min(max(0, line), last_line)
        current = lines[line]
        column = min(max(0, column), len(current))

        start_line = max(0, line - self.lines_before)
        end_line = min(last_line, line + self.lines_after)
        line_prefix = current[:column]

        before = [f"{lines[index]}\n" for index in range(start_line, line)]
        after = [current[column:]]
        after.extend(lines[index] for index in range(line + 1, end_line + 1))

        return ContextWindow(
            header=header,
            prefix_text="".join(before) + line_prefix,
            line_prefix=line_prefix,
            suffix="\n".join(after),
            start_line=start_line,
            end_line=end_line,
        )
