"""Editor-facing contracts consumed by the completion and command layers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence


@dataclass(slots=True, frozen=True)
class DocumentSnapshot:
    """Read-only view of the active document at the moment of a trigger."""

    lines: Sequence[str]
    language_id: str = "plaintext"
    uri: str | None = None
    cursor_line: int = 0
    cursor_column: int = 0
    selection: tuple[int, int] | None = None

    @classmethod
    def from_text(
        cls,
        text: str,
        *,
        language_id: str = "plaintext",
        uri: str | None = None,
        cursor: tuple[int, int] = (0, 0),
        selection: tuple[int, int] | None = None,
    ) -> "DocumentSnapshot":
        lines = text.split("\n") if text else []
        return cls(
            lines=tuple(lines),
            language_id=language_id,
            uri=uri,
            cursor_line=cursor[0],
            cursor_column=cursor[1],
            selection=selection,
        )

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    def selected_text(self) -> str:
        """Return the text covered by the ``(start, end)`` character offsets, if any."""

        if self.selection is None:
            return ""
        start, end = sorted(self.selection)
        return self.text[max(0, start) : max(0, end)]


class EditorAdapter(Protocol):
    """Minimal interface the application needs from a host editor."""

    def snapshot(self) -> DocumentSnapshot:
        ...

    def replace_selection(self, text: str) -> None:
        ...

    def show_info(self, message: str) -> None:
        ...

    def show_error(self, message: str) -> None:
        ...


__all__ = ["DocumentSnapshot", "EditorAdapter"]
