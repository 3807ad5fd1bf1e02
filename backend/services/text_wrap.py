"""
Greedy word wrapping against real glyph widths.
"""
from typing import List, Protocol

from reportlab.pdfbase import pdfmetrics


class FontMetrics(Protocol):
    def width_of(self, text: str, size: float) -> float:
        ...


class StandardFont:
    """One of the PDF standard Type 1 fonts, measured with reportlab's AFM tables."""

    def __init__(self, name: str = "Helvetica"):
        self.name = name

    def width_of(self, text: str, size: float) -> float:
        return pdfmetrics.stringWidth(text, self.name, size)

    def __repr__(self) -> str:
        return f"StandardFont({self.name!r})"


def wrap_text(text: str, font: FontMetrics, size: float, max_width: float) -> List[str]:
    """
    Pack words into lines no wider than `max_width` at `size`.

    Words are never split: a word that is wider than the line on its own
    gets a line to itself.
    """
    lines: List[str] = []
    current = ""
    for word in (text or "").split():
        candidate = f"{current} {word}" if current else word
        if current and font.width_of(candidate, size) > max_width:
            lines.append(current)
            current = word
        else:
            current = candidate
    if current:
        lines.append(current)
    return lines
