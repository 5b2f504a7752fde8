"""ASCII charts for the training view."""

from __future__ import annotations

from math import ceil, floor, isfinite
from typing import Sequence

LINE_SYMBOLS = ("┼", "┤", "─", "╰", "╭", "╮", "╯", "│")
SPARK_BLOCKS = "▁▂▃▄▅▆▇█"


def plot(series: Sequence[float], *, height: int = 6, offset: int = 10, label_format: str = "{:8.4f} ") -> str:
    """Draw ``series`` as a line chart with a labelled y axis.

    Non-finite values are skipped. Returns an empty string when there is
    nothing to draw.
    """
    values = [float(v) for v in series if v is not None and isfinite(v)]
    if not values:
        return ""

    minimum = min(values)
    maximum = max(values)
    interval = maximum - minimum
    ratio = height / interval if interval > 0 else 1.0

    low = int(floor(minimum * ratio))
    high = int(ceil(maximum * ratio))
    rows = max(high - low, 0)
    width = len(values) + offset
    grid = [[" "] * width for _ in range(rows + 1)]

    def scaled(y: float) -> int:
        return int(round(min(max(y, minimum), maximum) * ratio) - low)

    for y in range(low, high + 1):
        label = label_format.format(maximum - ((y - low) * interval / (rows or 1)))
        row = grid[y - low]
        for i, ch in enumerate(label[: offset - 1]):
            row[i] = ch
        row[offset - 1] = LINE_SYMBOLS[1]

    grid[rows - scaled(values[0])][offset - 1] = LINE_SYMBOLS[0]

    for x in range(len(values) - 1):
        y0 = scaled(values[x])
        y1 = scaled(values[x + 1])
        if y0 == y1:
            grid[rows - y0][x + offset] = LINE_SYMBOLS[2]
            continue
        grid[rows - y1][x + offset] = LINE_SYMBOLS[3] if y0 > y1 else LINE_SYMBOLS[4]
        grid[rows - y0][x + offset] = LINE_SYMBOLS[5] if y0 > y1 else LINE_SYMBOLS[6]
        for y in range(min(y0, y1) + 1, max(y0, y1)):
            grid[rows - y][x + offset] = LINE_SYMBOLS[7]

    return "\n".join("".join(row).rstrip() for row in grid)


def sparkline(series: Sequence[float], width: int = 40) -> str:
    """One-line block sparkline of the last ``width`` finite values."""
    values = [float(v) for v in series if v is not None and isfinite(v)][-width:]
    if not values:
        return ""
    low, high = min(values), max(values)
    span = high - low
    if span == 0:
        return SPARK_BLOCKS[0] * len(values)
    top = len(SPARK_BLOCKS) - 1
    return "".join(SPARK_BLOCKS[round((v - low) / span * top)] for v in values)
