#!/usr/bin/env python3
from __future__ import annotations

import argparse
import csv
import datetime as dt
import os
import pathlib
import sys
import tempfile
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

# ========= palette =========
# tier 0 is always light gray (no / low activity)
PALETTE: Tuple[Tuple[int, int, int, int], ...] = (
    (235, 237, 240, 255),
    (155, 233, 168, 255),
    (64, 196, 99, 255),
    (48, 161, 78, 255),
    (33, 110, 57, 255),
)

MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
               "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

DATE_FORMAT = "%Y%m%d"


# ========= layout =========
@dataclass(frozen=True)
class Layout:
    cell_size: int = 20
    cell_gap: int = 2
    num_weeks: int = 53
    days_in_week: int = 7
    legend_width: int = 200
    title_height: int = 40
    month_height: int = 20
    palette: Tuple[Tuple[int, int, int, int], ...] = PALETTE
    title: str = "Tweet Activity Heatmap"
    title_anchor: Tuple[int, int] = (10, 25)
    font_family: str = "monospace"
    font_size: float = 9.0
    dpi: int = 100

    @property
    def pitch(self) -> int:
        return self.cell_size + self.cell_gap

    @property
    def grid_width(self) -> int:
        return self.cell_size * self.num_weeks + self.cell_gap * (self.num_weeks - 1)

    @property
    def width(self) -> int:
        return self.grid_width + self.legend_width

    @property
    def height(self) -> int:
        return (self.cell_size * self.days_in_week
                + self.cell_gap * (self.days_in_week - 1)
                + self.title_height + self.month_height)

    @property
    def legend_origin(self) -> Tuple[int, int]:
        return self.grid_width + 10, self.title_height + self.month_height + 10

    def cell_origin(self, week: int, day: int) -> Tuple[int, int]:
        x = week * self.pitch
        y = day * self.pitch + self.title_height + self.month_height
        return x, y


DEFAULT_LAYOUT = Layout()


# ========= errors =========
class HeatmapError(Exception):
    """Base class for heatmap failures."""


class ParseError(HeatmapError, ValueError):
    """Raised when a CSV row has a malformed date, count or column layout."""


class PreconditionError(HeatmapError):
    """Raised when there are no records, or the last date leaves no room for the window."""


class ThresholdIndexError(HeatmapError, IndexError):
    """Raised when a legend label needs a threshold the sequence does not have."""


# ========= csv =========
@dataclass(frozen=True)
class DailyRecord:
    date: dt.date
    count: int


def parse_date(raw: str) -> dt.date:
    s = (raw or "").strip()
    if len(s) != 8 or not (s.isascii() and s.isdigit()):
        raise ValueError(f"expected YYYYMMDD, got {raw!r}")
    return dt.datetime.strptime(s, DATE_FORMAT).date()


def parse_count(raw: str) -> int:
    # plain ASCII digits only: no sign, padding or underscores
    if not raw or not (raw.isascii() and raw.isdigit()):
        raise ValueError(f"expected a non-negative base-10 integer, got {raw!r}")
    return int(raw, 10)


def read_daily_records(path: pathlib.Path) -> List[DailyRecord]:
    """
    expected columns (header row is skipped, whatever it says):
      date (YYYYMMDD), count
    rows are returned in file order; duplicates and out-of-window dates are kept.
    """
    path = pathlib.Path(path)
    records: List[DailyRecord] = []

    with path.open("r", encoding="utf-8", newline="") as f:
        r = csv.reader(f)
        try:
            if next(r, None) is None:
                raise OSError(f"{path}: empty file (no header row)")

            for row in r:
                if not row:
                    continue
                records.append(parse_row(row, f"{path}:{r.line_num}"))
        except (csv.Error, UnicodeDecodeError) as e:
            raise ParseError(f"{path}:{r.line_num}: unreadable row: {e}") from e

    return records


def parse_row(row: Sequence[str], where: str) -> DailyRecord:
    if len(row) < 2:
        raise ParseError(f"{where}: missing column (got {len(row)})")
    if len(row) > 2:
        raise ParseError(f"{where}: unexpected column (got {len(row)})")

    try:
        date = parse_date(row[0])
    except ValueError as e:
        raise ParseError(f"{where}: bad date: {e}") from e
    try:
        count = parse_count(row[1])
    except ValueError as e:
        raise ParseError(f"{where}: bad count: {e}") from e

    return DailyRecord(date=date, count=count)


# ========= thresholds =========
def calculate_thresholds(counts: Iterable[int], tiers: int = len(PALETTE)) -> List[int]:
    """
    boundary i = ceil(max * (i + 1) / tiers), i in 0..tiers-2
    only the maximum matters; empty input -> all zeros
    """
    counts = sorted(counts)
    if not counts:
        return [0] * (tiers - 1)

    max_count = counts[-1]
    return [-(-max_count * (i + 1) // tiers) for i in range(tiers - 1)]


def tier_for(count: int, thresholds: Sequence[int]) -> int:
    for i, threshold in enumerate(thresholds):
        if count <= threshold:
            return i
    return len(thresholds)


# ========= grid =========
def build_count_index(records: Iterable[DailyRecord]) -> Dict[dt.date, int]:
    # later rows overwrite earlier ones for the same date
    return {rec.date: rec.count for rec in records}


def window_start(last_date: dt.date) -> dt.date:
    """One year before last_date, plus one day."""
    try:
        prior = last_date.replace(year=last_date.year - 1)
    except ValueError:
        # Feb 29 -> Mar 1 of the previous year
        prior = dt.date(last_date.year - 1, 3, 1)
    return prior + dt.timedelta(days=1)


def build_cell_frame(
    start: dt.date,
    index: Dict[dt.date, int],
    thresholds: Sequence[int],
    layout: Layout = DEFAULT_LAYOUT,
) -> pd.DataFrame:
    """
    one row per calendar cell, week-major:
      week, day, date, count, tier, x, y
    """
    rows: List[Dict[str, object]] = []
    for week in range(layout.num_weeks):
        for day in range(layout.days_in_week):
            date = start + dt.timedelta(days=week * 7 + day)
            count = index.get(date, 0)
            x, y = layout.cell_origin(week, day)
            rows.append({
                "week": week,
                "day": day,
                "date": date,
                "count": count,
                "tier": tier_for(count, thresholds),
                "x": x,
                "y": y,
            })
    return pd.DataFrame(rows)


def new_canvas(layout: Layout = DEFAULT_LAYOUT) -> np.ndarray:
    return np.full((layout.height, layout.width, 4), 255, dtype=np.uint8)


def fill_rect(canvas: np.ndarray, x: int, y: int, w: int, h: int, color: Sequence[int]) -> None:
    canvas[y:y + h, x:x + w] = color


def paint_cells(canvas: np.ndarray, cells: pd.DataFrame, layout: Layout = DEFAULT_LAYOUT) -> None:
    for cell in cells.itertuples(index=False):
        fill_rect(canvas, cell.x, cell.y, layout.cell_size, layout.cell_size,
                  layout.palette[cell.tier])


# ========= annotations =========
def month_label_positions(start: dt.date, layout: Layout = DEFAULT_LAYOUT) -> List[Tuple[int, str]]:
    """
    (week, month abbreviation) for every week whose start date falls in a
    different month than the previous one seen. The month the window opens
    in is never labeled.
    """
    out: List[Tuple[int, str]] = []
    current = start.month
    for week in range(layout.num_weeks):
        date = start + dt.timedelta(days=week * 7)
        if date.month != current:
            current = date.month
            out.append((week, MONTH_NAMES[current - 1]))
    return out


def legend_label(tier: int, thresholds: Sequence[int], tiers: int = len(PALETTE)) -> str:
    if tier == 0:
        return "0"

    if tier - 1 >= len(thresholds):
        raise ThresholdIndexError(f"index out of range for thresholds: {tier - 1}")
    if tier == tiers - 1:
        return f"{thresholds[tier - 1] + 1}+"

    if tier >= len(thresholds):
        raise ThresholdIndexError(f"index out of range for thresholds: {tier}")
    return f"{thresholds[tier - 1] + 1}-{thresholds[tier]}"


def legend_labels(thresholds: Sequence[int], tiers: int = len(PALETTE)) -> List[str]:
    return [legend_label(i, thresholds, tiers) for i in range(tiers)]


def paint_legend_swatches(canvas: np.ndarray, layout: Layout = DEFAULT_LAYOUT) -> None:
    lx, ly = layout.legend_origin
    for i, color in enumerate(layout.palette):
        fill_rect(canvas, lx, ly + i * 30, 20, 20, color)


def canvas_figure(canvas: np.ndarray, layout: Layout = DEFAULT_LAYOUT):
    fig = plt.figure(
        figsize=(layout.width / layout.dpi, layout.height / layout.dpi),
        dpi=layout.dpi,
        facecolor="white",
    )
    fig.figimage(canvas, xo=0, yo=0, origin="upper")
    return fig


def draw_text(fig, x: int, y: int, text: str, layout: Layout = DEFAULT_LAYOUT) -> None:
    """x, y: left end of the baseline, in pixels from the top-left corner."""
    fig.text(
        x / layout.width,
        1.0 - y / layout.height,
        text,
        ha="left",
        va="baseline",
        color="black",
        fontfamily=layout.font_family,
        fontsize=layout.font_size,
    )


def draw_title(fig, layout: Layout = DEFAULT_LAYOUT) -> None:
    x, y = layout.title_anchor
    draw_text(fig, x, y, layout.title, layout)


def draw_month_labels(fig, positions: Sequence[Tuple[int, str]], layout: Layout = DEFAULT_LAYOUT) -> None:
    y = layout.title_height + 15
    for week, name in positions:
        draw_text(fig, week * layout.pitch, y, name, layout)


def draw_legend_labels(fig, labels: Sequence[str], layout: Layout = DEFAULT_LAYOUT) -> None:
    lx, ly = layout.legend_origin
    for i, label in enumerate(labels):
        draw_text(fig, lx + 30, ly + i * 30 + 15, label, layout)


# ========= render =========
def render_heatmap(records: Sequence[DailyRecord], layout: Layout = DEFAULT_LAYOUT):
    """
    records -> thresholds -> painted cells -> annotations.
    The window is anchored on the last record in file order.
    """
    if not records:
        raise PreconditionError("no records: nothing to anchor the calendar window on")

    tiers = len(layout.palette)
    index = build_count_index(records)
    thresholds = calculate_thresholds((rec.count for rec in records), tiers)
    labels = legend_labels(thresholds, tiers)

    try:
        start = window_start(records[-1].date)
        cells = build_cell_frame(start, index, thresholds, layout)
        months = month_label_positions(start, layout)
    except (OverflowError, ValueError) as e:
        raise PreconditionError(
            f"last record {records[-1].date} leaves no room for a {layout.num_weeks}-week window: {e}"
        ) from e

    canvas = new_canvas(layout)
    paint_cells(canvas, cells, layout)
    paint_legend_swatches(canvas, layout)

    fig = canvas_figure(canvas, layout)
    draw_title(fig, layout)
    draw_month_labels(fig, months, layout)
    draw_legend_labels(fig, labels, layout)
    return fig


# ========= png =========
def current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def save_png(fig, out_png: pathlib.Path) -> None:
    """Encode fig to out_png; the target is only replaced once encoding succeeded."""
    out_png = pathlib.Path(out_png)
    tmp_name: Optional[str] = None
    try:
        with tempfile.NamedTemporaryFile(
            dir=out_png.parent, prefix=f".{out_png.name}.", suffix=".tmp", delete=False
        ) as f:
            tmp_name = f.name
            try:
                fig.savefig(f, format="png", dpi=fig.dpi, facecolor="white")
            except (ValueError, RuntimeError) as e:
                raise OSError(f"{out_png}: PNG encoding failed: {e}") from e
        # temp files are created 0600
        os.chmod(tmp_name, 0o666 & ~current_umask())
        os.replace(tmp_name, out_png)
        tmp_name = None
    finally:
        plt.close(fig)
        if tmp_name is not None:
            pathlib.Path(tmp_name).unlink(missing_ok=True)


# ========= main =========
def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Render a calendar heatmap PNG from daily tweet counts.")
    ap.add_argument("input_csv", type=pathlib.Path, help="CSV with a header row, then date (YYYYMMDD),count rows")
    ap.add_argument("output_png", type=pathlib.Path, help="where to write the PNG")
    args = ap.parse_args(argv)

    try:
        records = read_daily_records(args.input_csv)
        fig = render_heatmap(records)
        save_png(fig, args.output_png)
    except (HeatmapError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    print("Heatmap generated successfully:", args.output_png)
    return 0


if __name__ == "__main__":
    sys.exit(main())
