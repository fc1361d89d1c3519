#!/usr/bin/env python3
"""Batch runner for the CWD / low-flow extremes notebook workflow.

Loads one daily catchment table and generates:
- event tables: low_flow_events.csv, cwd_events.csv
- daily_series.csv: flow ratio, water balance, label, deficit and the
  smoothed deficit for every tau in the grid
- tau_sweep.csv: deviance-residual RMSE of the logistic fit per tau
- figures: event overlay, smoothed deficit, tau vs RMSE

This script reuses the helper functions from notebooks/utils.py so results
match the interactive workflow. It does not pick a best tau.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd


# Allow importing notebooks/utils.py as `utils`
ROOT = Path(__file__).resolve().parents[1]
NOTEBOOKS_DIR = ROOT / "notebooks"
sys.path.insert(0, str(NOTEBOOKS_DIR))

from utils import (  # noqa: E402
    DEFAULT_CWD_DOY_RESET,
    DEFAULT_CWD_THRESH_DROP,
    DEFAULT_CWD_THRESH_TERMINATE,
    DEFAULT_SPINUP_DAYS,
    SweepInput,
    compute_cwd,
    find_consecutive_runs,
    fit_quality_sweep,
    load_daily_dataset,
    low_flow_indicator,
    parse_tau_grid,
    plot_events_overlay,
    plot_smoothed_deficit,
    plot_tau_sweep,
)


# Smoothed traces drawn in the overview figure (subset of the grid).
N_OVERVIEW_TAUS = 4


@dataclass(frozen=True)
class CwdParams:
    thresh_terminate: float
    thresh_drop: float
    doy_reset: int


def build_daily_frame(
    df: pd.DataFrame,
    *,
    flow_col: str,
    wbal_col: str,
    cwd: CwdParams,
    merge_gap: int,
    min_length: int,
) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """Derive label + CWD columns and the two event tables."""
    label = low_flow_indicator(df[flow_col])
    flow_events = find_consecutive_runs(label, merge_gap=int(merge_gap), min_length=int(min_length))

    cwd_daily, cwd_events = compute_cwd(
        df[wbal_col],
        thresh_terminate=float(cwd.thresh_terminate),
        thresh_drop=float(cwd.thresh_drop),
        doy_reset=int(cwd.doy_reset),
    )

    daily = pd.DataFrame(
        {
            flow_col: df[flow_col],
            wbal_col: df[wbal_col],
            "label": label.astype(int),
            "deficit": cwd_daily["deficit"],
            "cwd_event_id": cwd_daily["event_id"],
        },
        index=df.index,
    )
    return daily, flow_events, cwd_events


def _smoothed_columns(data: SweepInput, taus: list[float], *, spinup_days: int) -> pd.DataFrame:
    cols = {f"deficit_lp_tau{tau:g}": data.predictor(tau, spinup_days=spinup_days) for tau in taus}
    return pd.DataFrame(cols)


def _overview_taus(taus: list[float]) -> list[float]:
    if len(taus) <= N_OVERVIEW_TAUS:
        return list(taus)
    idx = np.linspace(0, len(taus) - 1, N_OVERVIEW_TAUS).round().astype(int)
    return [taus[i] for i in sorted(set(idx.tolist()))]


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Detect low-flow extremes + CWD events and sweep the deficit smoothing constant tau.",
    )

    p.add_argument("--data-csv", required=True, help="Daily catchment CSV")
    p.add_argument("--date-col", default="date")
    p.add_argument("--flow-col", default="flow_ratio", help="Flow ratio column (extreme when < 0)")
    p.add_argument("--wbal-col", default="wbal", help="Water balance column (P - ET)")

    # Sweep
    p.add_argument("--taus", default="5:200:5", help='Comma list ("5,10,20") or range "start:stop:step"')
    p.add_argument("--spinup-days", type=int, default=DEFAULT_SPINUP_DAYS)

    # Low-flow event detection
    p.add_argument("--event-merge-gap", type=int, default=0, help="Merge runs separated by fewer days")
    p.add_argument("--event-min-length", type=int, default=1)

    # CWD
    p.add_argument("--cwd-thresh-terminate", type=float, default=DEFAULT_CWD_THRESH_TERMINATE)
    p.add_argument("--cwd-thresh-drop", type=float, default=DEFAULT_CWD_THRESH_DROP)
    p.add_argument("--cwd-doy-reset", type=int, default=DEFAULT_CWD_DOY_RESET)

    p.add_argument(
        "--results-dir",
        default=str(ROOT / "notebooks" / "data" / "results"),
        help="CSV output dir (default: notebooks/data/results)",
    )
    p.add_argument(
        "--fig-dir",
        default=str(ROOT / "notebooks" / "figures"),
        help="Figure output dir (default: notebooks/figures)",
    )
    p.add_argument("--no-plots", action="store_true", help="Skip figure generation")

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_argparser().parse_args(argv)

    data_csv = Path(args.data_csv).expanduser().resolve()
    results_dir = Path(args.results_dir).expanduser().resolve()
    fig_dir = Path(args.fig_dir).expanduser().resolve()

    taus = parse_tau_grid(args.taus)
    cwd = CwdParams(
        thresh_terminate=float(args.cwd_thresh_terminate),
        thresh_drop=float(args.cwd_thresh_drop),
        doy_reset=int(args.cwd_doy_reset),
    )

    print(f"Loading {data_csv} …")
    df = load_daily_dataset(
        data_csv,
        date_col=str(args.date_col),
        columns=[str(args.flow_col), str(args.wbal_col)],
    )
    print(f"  {len(df)} days, {df.index[0].date()} → {df.index[-1].date()}")

    daily, flow_events, cwd_events = build_daily_frame(
        df,
        flow_col=str(args.flow_col),
        wbal_col=str(args.wbal_col),
        cwd=cwd,
        merge_gap=int(args.event_merge_gap),
        min_length=int(args.event_min_length),
    )
    n_pos = int(daily["label"].sum())
    print(f"  Extreme-flow days: {n_pos} ({100.0 * n_pos / len(daily):.2f}%)")
    print(f"  Low-flow events: {len(flow_events)}, CWD events: {len(cwd_events)}")

    data = SweepInput.from_frame(daily, deficit_col="deficit", label_col="label")

    print(f"Sweeping {len(taus)} tau value(s) …")
    table = fit_quality_sweep(data, taus, spinup_days=int(args.spinup_days))
    daily = daily.join(_smoothed_columns(data, taus, spinup_days=int(args.spinup_days)))

    results_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for name, frame, index in (
        ("low_flow_events.csv", flow_events, False),
        ("cwd_events.csv", cwd_events, False),
        ("daily_series.csv", daily, True),
        ("tau_sweep.csv", table, True),
    ):
        out = results_dir / name
        frame.to_csv(out, index=index)
        written.append(out)

    if not args.no_plots:
        plot_events_overlay(
            daily["deficit"],
            flow_events=flow_events,
            cwd_events=cwd_events,
            title=f"{data_csv.stem}: CWD and low-flow extremes",
            save_dir=fig_dir,
            filename=f"{data_csv.stem}_events_overlay.png",
        )
        plot_smoothed_deficit(
            data,
            _overview_taus(taus),
            spinup_days=int(args.spinup_days),
            title=f"{data_csv.stem}: low-pass filtered deficit",
            save_dir=fig_dir,
            filename=f"{data_csv.stem}_smoothed_deficit.png",
        )
        plot_tau_sweep(
            table,
            title=f"{data_csv.stem}: logistic fit quality vs tau",
            save_dir=fig_dir,
            filename=f"{data_csv.stem}_tau_sweep.png",
        )

    print(f"\nWrote {len(written)} CSV files to {results_dir}")
    if not args.no_plots:
        print(f"Figures in: {fig_dir}")

    n_ok = int(table["rmse"].notna().sum())
    if n_ok == 0:
        print("No tau produced a usable fit.")
        return 2
    print(f"Usable fits: {n_ok}/{len(table)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
