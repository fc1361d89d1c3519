from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable
import warnings

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.signal import lfilter
from statsmodels.tools.sm_exceptions import PerfectSeparationError, PerfectSeparationWarning


DEFAULT_SPINUP_DAYS = 365

# CWD defaults: terminate once the deficit is fully recovered, drop day at 90%
# of the event maximum, no calendar reset (no day-of-year equals 999).
DEFAULT_CWD_THRESH_TERMINATE = 0.0
DEFAULT_CWD_THRESH_DROP = 0.9
DEFAULT_CWD_DOY_RESET = 999

EVENT_COLUMNS = ["idx_start", "len", "date_start", "date_end"]
CWD_EVENT_COLUMNS = EVENT_COLUMNS + ["idx_drop", "deficit"]


class InvalidInput(ValueError):
    """Malformed input; the computation cannot proceed."""


class FitError(RuntimeError):
    """The logistic fit failed for one predictor series."""


def check_daily_contiguous(index: pd.Index) -> None:
    """Raise InvalidInput unless `index` is a gap-free, duplicate-free daily DatetimeIndex."""
    if not isinstance(index, pd.DatetimeIndex):
        raise InvalidInput("Expected a DatetimeIndex of daily dates")
    if len(index) == 0:
        raise InvalidInput("Empty date index")
    if index.has_duplicates:
        dups = index[index.duplicated()].unique()
        raise InvalidInput(f"Duplicate dates in series (first: {dups[0].date()})")
    if not index.is_monotonic_increasing:
        raise InvalidInput("Dates are not sorted")

    expected = pd.date_range(index[0], index[-1], freq="D")
    if len(expected) != len(index) or not expected.equals(index):
        missing = expected.difference(index)
        first = missing[0].date() if len(missing) else None
        raise InvalidInput(
            f"Series is not contiguous daily data: {len(missing)} missing day(s) (first: {first})"
        )


def load_daily_dataset(
    path: str | Path,
    *,
    date_col: str = "date",
    columns: Iterable[str] | None = None,
) -> pd.DataFrame:
    """Load a daily catchment table from CSV, indexed by date.

    The date column is parsed, sorted and used as the index (named "date").
    The result must cover every day between its first and last date.
    If `columns` is given, those columns must be present.
    """
    df = pd.read_csv(path)
    if date_col not in df.columns:
        raise InvalidInput(f"{path}: missing date column '{date_col}'")

    df[date_col] = pd.to_datetime(df[date_col])
    df = df.sort_values(date_col).set_index(date_col)
    df.index.name = "date"

    if columns is not None:
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise InvalidInput(f"{path}: missing column(s) {missing}")

    check_daily_contiguous(df.index)
    return df


def low_flow_indicator(flow_ratio: pd.Series) -> pd.Series:
    """True on days where the flow ratio is below zero (NaN counts as False)."""
    s = pd.Series(flow_ratio)
    out = s.lt(0).astype(bool)
    out.name = "label"
    return out


def _as_float_array(v, *, name: str) -> np.ndarray:
    x = np.asarray(v, dtype="float64")
    if x.ndim != 1:
        raise InvalidInput(f"{name} must be one-dimensional, got shape {x.shape}")
    if x.size == 0:
        raise InvalidInput(f"{name} is empty")
    if not np.all(np.isfinite(x)):
        raise InvalidInput(f"{name} contains missing or non-finite values")
    return x


def _check_tau(tau: float) -> float:
    try:
        tau = float(tau)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"tau must be a number, got {tau!r}") from e
    if not np.isfinite(tau) or tau <= 0:
        raise InvalidInput(f"tau must be positive and finite, got {tau}")
    return tau


def _event_table(index: pd.Index, starts: np.ndarray, stops: np.ndarray) -> pd.DataFrame:
    starts = np.asarray(starts, dtype=int)
    stops = np.asarray(stops, dtype=int)
    return pd.DataFrame(
        {
            "idx_start": starts,
            "len": stops - starts,
            "date_start": index[starts],
            "date_end": index[stops - 1],
        },
        columns=EVENT_COLUMNS,
    )


def find_consecutive_runs(
    flags: pd.Series,
    *,
    merge_gap: int = 0,
    min_length: int = 1,
) -> pd.DataFrame:
    """Find runs of consecutive True values.

    Runs separated by fewer than `merge_gap` False days are merged into one
    (the merged run spans the gap). Runs shorter than `min_length` days are
    dropped afterwards. NaN counts as False.

    Returns a DataFrame with `idx_start`, `len`, `date_start`, `date_end`.
    """
    if int(merge_gap) < 0:
        raise InvalidInput(f"merge_gap must be >= 0, got {merge_gap}")
    if int(min_length) < 1:
        raise InvalidInput(f"min_length must be >= 1, got {min_length}")

    s = pd.Series(flags)
    on = s.eq(1).fillna(False).to_numpy(dtype=bool)

    padded = np.concatenate([[0], on.astype(np.int8), [0]])
    edges = np.flatnonzero(np.diff(padded))
    starts, stops = edges[0::2], edges[1::2]

    if int(merge_gap) > 0 and len(starts) > 1:
        gaps = starts[1:] - stops[:-1]
        opens = np.concatenate([[True], gaps >= int(merge_gap)])
        closes = np.concatenate([opens[1:], [True]])
        starts, stops = starts[opens], stops[closes]

    keep = (stops - starts) >= int(min_length)
    return _event_table(s.index, starts[keep], stops[keep])


def compute_cwd(
    wbal: pd.Series,
    *,
    thresh_terminate: float = DEFAULT_CWD_THRESH_TERMINATE,
    thresh_drop: float = DEFAULT_CWD_THRESH_DROP,
    doy_reset: int = DEFAULT_CWD_DOY_RESET,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Cumulative water deficit from a daily water balance (P - ET).

    An event starts on a day with negative balance. The deficit then
    accumulates day by day (deficit -= balance) until it falls below
    `thresh_terminate` times the event maximum, or until the day of year
    equals `doy_reset`. The event length runs to the first day on which the
    deficit fell below `thresh_drop` times the running maximum.

    Returns
    - daily: DataFrame (same index) with `deficit`, `event_id`, `dday`
    - events: DataFrame with `idx_start`, `len`, `date_start`, `date_end`,
      `idx_drop`, `deficit` (event maximum)
    """
    s = pd.Series(wbal)
    if not isinstance(s.index, pd.DatetimeIndex):
        raise InvalidInput("compute_cwd expects a DatetimeIndex")
    if not 0.0 <= float(thresh_terminate) < 1.0:
        raise InvalidInput(f"thresh_terminate must be in [0, 1), got {thresh_terminate}")
    if not 0.0 < float(thresh_drop) <= 1.0:
        raise InvalidInput(f"thresh_drop must be in (0, 1], got {thresh_drop}")

    x = _as_float_array(s.to_numpy(), name="water balance")
    doy = s.index.dayofyear.to_numpy()
    n = len(x)

    deficit_out = np.zeros(n, dtype="float64")
    event_id = np.full(n, -1, dtype=int)
    dday = np.zeros(n, dtype=int)
    rows: list[dict[str, object]] = []

    idx = 0
    while idx < n:
        if x[idx] >= 0:
            idx += 1
            continue

        deficit = 0.0
        max_deficit = 0.0
        idx_drop: int | None = None
        iidx = idx
        while iidx < n:
            # The reset day opens a fresh accumulation.
            if iidx > idx and doy[iidx] == int(doy_reset):
                break

            deficit -= x[iidx]
            if deficit > max_deficit:
                max_deficit = deficit
                idx_drop = None
            if idx_drop is None and deficit < float(thresh_drop) * max_deficit:
                idx_drop = iidx
            if deficit < float(thresh_terminate) * max_deficit:
                break

            deficit_out[iidx] = deficit
            iidx += 1

        if idx_drop is None:
            idx_drop = iidx

        eid = len(rows)
        event_id[idx:iidx] = eid
        dday[idx:iidx] = np.arange(1, iidx - idx + 1)
        rows.append(
            {
                "idx_start": idx,
                "len": idx_drop - idx,
                "date_start": s.index[idx],
                "date_end": s.index[idx_drop - 1],
                "idx_drop": idx_drop,
                "deficit": float(max_deficit),
            }
        )
        idx = max(iidx, idx + 1)

    in_event = event_id >= 0
    daily = pd.DataFrame(
        {
            "deficit": deficit_out,
            "event_id": pd.Series(event_id, index=s.index, dtype="Int64").where(in_event),
            "dday": pd.Series(dday, index=s.index, dtype="Int64").where(in_event),
        },
        index=s.index,
    )
    events = pd.DataFrame(rows, columns=CWD_EVENT_COLUMNS)
    return daily, events


def low_pass_filter(v, tau: float):
    """Causal exponential smoothing with time constant `tau` (days).

    y[0] = v[0]; y[i] = y[i-1] + (v[i] - y[i-1]) / tau

    A pd.Series input keeps its index; anything else returns an ndarray.
    """
    tau = _check_tau(tau)
    x = _as_float_array(v, name="input series")

    a = 1.0 / tau
    # Initial state chosen so that y[0] == v[0].
    y, _ = lfilter([a], [1.0, -(1.0 - a)], x, zi=[(1.0 - a) * x[0]])

    if isinstance(v, pd.Series):
        return pd.Series(y, index=v.index, name=v.name)
    return y


def low_pass_filter_spinup(v, tau: float, *, spinup_days: int = DEFAULT_SPINUP_DAYS):
    """Low-pass filter warmed up on a copy of the first `spinup_days` values.

    The padded prefix is discarded, so the output aligns 1:1 with `v`.
    """
    spinup_days = int(spinup_days)
    if spinup_days < 0:
        raise InvalidInput(f"spinup_days must be >= 0, got {spinup_days}")

    x = _as_float_array(v, name="input series")
    if len(x) < spinup_days:
        raise InvalidInput(
            f"Series has {len(x)} values; spin-up needs at least {spinup_days}"
        )

    padded = np.concatenate([x[:spinup_days], x])
    y = low_pass_filter(padded, tau)[spinup_days:]

    if isinstance(v, pd.Series):
        return pd.Series(y, index=v.index, name=v.name)
    return y


@dataclass(frozen=True, eq=False)
class LogitFit:
    intercept: float
    slope: float
    rmse: float
    n: int
    probabilities: np.ndarray
    resid_deviance: np.ndarray


def _as_binary_label(label, *, n: int) -> np.ndarray:
    y = np.asarray(label)
    if y.ndim != 1:
        raise InvalidInput(f"label must be one-dimensional, got shape {y.shape}")
    if len(y) != n:
        raise InvalidInput(f"label has {len(y)} values but predictor has {n}")
    try:
        yf = y.astype("float64")
    except (TypeError, ValueError) as e:
        raise InvalidInput("label must be 0/1") from e
    if not np.all(np.isin(yf, (0.0, 1.0))):
        raise InvalidInput("label must contain only 0/1 (or False/True)")
    return yf.astype(int)


def _is_separated(x: np.ndarray, y: np.ndarray) -> bool:
    x0, x1 = x[y == 0], x[y == 1]
    return bool(x0.max() <= x1.min() or x1.max() <= x0.min())


def fit_logistic(predictor, label, *, maxiter: int = 100) -> LogitFit:
    """Fit P(label=1) = sigmoid(b0 + b1 * predictor) by maximum likelihood.

    Uses a binomial GLM (IRLS). The fit statistic is the RMS of the deviance
    residuals sign(y - p) * sqrt(-2 [y log p + (1 - y) log(1 - p)]).

    Raises FitError when no finite estimate exists (single-class label,
    constant predictor, complete separation) or the solver does not converge.
    """
    x = _as_float_array(predictor, name="predictor")
    y = _as_binary_label(label, n=len(x))

    n_pos = int(y.sum())
    if n_pos == 0 or n_pos == len(y):
        raise FitError(f"label has a single class ({n_pos} of {len(y)} positive)")
    if np.ptp(x) == 0:
        raise FitError("predictor is constant")
    if _is_separated(x, y):
        raise FitError("predictor separates the label (complete or quasi-complete)")

    exog = sm.add_constant(x, has_constant="add")
    model = sm.GLM(y, exog, family=sm.families.Binomial())
    with warnings.catch_warnings():
        warnings.simplefilter("error", PerfectSeparationWarning)
        try:
            res = model.fit(maxiter=int(maxiter))
        except (PerfectSeparationError, PerfectSeparationWarning, np.linalg.LinAlgError) as e:
            raise FitError(f"logistic solver failed: {e}") from e

    if not bool(res.converged):
        raise FitError(f"logistic solver did not converge in {maxiter} iterations")

    resid = np.asarray(res.resid_deviance, dtype="float64")
    params = np.asarray(res.params, dtype="float64")
    return LogitFit(
        intercept=float(params[0]),
        slope=float(params[1]),
        rmse=float(np.sqrt(np.mean(resid**2))),
        n=int(len(y)),
        probabilities=np.asarray(res.fittedvalues, dtype="float64"),
        resid_deviance=resid,
    )


@dataclass(frozen=True, eq=False)
class SweepInput:
    """Aligned daily deficit + 0/1 extreme-flow label."""

    deficit: np.ndarray
    label: np.ndarray
    dates: pd.DatetimeIndex | None = None

    def __post_init__(self) -> None:
        deficit = _as_float_array(self.deficit, name="deficit")
        label = _as_binary_label(self.label, n=len(deficit))
        if self.dates is not None:
            dates = pd.DatetimeIndex(self.dates)
            if len(dates) != len(deficit):
                raise InvalidInput(f"dates has {len(dates)} values but deficit has {len(deficit)}")
            check_daily_contiguous(dates)
            object.__setattr__(self, "dates", dates)
        object.__setattr__(self, "deficit", deficit)
        object.__setattr__(self, "label", label)

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        *,
        deficit_col: str = "deficit",
        label_col: str = "label",
    ) -> SweepInput:
        missing = [c for c in (deficit_col, label_col) if c not in df.columns]
        if missing:
            raise InvalidInput(f"DataFrame missing column(s) {missing}")
        dates = df.index if isinstance(df.index, pd.DatetimeIndex) else None
        return cls(
            deficit=df[deficit_col].to_numpy(dtype="float64"),
            label=df[label_col].to_numpy(),
            dates=dates,
        )

    def __len__(self) -> int:
        return len(self.deficit)

    def predictor(self, tau: float, *, spinup_days: int = DEFAULT_SPINUP_DAYS) -> pd.Series:
        """Smoothed deficit for one tau, indexed by date when dates are known."""
        y = low_pass_filter_spinup(self.deficit, tau, spinup_days=spinup_days)
        index = self.dates if self.dates is not None else pd.RangeIndex(len(y))
        return pd.Series(y, index=index, name=f"deficit_lp_tau{float(tau):g}")


def parse_tau_grid(s: str) -> list[float]:
    """Parse "5,10,20" or an inclusive range "start:stop:step" (e.g. "5:200:5")."""
    s = str(s).strip()
    if not s:
        raise InvalidInput("Empty tau grid")

    if ":" in s:
        parts = [p.strip() for p in s.split(":")]
        if len(parts) != 3:
            raise InvalidInput(f"Invalid tau range '{s}' (expected start:stop:step)")
        try:
            start, stop, step = (float(p) for p in parts)
        except ValueError as e:
            raise InvalidInput(f"Invalid tau range '{s}'") from e
        if step <= 0 or stop < start:
            raise InvalidInput(f"Invalid tau range '{s}'")
        n = int(np.floor((stop - start) / step + 1e-9)) + 1
        return [float(start + i * step) for i in range(n)]

    out: list[float] = []
    for part in s.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            out.append(float(part))
        except ValueError as e:
            raise InvalidInput(f"Invalid tau value '{part}'") from e
    return out


def fit_quality_sweep(
    data: SweepInput,
    taus: Iterable[float],
    *,
    spinup_days: int = DEFAULT_SPINUP_DAYS,
) -> pd.DataFrame:
    """Deviance-residual RMSE of the logistic fit for each tau.

    Returns a table indexed by tau (grid order) with `rmse`, `intercept`,
    `slope`, `n`, `error`. A tau whose fit fails keeps its row with NaN values
    and the error message; the sweep carries on. No tau is selected here.
    """
    grid = [_check_tau(t) for t in taus]
    if not grid:
        raise InvalidInput("Empty tau grid")
    if len(set(grid)) != len(grid):
        raise InvalidInput("Duplicate tau values in grid")
    if len(data) < int(spinup_days):
        raise InvalidInput(f"Series has {len(data)} values; spin-up needs at least {int(spinup_days)}")

    rows: list[dict[str, object]] = []
    for tau in grid:
        smoothed = data.predictor(tau, spinup_days=spinup_days)
        try:
            fit = fit_logistic(smoothed.to_numpy(), data.label)
        except FitError as e:
            print(f"[tau={tau:g}] Fit failed: {e}")
            rows.append(
                {
                    "tau": tau,
                    "rmse": float("nan"),
                    "intercept": float("nan"),
                    "slope": float("nan"),
                    "n": len(data),
                    "error": str(e),
                }
            )
            continue

        rows.append(
            {
                "tau": tau,
                "rmse": fit.rmse,
                "intercept": fit.intercept,
                "slope": fit.slope,
                "n": fit.n,
                "error": None,
            }
        )

    return pd.DataFrame(rows).set_index("tau")


def _finish_figure(fig, save_dir: Path | None, filename: str | None) -> Path | None:
    import matplotlib.pyplot as plt

    fig.tight_layout()
    if save_dir is None:
        plt.show()
        return None

    save_dir = Path(save_dir)
    save_dir.mkdir(parents=True, exist_ok=True)
    out = save_dir / (filename or "figure.png")
    fig.savefig(out, dpi=150)
    plt.close(fig)
    return out


def plot_events_overlay(
    deficit: pd.Series,
    *,
    flow_events: pd.DataFrame | None = None,
    cwd_events: pd.DataFrame | None = None,
    title: str = "",
    save_dir: Path | None = None,
    filename: str | None = None,
) -> Path | None:
    """Deficit trace with low-flow extremes shaded and CWD event spans marked."""
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(12, 4))
    ax.plot(deficit.index, deficit.values, linewidth=1, color="tab:brown", label="CWD")

    one_day = pd.Timedelta(days=1)
    if flow_events is not None:
        for i, ev in enumerate(flow_events.itertuples(index=False)):
            ax.axvspan(
                ev.date_start,
                ev.date_end + one_day,
                color="tab:blue",
                alpha=0.25,
                label="Low-flow extreme" if i == 0 else None,
            )

    if cwd_events is not None:
        y_bar = -0.05 * (float(np.nanmax(deficit.values)) or 1.0)
        for i, ev in enumerate(cwd_events.itertuples(index=False)):
            ax.hlines(
                y_bar,
                ev.date_start,
                ev.date_end + one_day,
                color="tab:red",
                linewidth=3,
                label="CWD event" if i == 0 else None,
            )

    ax.set_ylabel("Cumulative water deficit")
    ax.set_title(title)
    ax.legend(loc="upper left")
    return _finish_figure(fig, save_dir, filename)


def plot_smoothed_deficit(
    data: SweepInput,
    taus: Iterable[float],
    *,
    spinup_days: int = DEFAULT_SPINUP_DAYS,
    title: str = "",
    save_dir: Path | None = None,
    filename: str | None = None,
) -> Path | None:
    """Raw deficit with its low-pass filtered traces for `taus`; extreme-flow days marked."""
    import matplotlib.pyplot as plt

    index = data.dates if data.dates is not None else pd.RangeIndex(len(data))

    fig, ax = plt.subplots(figsize=(12, 4))
    ax.plot(index, data.deficit, linewidth=0.8, color="0.5", label="deficit")
    for tau in taus:
        s = data.predictor(tau, spinup_days=spinup_days)
        ax.plot(index, s.values, linewidth=1, label=f"tau={float(tau):g} d")

    hits = np.flatnonzero(data.label == 1)
    if len(hits):
        ax.scatter(index[hits], np.zeros(len(hits)), marker="|", color="tab:blue", label="extreme flow")

    ax.set_ylabel("Deficit")
    ax.set_title(title)
    ax.legend(loc="upper left")
    return _finish_figure(fig, save_dir, filename)


def plot_tau_sweep(
    table: pd.DataFrame,
    *,
    title: str = "",
    save_dir: Path | None = None,
    filename: str | None = None,
) -> Path | None:
    """tau vs deviance-residual RMSE; failed taus show as gaps."""
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(table.index.to_numpy(dtype=float), table["rmse"].to_numpy(dtype=float), marker="o")
    ax.set_xlabel("tau (days)")
    ax.set_ylabel("Deviance residual RMSE")
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    return _finish_figure(fig, save_dir, filename)
