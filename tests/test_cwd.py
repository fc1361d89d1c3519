from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from utils import CWD_EVENT_COLUMNS, InvalidInput, compute_cwd


def _series(values, start="2001-01-01") -> pd.Series:
    idx = pd.date_range(start, periods=len(values), freq="D")
    return pd.Series(values, index=idx, dtype=float)


def test_accumulation_drop_and_termination():
    wbal = _series([1, -1, -2, 1, 1, 5, -1, 2])
    daily, events = compute_cwd(wbal)

    np.testing.assert_allclose(daily["deficit"].to_numpy(), [0, 1, 3, 2, 1, 0, 1, 0])
    assert daily["event_id"].tolist() == [pd.NA, 0, 0, 0, 0, pd.NA, 1, pd.NA]
    assert daily["dday"].tolist() == [pd.NA, 1, 2, 3, 4, pd.NA, 1, pd.NA]

    assert list(events.columns) == CWD_EVENT_COLUMNS
    assert events["idx_start"].tolist() == [1, 6]
    assert events["idx_drop"].tolist() == [3, 7]
    assert events["len"].tolist() == [2, 1]
    assert events["deficit"].tolist() == [3.0, 1.0]
    assert events["date_start"].tolist() == [wbal.index[1], wbal.index[6]]
    assert events["date_end"].tolist() == [wbal.index[2], wbal.index[6]]


def test_reset_day_starts_new_event():
    wbal = _series([-1, -1, -1, -1])  # 1-4 Jan; Jan 3 is day-of-year 3
    daily, events = compute_cwd(wbal, doy_reset=3)

    np.testing.assert_allclose(daily["deficit"].to_numpy(), [1, 2, 1, 2])
    assert daily["event_id"].tolist() == [0, 0, 1, 1]
    assert events["idx_start"].tolist() == [0, 2]
    assert events["len"].tolist() == [2, 2]
    assert events["deficit"].tolist() == [2.0, 2.0]


def test_event_running_to_end_of_record():
    wbal = _series([2, -1, -1, 0.5])
    daily, events = compute_cwd(wbal)
    np.testing.assert_allclose(daily["deficit"].to_numpy(), [0, 1, 2, 1.5])
    assert events["idx_start"].tolist() == [1]
    # Drop day is found on the last day (1.5 < 0.9 * 2).
    assert events["idx_drop"].tolist() == [3]
    assert events["len"].tolist() == [2]


def test_partial_recovery_threshold():
    wbal = _series([-4, 3, -1])
    daily, events = compute_cwd(wbal, thresh_terminate=0.5)
    # 4 -> 1 falls below 0.5 * 4 and ends the event; day 2 starts a new one.
    np.testing.assert_allclose(daily["deficit"].to_numpy(), [4, 0, 1])
    assert events["idx_start"].tolist() == [0, 2]


def test_no_deficit_days():
    daily, events = compute_cwd(_series([0.0, 1.0, 2.0]))
    assert (daily["deficit"] == 0).all()
    assert daily["event_id"].isna().all()
    assert events.empty
    assert list(events.columns) == CWD_EVENT_COLUMNS


@pytest.mark.parametrize(
    "kwargs",
    [{"thresh_terminate": 1.0}, {"thresh_terminate": -0.1}, {"thresh_drop": 0.0}, {"thresh_drop": 1.5}],
)
def test_invalid_thresholds(kwargs):
    with pytest.raises(InvalidInput):
        compute_cwd(_series([-1.0, 1.0]), **kwargs)


def test_requires_dates_and_finite_values():
    with pytest.raises(InvalidInput):
        compute_cwd(pd.Series([-1.0, 1.0]))
    with pytest.raises(InvalidInput):
        compute_cwd(_series([-1.0, np.nan]))
