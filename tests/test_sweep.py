from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

import utils
from utils import FitError, InvalidInput, SweepInput, fit_quality_sweep, parse_tau_grid


@pytest.fixture
def sweep_input() -> SweepInput:
    rng = np.random.default_rng(3)
    n = 900
    dates = pd.date_range("2004-01-01", periods=n, freq="D")
    deficit = np.cumsum(rng.normal(size=n)) + rng.gamma(2.0, 1.0, size=n)
    label = (rng.random(n) < 0.1).astype(int)
    return SweepInput(deficit=deficit, label=label, dates=dates)


def test_one_row_per_tau_in_grid_order(sweep_input):
    taus = [30.0, 1.0, 5.0, 120.0]
    table = fit_quality_sweep(sweep_input, taus)
    assert table.index.tolist() == taus
    assert list(table.columns) == ["rmse", "intercept", "slope", "n", "error"]
    assert table["rmse"].notna().all()
    assert (table["rmse"] >= 0).all()
    assert table["error"].isna().all()
    assert (table["n"] == len(sweep_input)).all()


def test_fit_error_for_one_tau_does_not_abort_sweep(sweep_input, monkeypatch, capsys):
    real_fit = utils.fit_logistic
    calls = {"n": 0}

    def flaky_fit(predictor, label, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise FitError("did not converge")
        return real_fit(predictor, label, **kwargs)

    monkeypatch.setattr(utils, "fit_logistic", flaky_fit)
    table = fit_quality_sweep(sweep_input, [2.0, 10.0, 40.0])

    assert table.index.tolist() == [2.0, 10.0, 40.0]
    assert np.isnan(table.loc[10.0, "rmse"])
    assert table.loc[10.0, "error"] == "did not converge"
    assert table.loc[[2.0, 40.0], "rmse"].notna().all()
    assert "[tau=10] Fit failed: did not converge" in capsys.readouterr().out


def test_all_zero_label_marks_every_tau_failed(sweep_input):
    data = SweepInput(deficit=sweep_input.deficit, label=np.zeros(len(sweep_input), dtype=int))
    table = fit_quality_sweep(data, [5.0, 50.0])
    assert table["rmse"].isna().all()
    assert table["error"].str.contains("single class").all()


def test_extreme_day_at_zero_deficit_marks_fit_failed():
    # Every label-0 day has zero deficit and one extreme day also sits at zero.
    deficit = np.concatenate([np.zeros(450), np.linspace(1.0, 5.0, 50)])
    label = np.concatenate([np.zeros(450, dtype=int), np.ones(50, dtype=int)])
    label[200] = 1
    table = fit_quality_sweep(SweepInput(deficit=deficit, label=label), [1.0, 5.0, 50.0])
    assert table["rmse"].isna().all()
    assert table["error"].str.contains("separates").all()


@pytest.mark.parametrize("taus", [[5.0, 0.0], [-3.0], [], [5.0, 5.0]])
def test_invalid_grid_aborts_before_any_fit(sweep_input, monkeypatch, taus):
    calls = []
    monkeypatch.setattr(utils, "fit_logistic", lambda *a, **k: calls.append(a))
    with pytest.raises(InvalidInput):
        fit_quality_sweep(sweep_input, taus)
    assert calls == []


def test_series_shorter_than_spinup_aborts():
    data = SweepInput(deficit=np.arange(100.0), label=np.array([0, 1] * 50))
    with pytest.raises(InvalidInput):
        fit_quality_sweep(data, [5.0])
    table = fit_quality_sweep(data, [5.0], spinup_days=50)
    assert len(table) == 1


def test_sweep_input_validation():
    with pytest.raises(InvalidInput):
        SweepInput(deficit=np.arange(10.0), label=np.zeros(9))
    with pytest.raises(InvalidInput):
        SweepInput(deficit=np.arange(3.0), label=np.array([0, 1, 3]))
    gappy = pd.DatetimeIndex(["2001-01-01", "2001-01-02", "2001-01-04"])
    with pytest.raises(InvalidInput):
        SweepInput(deficit=np.arange(3.0), label=np.array([0, 1, 0]), dates=gappy)


def test_sweep_input_from_frame():
    idx = pd.date_range("2001-01-01", periods=4, freq="D")
    df = pd.DataFrame({"cwd": [0.0, 1.0, 2.5, 0.0], "extreme": [False, True, False, False]}, index=idx)
    data = SweepInput.from_frame(df, deficit_col="cwd", label_col="extreme")
    assert data.dates.equals(idx)
    assert data.label.tolist() == [0, 1, 0, 0]
    assert data.predictor(1.0, spinup_days=0).index.equals(idx)
    with pytest.raises(InvalidInput):
        SweepInput.from_frame(df)


def test_parse_tau_grid():
    assert parse_tau_grid("5,10, 20") == [5.0, 10.0, 20.0]
    assert parse_tau_grid("5:25:5") == [5.0, 10.0, 15.0, 20.0, 25.0]
    assert parse_tau_grid("1:2:0.5") == [1.0, 1.5, 2.0]
    for bad in ("", "5:1:1", "1:10", "1,x"):
        with pytest.raises(InvalidInput):
            parse_tau_grid(bad)
