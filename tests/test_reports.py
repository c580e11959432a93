import csv
import json
import math

import numpy as np
import pandas as pd
import pytest

from occupancy_power import (
    EffectSizes,
    PowerResult,
    Scaling,
    SurveyDesign,
    generate_dataset,
    interpret,
    main,
    print_report,
    summarize,
    write_csv_report,
    write_json_report,
)


def make_result(**overrides):
    params = dict(
        n_sims=200,
        n_converged=190,
        alpha=0.05,
        power_time=0.85,
        power_treatment=0.9,
        power_treatment_omnibus=0.88,
        power_treatment_by_level={"OG": 0.7, "UP": 0.8},
        seed=42,
    )
    params.update(overrides)
    return PowerResult(**params)


def test_summarize_schema():
    summ = summarize(make_result())
    assert set(summ.keys()) == {"runs", "time", "treatment"}
    assert summ["runs"]["n_excluded"] == 10
    assert summ["time"]["power"] == 0.85
    assert summ["time"]["mc_se"] == pytest.approx(math.sqrt(0.85 * 0.15 / 190))
    assert set(summ["treatment"]) == {"any_level", "omnibus", "by_level"}
    assert set(summ["treatment"]["by_level"]) == {"OG", "UP"}


def test_write_reports(tmp_path):
    res = make_result()

    jpath = tmp_path / "summary.json"
    write_json_report(summarize(res), jpath)
    loaded = json.loads(jpath.read_text(encoding="utf-8"))
    assert loaded["runs"]["alpha"] == 0.05

    cpath = tmp_path / "power.csv"
    write_csv_report([(20, res), (40, make_result(power_time=0.95))], cpath)
    with cpath.open("r", encoding="utf-8") as f:
        reader = csv.reader(f)
        headers = next(reader)
        rows = list(reader)
    assert headers[:3] == ["sites_per_treatment", "n_sims", "n_converged"]
    assert headers[-2:] == ["power_OG", "power_UP"]
    assert len(rows) == 2
    assert float(rows[1][headers.index("power_time")]) == pytest.approx(0.95)


def test_print_report(capsys):
    print_report(make_result(), label="30 sites per treatment")
    out = capsys.readouterr().out
    assert "Power (30 sites per treatment)" in out
    assert "190/200 replicates converged (10 excluded)" in out
    assert "level OG" in out


def test_interpret_bands():
    assert interpret(0.9).startswith("Adequate")
    assert interpret(0.6).startswith("Marginal")
    assert interpret(0.1).startswith("Low")
    assert interpret(float("nan")).startswith("No converged")


def test_cli_manual_effects(tmp_path, capsys):
    jpath = tmp_path / "report.json"
    cpath = tmp_path / "report.csv"
    main([
        "--effects", "time=1.0,CC=0,OG=1,UP=-1,p=0.5",
        "--center", "2", "--scale", "1.5",
        "--sites_per_treatment", "20",
        "--n_sims", "4",
        "--seed", "3",
        "--log_level", "WARNING",
        "--report_json", str(jpath),
        "--report_csv", str(cpath),
    ])
    out = capsys.readouterr().out
    assert "Simulating 4 datasets" in out
    report = json.loads(jpath.read_text(encoding="utf-8"))
    assert report["design"]["treatments"] == ["CC", "OG", "UP"]
    assert report["scaling"] == {"center": 2.0, "scale": 1.5}
    assert report["results"][0]["sites_per_treatment"] == 20
    assert report["results"][0]["runs"]["n_sims"] == 4
    assert cpath.exists()


def write_records(path, seed=17):
    design = SurveyDesign(treatments=("CC", "OG", "UP"), time_points=(0, 1, 2, 3),
                          sites_per_treatment=30, n_surveys=3)
    effects = EffectSizes(beta_time=0.8, beta_treatment=(0.0, 0.8, -0.8), p_detect=0.5)
    data = generate_dataset(design, effects, Scaling(1.5, 1.12), rng=np.random.default_rng(seed))
    base = pd.Timestamp("2021-04-15")
    rows = []
    for i in range(data.n_units):
        trt = str(data.site_covs["treatment"].iloc[i])
        site = f"R{int(data.site_covs['replicate'].iloc[i]):02d}{trt}"
        day = base + pd.Timedelta(days=int(data.site_covs["time"].iloc[i] * 365))
        for j in range(data.n_visits):
            stamp = (day + pd.Timedelta(minutes=30 * j)).isoformat(sep=" ")
            rows.append((site, stamp, "BTNW" if data.y[i, j] else "AMRE"))
    pd.DataFrame(rows, columns=["location", "recording_date_time", "species_code"]).to_csv(path, index=False)
    return path


def test_cli_records_with_sweep(tmp_path, capsys):
    path = write_records(tmp_path / "records.csv")

    cpath = tmp_path / "curve.csv"
    main([
        "--records", str(path),
        "--species", "BTNW",
        "--time_points", "0,1,2,3",
        "--sweep_sites", "10,15",
        "--n_sims", "3",
        "--seed", "5",
        "--log_level", "WARNING",
        "--report_csv", str(cpath),
    ])
    out = capsys.readouterr().out
    assert "Occupancy model" in out
    assert "Power (10 sites per treatment)" in out
    assert "Power (15 sites per treatment)" in out
    with cpath.open("r", encoding="utf-8") as f:
        assert len(list(csv.reader(f))) == 3


def test_cli_requires_an_entry_point():
    with pytest.raises(SystemExit):
        main([])


def test_cli_manual_mode_requires_scaling():
    with pytest.raises(SystemExit):
        main(["--effects", "time=1,CC=0,OG=1,p=0.5"])


def test_cli_exits_when_records_fit_fails(tmp_path, capsys):
    path = write_records(tmp_path / "records.csv")
    jpath = tmp_path / "report.json"
    with pytest.raises(SystemExit) as excinfo:
        main([
            "--records", str(path),
            "--species", "NEVERSEEN",
            "--n_sims", "3",
            "--seed", "5",
            "--log_level", "WARNING",
            "--report_json", str(jpath),
        ])
    assert excinfo.value.code == 1
    assert "Simulating" not in capsys.readouterr().out
    assert not jpath.exists()
