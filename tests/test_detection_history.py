import numpy as np
import pandas as pd
import pytest

from occupancy_power import (
    DAYS_PER_YEAR,
    DataIntegrityError,
    build_detection_history,
)


def make_records(rows=None):
    if rows is None:
        rows = [
            ("A01CC", "2020-05-01 05:00", "OVEN"),
            ("A01CC", "2020-05-01 05:00", "WIWA"),   # same recording, second species
            ("A01CC", "2020-05-01 06:00", "SWTH"),
            ("A01CC", "2021-05-03 05:10", "SWTH"),
            ("B02UP", "2020-06-01 07:00", "WIWA"),   # arrives before the earlier visits
            ("B02UP", "2020-06-01 05:00", "SWTH"),
            ("B02UP", "2020-06-01 05:30", "OVEN"),
            ("B02UP", "2022-06-01 05:00", "OVEN"),
            ("C03OG", "2021-05-02 05:00", "WIWA"),
        ]
    return pd.DataFrame(rows, columns=["location", "recording_date_time", "species_code"])


def test_one_row_per_site_date_and_max_visit_columns():
    h = build_detection_history(make_records(), "OVEN")
    assert h.y.shape == (5, 3)
    units = list(zip(h.site_covs["site"], h.site_covs["date"].dt.strftime("%Y-%m-%d")))
    assert units == [
        ("A01CC", "2020-05-01"),
        ("A01CC", "2021-05-03"),
        ("B02UP", "2020-06-01"),
        ("B02UP", "2022-06-01"),
        ("C03OG", "2021-05-02"),
    ]


def test_detections_zeros_and_missing_visits():
    h = build_detection_history(make_records(), "OVEN")
    expected = np.array([
        [1, 0, np.nan],
        [0, np.nan, np.nan],
        [0, 1, 0],          # ranked by time, not by arrival
        [1, np.nan, np.nan],
        [0, np.nan, np.nan],
    ])
    assert np.array_equal(h.y, expected, equal_nan=True)


def test_years_since_first_and_treatments():
    h = build_detection_history(make_records(), "OVEN")
    years = h.site_covs["years_since_first"].to_numpy()
    assert np.allclose(years, [0.0, 367 / DAYS_PER_YEAR, 0.0, 730 / DAYS_PER_YEAR, 0.0])
    assert list(h.site_covs["treatment"].astype(str)) == ["CC", "CC", "UP", "UP", "OG"]
    assert h.treatment_levels == ("CC", "OG", "UP")


def test_years_scaled_uses_returned_scaling():
    h = build_detection_history(make_records(), "OVEN")
    covs = h.site_covs
    assert np.allclose(h.scaling.transform(covs["years_since_first"]), covs["years_scaled"])
    assert np.allclose(h.scaling.inverse(covs["years_scaled"]), covs["years_since_first"])
    assert covs["years_scaled"].mean() == pytest.approx(0.0, abs=1e-12)
    assert covs["years_scaled"].std() == pytest.approx(1.0, abs=1e-12)


def test_first_survey_counts_every_species():
    rows = [
        ("D04CC", "2019-01-01 05:00", "WIWA"),
        ("D04CC", "2020-01-01 05:00", "OVEN"),
        ("E05UP", "2020-01-01 05:00", "OVEN"),
    ]
    h = build_detection_history(make_records(rows), "OVEN")
    d04 = h.site_covs[h.site_covs["site"] == "D04CC"]
    assert list(d04["years_since_first"]) == pytest.approx([0.0, 365 / DAYS_PER_YEAR])


def test_years_since_first_non_negative_and_non_decreasing():
    h = build_detection_history(make_records(), "OVEN")
    v = h.visits
    assert (v["years_since_first"] >= 0).all()
    for _, g in v.sort_values(["site", "timestamp"]).groupby("site"):
        assert g["years_since_first"].is_monotonic_increasing


def test_undetected_species_gives_all_zero_history():
    h = build_detection_history(make_records(), "XXXX")
    observed = ~np.isnan(h.y)
    assert h.y.shape == (5, 3)
    assert np.all(h.y[observed] == 0)
    assert h.naive_occupancy == 0.0


def test_visit_rows_are_never_dropped():
    records = make_records()
    h = build_detection_history(records, "OVEN")
    n_visits = records.drop_duplicates(["location", "recording_date_time"]).shape[0]
    assert len(h.visits) == n_visits
    assert int((~np.isnan(h.y)).sum()) == n_visits


def test_custom_treatment_extractor_and_level_order():
    lookup = {"A01CC": "control", "B02UP": "thinned", "C03OG": "control"}
    h = build_detection_history(make_records(), "OVEN",
                                treatment_extractor=lookup.get,
                                treatment_levels=["thinned", "control"])
    assert h.treatment_levels == ("thinned", "control")
    assert list(h.site_covs["treatment"].cat.categories) == ["thinned", "control"]


@pytest.mark.parametrize("unmapped", [None, float("nan"), "", "  "])
def test_extractor_without_label_raises(unmapped):
    lookup = {"A01CC": "control", "B02UP": "thinned", "C03OG": unmapped}
    with pytest.raises(DataIntegrityError, match="C03OG"):
        build_detection_history(make_records(), "OVEN", treatment_extractor=lookup.get)


def test_extractor_missing_site_raises():
    lookup = {"A01CC": "control", "B02UP": "thinned"}
    with pytest.raises(DataIntegrityError, match="C03OG"):
        build_detection_history(make_records(), "OVEN", treatment_extractor=lookup.get)


def test_custom_column_names():
    records = make_records().rename(columns={
        "location": "site_code", "recording_date_time": "ts", "species_code": "sp",
    })
    h = build_detection_history(records, "OVEN", location_col="site_code",
                                datetime_col="ts", species_col="sp")
    assert h.y.shape == (5, 3)


def test_missing_columns_raise():
    records = make_records().drop(columns=["species_code"])
    with pytest.raises(DataIntegrityError):
        build_detection_history(records, "OVEN")


def test_unparseable_timestamp_raises():
    records = make_records()
    records.loc[3, "recording_date_time"] = "not a date"
    with pytest.raises(DataIntegrityError):
        build_detection_history(records, "OVEN")


def test_missing_location_raises():
    records = make_records()
    records.loc[0, "location"] = None
    with pytest.raises(DataIntegrityError):
        build_detection_history(records, "OVEN")


def test_empty_records_raise():
    with pytest.raises(DataIntegrityError):
        build_detection_history(make_records([]), "OVEN")


def test_label_outside_requested_levels_raises():
    with pytest.raises(DataIntegrityError):
        build_detection_history(make_records(), "OVEN", treatment_levels=["CC", "UP"])


def test_single_treatment_raises():
    rows = [
        ("A01CC", "2020-05-01 05:00", "OVEN"),
        ("B02CC", "2021-05-01 05:00", "OVEN"),
    ]
    with pytest.raises(DataIntegrityError):
        build_detection_history(make_records(rows), "OVEN")


def test_no_time_spread_raises():
    rows = [
        ("A01CC", "2020-05-01 05:00", "OVEN"),
        ("B02UP", "2020-05-02 05:00", "OVEN"),
    ]
    with pytest.raises(DataIntegrityError):
        build_detection_history(make_records(rows), "OVEN")
