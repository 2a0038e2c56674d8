from __future__ import annotations

import pytest

from sensorsync.data.fusion.drift import (
    DriftModel,
    build_sync_markers,
    compute_drift_model,
    correct_timestamp,
    describe,
)

MINUTES_10 = 600_000.0


def test_markers_with_equal_offsets_give_constant_model() -> None:
    model = compute_drift_model(
        surface_start_ms=0.0,
        surface_stop_ms=MINUTES_10,
        inwater_start_ms=1_500.0,
        inwater_stop_ms=MINUTES_10 + 1_501.0,
        measured_offset_ms=None,
    )

    assert model is not None
    assert model.type == "constant"
    assert model.start_offset_ms == pytest.approx(1_500.5)
    assert correct_timestamp(2_000.0, model) == pytest.approx(499.5)


def test_diverging_markers_give_linear_model() -> None:
    model = compute_drift_model(
        surface_start_ms=0.0,
        surface_stop_ms=MINUTES_10,
        inwater_start_ms=1_500.0,
        inwater_stop_ms=MINUTES_10 + 1_524.0,
        measured_offset_ms=3.0,
    )

    assert model is not None
    assert model.type == "linear"
    assert model.start_offset_ms == 1_500.0
    assert model.end_offset_ms == 1_524.0
    assert model.reference_time_ms == 1_500.0
    assert model.drift_rate_per_ms == pytest.approx(24.0 / MINUTES_10)
    assert model.correct(1_500.0) == pytest.approx(0.0)
    assert model.correct(MINUTES_10 + 1_524.0) == pytest.approx(MINUTES_10, abs=0.01)
    assert "linear" in describe(model)


def test_start_marker_only_gives_constant_start_offset() -> None:
    model = compute_drift_model(
        surface_start_ms=100.0,
        surface_stop_ms=None,
        inwater_start_ms=350.0,
        inwater_stop_ms=None,
        measured_offset_ms=999.0,
    )

    assert model == DriftModel.constant(250.0)


def test_measured_offset_fallback() -> None:
    no_markers = compute_drift_model(
        surface_start_ms=None,
        surface_stop_ms=None,
        inwater_start_ms=None,
        inwater_stop_ms=None,
        measured_offset_ms=-12.0,
    )
    synthesised = compute_drift_model(
        surface_start_ms=0.0,
        surface_stop_ms=MINUTES_10,
        inwater_start_ms=None,
        inwater_stop_ms=None,
        measured_offset_ms=-12.0,
    )

    assert no_markers == DriftModel.constant(-12.0)
    assert synthesised == DriftModel.constant(-12.0)


def test_nothing_known_means_no_correction() -> None:
    model = compute_drift_model(
        surface_start_ms=0.0,
        surface_stop_ms=MINUTES_10,
        inwater_start_ms=None,
        inwater_stop_ms=None,
        measured_offset_ms=None,
    )

    assert model is None
    assert correct_timestamp(123.0, None) == 123.0
    assert describe(None) == "none"


def test_sync_markers_measured_and_synthetic() -> None:
    measured = build_sync_markers(
        sync_id="12345678",
        surface_start_ms=0.0,
        surface_stop_ms=1_000.0,
        inwater_start_ms=40.0,
        inwater_stop_ms=1_041.0,
    )
    synthetic = build_sync_markers(
        sync_id="12345678",
        surface_start_ms=0.0,
        surface_stop_ms=1_000.0,
        inwater_start_ms=None,
        inwater_stop_ms=None,
        measured_offset_ms=40.0,
    )

    assert [(m.type, m.quality, m.offset_ms) for m in measured] == [
        ("START", "measured", 40.0),
        ("STOP", "measured", 41.0),
    ]
    assert [(m.type, m.quality, m.offset_ms) for m in synthetic] == [
        ("START", "synthetic", 40.0),
        ("STOP", "synthetic", 40.0),
    ]


def test_record_round_trip_keeps_linear_terms() -> None:
    model = DriftModel(
        type="linear",
        start_offset_ms=10.0,
        drift_rate_per_ms=1e-6,
        reference_time_ms=5_000.0,
        end_offset_ms=12.0,
    )

    assert DriftModel.from_record(model.to_record()) == model
