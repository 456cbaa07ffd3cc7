from __future__ import annotations

from strata.__main__ import main
from strata.bootstrap import initialize_registrations


def test_initialize_registrations_is_idempotent():
    first = initialize_registrations()
    second = initialize_registrations()
    assert first == second
    assert first["Layer"] == 35 * 2
    assert first["Dataset"] == 2 * 3
    assert first["Filler"] == 4 * 2


def test_layers_listing(cpu_only, capsys):
    assert main(["--layers"]) == 0
    out = capsys.readouterr().out
    assert "CONVOLUTION" in out
    assert "float64" in out
    assert "WINDOW_DATA" not in out


def test_datasets_listing_reports_availability(pinned_features, capsys):
    pinned_features(leveldb_available=False, lmdb_available=True)
    assert main(["--datasets"]) == 0
    out = capsys.readouterr().out
    assert "leveldb" in out
    assert "plyvel" in out


def test_default_shows_everything(cpu_only, capsys):
    assert main([]) == 0
    out = capsys.readouterr().out
    assert "Build features" in out
    assert "cudnn" in out
