import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import json

import pytest

from tpc_reco.config import AssignmentStrategy, FitOrder, TrackFinderConfig, load_config


def test_defaults_are_valid():
    cfg = TrackFinderConfig().validate()
    assert cfg.order is FitOrder.OUTGOING
    assert cfg.strategy is AssignmentStrategy.BEST_HIT
    assert cfg.leftover_chi2_cut is None


def test_load_config_reads_the_track_finder_block(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"track_finder": {"distance_cut": 25.0, "fit_order": "incoming",
                                                 "leftover_chi2_cut": 80.0}}))
    cfg = load_config(path)
    assert cfg.distance_cut == 25.0
    assert cfg.order is FitOrder.INCOMING
    assert cfg.leftover_chi2_cut == 80.0
    assert cfg.min_cluster_size == TrackFinderConfig().min_cluster_size


def test_missing_file_gives_defaults(tmp_path):
    assert load_config(tmp_path / "nope.json") == TrackFinderConfig()
    assert load_config(None) == TrackFinderConfig()


def test_repository_config_loads():
    cfg = load_config(Path(__file__).resolve().parents[1] / "config.json")
    assert cfg.to_dict()["rows_for_splitting"] == 10


def test_bad_files_and_values(tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(ValueError):
        load_config(broken)

    unknown = tmp_path / "unknown.json"
    unknown.write_text(json.dumps({"track_finder": {"distanse_cut": 3.0}}))
    with pytest.raises(KeyError):
        load_config(unknown)

    with pytest.raises(ValueError):
        TrackFinderConfig.from_mapping({"distance_cut": -1.0})
    with pytest.raises(ValueError):
        TrackFinderConfig.from_mapping({"assignment_strategy": "nearest"})
    with pytest.raises(ValueError):
        TrackFinderConfig(min_fit_hits=2).validate()
