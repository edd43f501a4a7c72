from __future__ import annotations

from pathlib import Path

import yaml

from feature_runner.domain.models import Feature, FeatureStatus, PlanningMode
from feature_runner.storage import InMemoryFeatureStore, YamlFeatureStore


def test_yaml_store_round_trip_and_project_filter(tmp_path: Path) -> None:
    store = YamlFeatureStore(tmp_path / "state" / "features.yaml")
    a = Feature(id="a", title="A", project_id="p1", planning_mode=PlanningMode.LITE, metadata={"k": 1})
    b = Feature(id="b", title="B", project_id="p1", dependencies=["a"])
    other = Feature(id="c", project_id="p2")
    for item in (a, b, other):
        store.save(item)

    loaded = store.load("p1")
    assert [f.id for f in loaded] == ["a", "b"]
    assert loaded[0].planning_mode == PlanningMode.LITE
    assert loaded[0].metadata == {"k": 1}
    assert loaded[1].dependencies == ["a"]
    assert [f.id for f in store.load("p2")] == ["c"]

    raw = yaml.safe_load((tmp_path / "state" / "features.yaml").read_text(encoding="utf-8"))
    assert raw["version"] == 1
    assert raw["features"][0]["status"] == "pending"


def test_yaml_store_save_replaces_in_place(tmp_path: Path) -> None:
    store = YamlFeatureStore(tmp_path / "features.yaml")
    store.save(Feature(id="a", project_id="p"))
    store.save(Feature(id="b", project_id="p"))
    store.save(Feature(id="a", project_id="p", status=FeatureStatus.VERIFIED))
    loaded = store.load("p")
    assert [(f.id, f.status) for f in loaded] == [("a", FeatureStatus.VERIFIED), ("b", FeatureStatus.PENDING)]
    assert not list(tmp_path.glob("*.tmp"))


def test_yaml_store_delete(tmp_path: Path) -> None:
    store = YamlFeatureStore(tmp_path / "features.yaml")
    store.save(Feature(id="a", project_id="p"))
    assert store.delete("a") is True
    assert store.delete("a") is False
    assert store.load("p") == []


def test_unknown_keys_survive_in_metadata() -> None:
    feature = Feature.from_dict({"id": "x", "status": "bogus", "priority": "P1"})
    assert feature.status == FeatureStatus.PENDING
    assert feature.metadata["priority"] == "P1"
    assert Feature.from_dict(feature.to_dict()).metadata["priority"] == "P1"


def test_in_memory_store_hands_out_copies() -> None:
    store = InMemoryFeatureStore([Feature(id="a", project_id="p")])
    loaded = store.load("p")[0]
    loaded.title = "changed"
    assert store.get("a").title == ""
    store.save(loaded)
    assert store.get("a").title == "changed"
    assert store.saves == 1
