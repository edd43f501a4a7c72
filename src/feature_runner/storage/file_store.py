from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from filelock import FileLock

from ..domain.models import Feature
from .interfaces import FeatureStore

STORE_VERSION = 1


class YamlFeatureStore(FeatureStore):
    """All projects' features in one YAML document, guarded by a file lock."""

    def __init__(self, path: Path, lock_path: Path | None = None) -> None:
        self._path = path
        self._lock = FileLock(str(lock_path or path.with_suffix(".lock")))
        self._thread_lock = threading.RLock()

    def _load_all(self) -> list[Feature]:
        if not self._path.exists():
            return []
        raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            return []
        items = raw.get("features", [])
        if not isinstance(items, list):
            return []
        return [Feature.from_dict(item) for item in items if isinstance(item, dict)]

    def _save_all(self, features: list[Feature]) -> None:
        payload: dict[str, Any] = {"version": STORE_VERSION, "features": [f.to_dict() for f in features]}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self._path)

    def load(self, project_id: str) -> list[Feature]:
        with self._thread_lock, self._lock:
            return [f for f in self._load_all() if f.project_id == project_id]

    def save(self, feature: Feature) -> Feature:
        with self._thread_lock, self._lock:
            features = self._load_all()
            for idx, existing in enumerate(features):
                if existing.id == feature.id:
                    features[idx] = feature
                    break
            else:
                features.append(feature)
            self._save_all(features)
        return feature

    def delete(self, feature_id: str) -> bool:
        with self._thread_lock, self._lock:
            features = self._load_all()
            keep = [f for f in features if f.id != feature_id]
            if len(keep) == len(features):
                return False
            self._save_all(keep)
        return True


class InMemoryFeatureStore(FeatureStore):
    def __init__(self, features: list[Feature] | None = None) -> None:
        self._features: dict[str, Feature] = {}
        self.saves = 0
        for feature in features or []:
            self._features[feature.id] = feature.copy()

    def load(self, project_id: str) -> list[Feature]:
        return [f.copy() for f in self._features.values() if f.project_id == project_id]

    def get(self, feature_id: str) -> Feature | None:
        feature = self._features.get(feature_id)
        return feature.copy() if feature else None

    def save(self, feature: Feature) -> Feature:
        self.saves += 1
        self._features[feature.id] = feature.copy()
        return feature

    def delete(self, feature_id: str) -> bool:
        return self._features.pop(feature_id, None) is not None
