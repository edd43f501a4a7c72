from __future__ import annotations

from abc import ABC, abstractmethod

from ..domain.models import Feature


class FeatureStore(ABC):
    """Synchronous source of truth for features; the orchestrator writes through on every transition."""

    @abstractmethod
    def load(self, project_id: str) -> list[Feature]:
        raise NotImplementedError

    @abstractmethod
    def save(self, feature: Feature) -> Feature:
        raise NotImplementedError

    @abstractmethod
    def delete(self, feature_id: str) -> bool:
        raise NotImplementedError
