from .file_store import InMemoryFeatureStore, YamlFeatureStore
from .interfaces import FeatureStore

__all__ = ["FeatureStore", "YamlFeatureStore", "InMemoryFeatureStore"]
