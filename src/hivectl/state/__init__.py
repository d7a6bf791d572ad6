from hivectl.state.base import FeatureStore, TaskStore
from hivectl.state.json_store import JsonFeatureStore, JsonTaskStore
from hivectl.state.locks import exclusive_lock

__all__ = ["FeatureStore", "JsonFeatureStore", "JsonTaskStore", "TaskStore", "exclusive_lock"]
