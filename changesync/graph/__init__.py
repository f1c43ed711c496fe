"""Commit graph: changeset DAG, head pointer and branch merging."""

from .changeset import Changeset
from .merge import MergeEngine
from .store import ENGINE_TABLES, GraphStore

__all__ = ["Changeset", "ENGINE_TABLES", "GraphStore", "MergeEngine"]
