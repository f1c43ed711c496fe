"""Merge engine: join divergent branches of the commit graph."""

import logging
from typing import Any

from ..delta import Delta, combine
from ..errors import IntegrityError, NotFoundError
from .ancestry import branch_only, load_edges
from .changeset import Changeset
from .store import GraphStore

logger = logging.getLogger(__name__)


class MergeEngine:
    """Creates two-parent merge nodes in a GraphStore.

    A merge node M of ``main`` and ``branch`` carries two deltas:
    ``parent_delta`` takes the state at ``main`` to M by replaying what
    only ``branch`` did, and ``merge_delta`` takes the state at
    ``branch`` to M by replaying what only ``main`` did. Conflicting row
    changes are omitted when applied, so both paths converge.
    """

    def __init__(self, store: GraphStore):
        self.store = store

    def branch_only_deltas(
        self, from_id: str, excluding_ancestors_of: str
    ) -> tuple[Delta, list[dict[str, Any]]]:
        """Combine the deltas that only ``from_id``'s history contains.

        Args:
            from_id: Tip of the branch to collect.
            excluding_ancestors_of: Nodes behind this one are shared and
                left out.

        Returns:
            Tuple of (combined delta, meta of each collected node oldest
            first).

        Raises:
            NotFoundError: If either id is unknown.
        """
        with self.store.read() as conn:
            edges = load_edges(conn)
        for changeset_id in (from_id, excluding_ancestors_of):
            if changeset_id not in edges:
                raise NotFoundError(f"Changeset {changeset_id} not found", key=changeset_id)

        ids = branch_only(edges, from_id, excluding_ancestors_of)
        nodes = self.store.get_many(ids)
        ordered = [nodes[i] for i in ids]

        delta = combine(c.parent_delta for c in ordered)
        return delta, [c.meta for c in ordered]

    def merge(self, main_id: str, branch_id: str) -> Changeset:
        """Create a merge node joining ``main_id`` and ``branch_id``.

        Head is not moved; ``pull`` walks onto the merge node.

        Raises:
            NotFoundError: If either changeset is unknown.
            IntegrityError: If both ids are the same.
        """
        if main_id == branch_id:
            raise IntegrityError(f"Cannot merge changeset {main_id} with itself")

        with self.store.write():
            forward, forward_meta = self.branch_only_deltas(branch_id, main_id)
            reverse, reverse_meta = self.branch_only_deltas(main_id, branch_id)

            changeset = Changeset.new(
                parent_id=main_id,
                parent_delta=forward,
                merge_id=branch_id,
                merge_delta=reverse,
                meta={"parent_meta": forward_meta, "merge_meta": reverse_meta},
            )
            self.store.insert(changeset)

        logger.info(f"Merged {branch_id} into {main_id} as {changeset.id}")
        return changeset

    def merge_all(self) -> list[Changeset]:
        """Pairwise merge leaves until a single leaf remains.

        The two leaves with the lowest ids are merged first, the lower id
        as main.

        Returns:
            The merge nodes created, in order.
        """
        created = []
        while True:
            leaf_nodes = self.store.leaves()
            if len(leaf_nodes) < 2:
                break
            created.append(self.merge(leaf_nodes[0].id, leaf_nodes[1].id))

        if created:
            logger.info(f"Consolidated branches with {len(created)} merges")
        return created
