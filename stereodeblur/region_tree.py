"""
Region tree over the depth layers of a stereo pair.

The leaves are the quantized depth layers (leaf ``i`` covers layer ``i``
in both views). Neighboring layers are merged pairwise into parent
regions until at most ``max_top_level_nodes`` roots remain. Every node
owns one boolean mask per view; a parent mask is the union of its
children, so sibling masks never overlap and the leaf masks of a view
partition the image.

Nodes live in a flat list and refer to each other by index.
"""

from dataclasses import dataclass, field
from enum import IntEnum

import numpy as np

from .errors import ConfigurationError


class View(IntEnum):
    """Stereo view. The left view is the reference view."""
    LEFT = 0
    RIGHT = 1


@dataclass
class RegionTreeNode:
    id: int
    parent: int = -1
    children: tuple = (-1, -1)
    level: int = 0
    layers: tuple = ()
    masks: list = field(default_factory=list)
    psf: np.ndarray = None
    entropy: float = None

    @property
    def is_leaf(self):
        return self.children[0] == -1

    @property
    def is_root(self):
        return self.parent == -1


class RegionTree:
    """Flat container of region tree nodes addressed by integer id."""

    def __init__(self, nodes, top_level_ids, n_layers):
        self.nodes = nodes
        self.top_level_ids = list(top_level_ids)
        self.leaf_ids = list(range(n_layers))

    def __getitem__(self, node_id):
        return self.nodes[node_id]

    def __len__(self):
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    @property
    def shape(self):
        return self.nodes[0].masks[View.LEFT].shape

    def get_mask(self, node_id, view):
        """Boolean mask of a node for one view (read-only)."""
        return self.nodes[node_id].masks[view]

    def get_masks(self, node_id):
        """Masks of a node for both views, indexed by ``View``."""
        masks = self.nodes[node_id].masks
        return masks[View.LEFT], masks[View.RIGHT]

    def level_peers(self, node_id):
        """Ids of all nodes on the same tree level, including the node itself."""
        level = self.nodes[node_id].level
        return [node.id for node in self.nodes if node.level == level]

    def sibling(self, node_id):
        parent = self.nodes[node_id].parent
        if parent == -1:
            return -1
        c1, c2 = self.nodes[parent].children
        return c2 if c1 == node_id else c1

    def check_partition(self):
        """
        Verify the partition invariants.

        Raises ValueError if two siblings overlap in a view or the leaf
        masks of a view do not cover the image exactly once.
        """
        for node in self.nodes:
            if node.is_leaf:
                continue
            c1, c2 = node.children
            for view in View:
                if np.any(self.nodes[c1].masks[view] & self.nodes[c2].masks[view]):
                    raise ValueError(f"Masks of siblings {c1} and {c2} overlap in {view.name} view")

        for view in View:
            coverage = np.zeros(self.shape, dtype=np.int64)
            for leaf in self.leaf_ids:
                coverage += self.nodes[leaf].masks[view]
            if not np.all(coverage == 1):
                raise ValueError(f"Leaf masks do not partition the {view.name} view")


def _frozen(mask):
    mask = np.ascontiguousarray(mask, dtype=bool)
    mask.flags.writeable = False
    return mask


def build_region_tree(left_map, right_map, layers, max_top_level_nodes=3):
    """
    Build the region tree from quantized disparity maps.

    Parameters
    ----------
    left_map, right_map : ndarray
        Integer depth layer per pixel, values in [0, layers)
    layers : int
        Number of depth layers (= number of leaves)
    max_top_level_nodes : int
        Merge layers until at most this many roots remain

    Returns
    -------
    tree : RegionTree
    """
    left_map = np.asarray(left_map)
    right_map = np.asarray(right_map)

    if left_map.shape != right_map.shape or left_map.ndim != 2:
        raise ConfigurationError(
            f"Disparity maps must be 2D and of equal shape, got {left_map.shape} and {right_map.shape}")
    if layers < 1 or max_top_level_nodes < 1:
        raise ConfigurationError("layers and max_top_level_nodes must be positive")
    for name, dmap in (('left', left_map), ('right', right_map)):
        if dmap.min() < 0 or dmap.max() >= layers:
            raise ValueError(f"{name} disparity map has values outside [0, {layers})")

    nodes = []
    for layer in range(layers):
        nodes.append(RegionTreeNode(
            id=layer,
            level=0,
            layers=(layer,),
            masks=[_frozen(left_map == layer), _frozen(right_map == layer)],
        ))

    current = list(range(layers))
    while len(current) > max_top_level_nodes:
        merged = []
        for i in range(0, len(current) - 1, 2):
            c1, c2 = nodes[current[i]], nodes[current[i + 1]]
            parent = RegionTreeNode(
                id=len(nodes),
                children=(c1.id, c2.id),
                level=max(c1.level, c2.level) + 1,
                layers=c1.layers + c2.layers,
                masks=[_frozen(c1.masks[v] | c2.masks[v]) for v in View],
            )
            c1.parent = parent.id
            c2.parent = parent.id
            nodes.append(parent)
            merged.append(parent.id)

        # an odd region out is carried to the next round unchanged
        if len(current) % 2:
            merged.append(current[-1])
        current = merged

    return RegionTree(nodes, current, layers)
