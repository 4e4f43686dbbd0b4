"""
Parallel reconstruction of the sharp image from per-region kernels.

Every region is deconvolved as a whole image (cropping the region would
introduce artifacts at its boundary) with the data term restricted to
the region mask, and only the masked pixels are copied into the result.
Region masks are disjoint, so the workers write into the shared
destination without further locking.
"""

import logging
import queue
import threading

import numpy as np

from .tree_walk import run_workers
from .utils import to_uint8
from .tracing import trace

logger = logging.getLogger(__name__)


class LatentStore:
    """Thread-safe mapping from node id to a deconvolved [0, 1] latent image."""

    def __init__(self):
        self._latents = {}
        self._lock = threading.Lock()

    def put(self, node_id, latent):
        with self._lock:
            self._latents[node_id] = latent

    def get(self, node_id):
        with self._lock:
            return self._latents.get(node_id)

    def __contains__(self, node_id):
        with self._lock:
            return node_id in self._latents

    def __len__(self):
        with self._lock:
            return len(self._latents)

    def clear(self):
        with self._lock:
            self._latents.clear()


def check_disjoint(masks):
    """Raise ValueError if any pixel belongs to more than one mask."""
    coverage = None
    for mask in masks:
        if coverage is None:
            coverage = np.zeros(mask.shape, dtype=np.int64)
        coverage += mask
    if coverage is not None and coverage.max() > 1:
        raise ValueError("Region masks overlap, composited pixels would collide")


class Reconstructor:
    """
    Deconvolves regions of the region tree in parallel and composites them.

    Parameters
    ----------
    tree : RegionTree
        Tree with final kernels
    deconvolver : Deconvolver
        Solver for the per-region deconvolution
    """

    def __init__(self, tree, deconvolver):
        self.tree = tree
        self.deconvolver = deconvolver

    def reconstruct(self, image, view, region_ids, n_threads=1, latent_store=None):
        """
        Reconstruct an image from the given regions.

        Parameters
        ----------
        image : ndarray
            Blurred float image (H, W) or (H, W, C) in [0, 1] of ``view``
        view : View
            Which view's masks to use
        region_ids : sequence of int
            Disjoint regions to deconvolve, e.g. the leaves or the roots
        n_threads : int
            Total number of threads including the calling one
        latent_store : LatentStore, optional
            Already deconvolved regions to reuse instead of recomputing

        Returns
        -------
        result : ndarray
            uint8 image of the same shape as ``image``
        """
        tree = self.tree
        check_disjoint([tree.get_mask(rid, view) for rid in region_ids])

        dst = np.zeros(np.shape(image), dtype=np.uint8)

        # LIFO of region ids to work on
        regions = queue.LifoQueue()
        for rid in region_ids:
            regions.put(rid)

        def worker():
            while True:
                try:
                    rid = regions.get_nowait()
                except queue.Empty:
                    return

                mask = tree.get_mask(rid, view)
                if not mask.any():
                    logger.debug("Region %d is empty in view %s, skipping", rid, view.name)
                    continue

                latent = latent_store.get(rid) if latent_store is not None else None
                if latent is None:
                    with trace("deconvolve_region"):
                        latent = self.deconvolver.deconvolve(image, tree[rid].psf, mask)
                else:
                    logger.debug("Reusing deconvolved region %d", rid)

                dst[mask] = to_uint8(latent)[mask]

        with trace("reconstruction"):
            run_workers(worker, n_threads)

        return dst
