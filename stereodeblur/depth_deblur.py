"""
Depth-dependent deblurring of a stereo image pair.

The pipeline:

1. ``disparity_estimation`` (or ``set_disparity_maps``) quantizes the
   scene into depth layers for both views.
2. ``region_tree_reconstruction`` builds the region tree over the layers.
3. ``toplevel_kernel_estimation`` assigns a kernel to every top-level
   region, loaded from kernel images or estimated blindly.
4. ``estimate_mid_level_kernels`` propagates the kernels down the tree
   with the joint two-view estimation (pass 1) and then lets every
   region choose between its own, its parent's and a reliable sibling's
   kernel (pass 2).
5. ``reconstruct_image`` / ``reconstruct_top_level`` deconvolve every
   region with its kernel and composite the result.

Example
-------
>>> deblur = DepthDeblur(left, right, psf_width=35, layers=12)
>>> deblur.disparity_estimation()
>>> deblur.region_tree_reconstruction()
>>> deblur.toplevel_kernel_estimation(pattern='kernel{}.png')
>>> deblur.estimate_mid_level_kernels()
>>> sharp = deblur.reconstruct_image(View.LEFT, color=True)
"""

import logging

import numpy as np

from .config import DeblurConfig
from .deconvolution import make_deconvolver
from .disparity import estimate_disparity
from .errors import ConfigurationError, ResourceError, StateError
from .joint_psf import GradientCache, estimate_child_psf
from .reconstruction import LatentStore, Reconstructor
from .region_tree import View, build_region_tree
from .selection import OWN, PARENT, SIBLING, CandidateSelector, is_reliable_psf
from .toplevel import estimate_toplevel_kernel, load_toplevel_kernels
from .tree_walk import ConcurrentTreeWalker
from .utils import img_to_float, kernel_entropy, normalize_kernel, to_gray_float
from .tracing import trace

logger = logging.getLogger(__name__)


class DepthDeblur:
    """
    Kernel estimation and reconstruction for a blurred stereo pair.

    Parameters
    ----------
    image_left, image_right : ndarray
        Blurred views (grayscale or color, integer or float in [0, 1]).
        The left view is the reference view.
    config : DeblurConfig, optional
        Pipeline parameters
    **overrides
        Individual ``DeblurConfig`` fields, applied on top of ``config``
    """

    def __init__(self, image_left, image_right, config=None, **overrides):
        if config is None:
            config = DeblurConfig(**overrides)
        elif overrides:
            params = dict(vars(config))
            params.update(overrides)
            config = DeblurConfig(**params)
        self.config = config

        image_left = np.asarray(image_left)
        image_right = np.asarray(image_right)
        if image_left.shape != image_right.shape:
            raise ConfigurationError(
                f"Stereo images must have the same shape, got {image_left.shape} "
                f"and {image_right.shape}")
        if image_left.shape[0] < config.psf_width or image_left.shape[1] < config.psf_width:
            raise ConfigurationError(
                f"Images {image_left.shape[:2]} are smaller than the kernel width {config.psf_width}")

        # color views in [0, 1] and their luminance, indexed by View
        self.images = [img_to_float(image_left), img_to_float(image_right)]
        self.gray_images = [to_gray_float(image_left), to_gray_float(image_right)]

        self.deconvolver = make_deconvolver(config.deconv_algorithm)
        self.reconstruction_deconvolver = make_deconvolver(config.reconstruction_algorithm)

        self.disparity_maps = None
        self.region_tree = None
        self.gradients = None

        # latent images of leaf regions computed during kernel selection
        self.region_deconv = LatentStore()

    @property
    def psf_width(self):
        return self.config.psf_width

    @property
    def layers(self):
        return self.config.layers

    # -- depth layers and region tree --------------------------------------

    def disparity_estimation(self, algorithm=None, max_disparity=None):
        """
        Estimate quantized disparity maps of both views.

        Returns
        -------
        left_map, right_map : ndarray
            Depth layer per pixel
        """
        algorithm = algorithm or self.config.disparity_algorithm
        max_disparity = max_disparity or self.config.max_disparity

        logger.info("Estimating disparity (%s, %d layers)", algorithm, self.layers)
        with trace("disparity_estimation"):
            maps = estimate_disparity(self.gray_images, self.layers, algorithm, max_disparity)

        self.set_disparity_maps(*maps)
        return self.disparity_maps

    def set_disparity_maps(self, left_map, right_map):
        """Use externally computed depth layer maps (values in [0, layers))."""
        left_map = np.asarray(left_map)
        right_map = np.asarray(right_map)
        shape = self.gray_images[View.LEFT].shape
        if left_map.shape != shape or right_map.shape != shape:
            raise ConfigurationError(
                f"Disparity maps must have the image shape {shape}, "
                f"got {left_map.shape} and {right_map.shape}")

        self.disparity_maps = (left_map, right_map)
        # a new depth segmentation invalidates everything derived from the old one
        self.region_tree = None
        self.region_deconv.clear()

    def region_tree_reconstruction(self, max_top_level_nodes=None):
        """Build the region tree from the disparity maps."""
        if self.disparity_maps is None:
            raise StateError("Disparity maps are needed to build the region tree")

        max_top_level_nodes = max_top_level_nodes or self.config.max_top_level_nodes
        self.region_tree = build_region_tree(self.disparity_maps[View.LEFT],
                                             self.disparity_maps[View.RIGHT],
                                             self.layers, max_top_level_nodes)
        self.region_deconv.clear()

        logger.info("Region tree with %d nodes, top-level nodes %s",
                    len(self.region_tree), self.region_tree.top_level_ids)
        return self.region_tree

    def _require_tree(self):
        if self.region_tree is None:
            raise StateError("Region tree has not been built yet")
        return self.region_tree

    # -- top-level kernels --------------------------------------------------

    def toplevel_kernel_estimation(self, kernels=None, pattern=None, estimate=False):
        """
        Assign kernels to the top-level regions.

        Exactly one source is used, checked in this order:

        Parameters
        ----------
        kernels : sequence of ndarray, optional
            One kernel per top-level node (in ``top_level_ids`` order)
        pattern : str, optional
            File name pattern of kernel images, formatted with the index of
            the top-level node, e.g. ``'kernel{}.png'``
        estimate : bool
            Estimate the kernels blindly from the reference view

        With no source given, kernel images ``kernel{}.png`` are loaded.
        """
        tree = self._require_tree()
        top_ids = tree.top_level_ids
        width = self.psf_width

        if kernels is not None:
            kernels = list(kernels)
        elif pattern is None and estimate:
            kernels = []
            for i, node_id in enumerate(top_ids):
                logger.info("Estimating kernel of top-level region %d", i)
                with trace("toplevel_estimation"):
                    kernels.append(estimate_toplevel_kernel(
                        self.gray_images[View.LEFT], tree.get_mask(node_id, View.LEFT), width,
                        regularizer=self.config.regularizer))
        else:
            kernels = load_toplevel_kernels(len(top_ids), pattern or 'kernel{}.png', size=width)

        if len(kernels) != len(top_ids):
            raise ResourceError(
                f"Need {len(top_ids)} top-level kernels, got {len(kernels)}")

        for node_id, kernel in zip(top_ids, kernels):
            kernel = np.asarray(kernel, dtype=np.float64)
            if kernel.shape != (width, width):
                raise ResourceError(
                    f"Top-level kernel has shape {kernel.shape}, expected ({width}, {width})")
            kernel = normalize_kernel(kernel)
            if kernel is None:
                raise ResourceError(f"Kernel of top-level node {node_id} has no energy")
            tree[node_id].psf = kernel
            tree[node_id].entropy = kernel_entropy(kernel)

    # -- mid-level kernels ----------------------------------------------------

    def estimate_mid_level_kernels(self, n_threads=None):
        """
        Propagate the top-level kernels to every region and refine them.

        Parameters
        ----------
        n_threads : int, optional
            Total number of threads, defaults to the configured value
        """
        tree = self._require_tree()
        for node_id in tree.top_level_ids:
            if tree[node_id].psf is None:
                raise StateError(f"Top-level node {node_id} has no kernel")

        n_threads = n_threads or self.config.threads
        walker = ConcurrentTreeWalker(tree, n_threads)

        # the gradients of the blurred views are computed only once
        self.gradients = GradientCache(self.gray_images)
        self.region_deconv.clear()

        walker.walk(self._propagate_node, "propagation")

        selector = CandidateSelector(self.gray_images[View.LEFT], self.deconvolver)
        walker.walk(lambda node_id, output: self._refine_node(node_id, output, selector),
                    "refinement")

    def _propagate_node(self, node_id, output):
        """Pass 1: estimate both children of a node from its kernel."""
        tree = self.region_tree
        parent_psf = output.psf(node_id)

        for child in tree[node_id].children:
            masks = tree.get_masks(child)
            if not (masks[View.LEFT].any() and masks[View.RIGHT].any()):
                logger.debug("Region %d is empty in one view, inheriting kernel of %d",
                             child, node_id)
                output.store(child, parent_psf)
                continue

            psf = estimate_child_psf(self.gray_images, self.gradients, parent_psf, masks,
                                     self.psf_width, self.deconvolver, self.config.regularizer,
                                     self.config.kernel_threshold)
            if psf.sum() <= 0:
                logger.warning("No kernel found for region %d, inheriting kernel of %d",
                               child, node_id)
                psf = parent_psf
            output.store(child, psf)

    def _refine_node(self, node_id, output, selector):
        """Pass 2: choose the best kernel candidate for both children of a node."""
        tree = self.region_tree
        parent_psf = output.psf(node_id)
        parent_entropy = output.entropy(node_id)

        winners = []
        for child in tree[node_id].children:
            sibling = tree.sibling(child)
            labels = [OWN, PARENT]
            candidates = [tree[child].psf, parent_psf]
            entropies = [tree[child].entropy, parent_entropy]
            if is_reliable_psf(tree, sibling, self.config.reliability_factor):
                labels.append(SIBLING)
                candidates.append(tree[sibling].psf)
                entropies.append(tree[sibling].entropy)

            mask = tree.get_mask(child, View.LEFT)
            if not mask.any():
                logger.debug("Region %d is empty in the reference view, keeping its kernel", child)
                winners.append((child, candidates[0], entropies[0]))
                continue

            result = selector.select(candidates, mask)
            logger.debug("Region %d: energies %s, winner %s", child,
                         ", ".join(f"{e:.4f}" for e in result.energies), labels[result.winner])

            if tree[child].is_leaf and self.deconvolver.iterative:
                self.region_deconv.put(child, result.latent)
            winners.append((child, candidates[result.winner], entropies[result.winner]))

        # stored only after both children are scored, so neither sees the other's winner.
        # A winning kernel keeps the entropy it was assigned in pass 1.
        for child, psf, entropy in winners:
            output.store(child, psf, entropy=entropy)

    # -- reconstruction -------------------------------------------------------

    def _cached_latents_usable(self, view, color):
        if color or view != View.LEFT:
            return False
        selection, reconstruction = self.deconvolver, self.reconstruction_deconvolver
        return (selection.iterative
                and type(selection) is type(reconstruction)
                and vars(selection) == vars(reconstruction))

    def _reconstruct(self, region_ids, view, n_threads, color):
        tree = self._require_tree()
        for node_id in region_ids:
            if tree[node_id].psf is None:
                raise StateError(f"Region {node_id} has no kernel")

        view = View(view)
        image = self.images[view] if color else self.gray_images[view]
        if color and image.ndim == 2:
            logger.warning("Color reconstruction requested for a grayscale image")

        latent_store = self.region_deconv if self._cached_latents_usable(view, color) else None
        reconstructor = Reconstructor(tree, self.reconstruction_deconvolver)
        return reconstructor.reconstruct(image, view, region_ids,
                                         n_threads or self.config.threads, latent_store)

    def reconstruct_image(self, view=View.LEFT, n_threads=None, color=False):
        """
        Deconvolve every depth layer with its kernel and composite the result.

        Returns
        -------
        image : ndarray
            uint8 image, (H, W) or (H, W, C) if ``color``
        """
        logger.info("Reconstructing %s view from %d layers", View(view).name, self.layers)
        return self._reconstruct(self._require_tree().leaf_ids, view, n_threads, color)

    def reconstruct_top_level(self, view=View.LEFT, n_threads=None, color=False):
        """Deconvolve only the top-level regions with their kernels (coarse result)."""
        tree = self._require_tree()
        logger.info("Reconstructing %s view from %d top-level regions",
                    View(view).name, len(tree.top_level_ids))
        return self._reconstruct(tree.top_level_ids, view, n_threads, color)
