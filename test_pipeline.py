#!/usr/bin/env python3
"""
End-to-end tests of the stereo deblurring pipeline on synthetic data.

Run with: python -m pytest test_pipeline.py
      or: python test_pipeline.py
"""

import tempfile
from pathlib import Path

import numpy as np
import pytest
import imageio.v3 as iio
from scipy.ndimage import convolve, gaussian_filter

from stereodeblur import (
    DepthDeblur,
    View,
    load_kernel,
    load_toplevel_kernels,
    estimate_toplevel_kernel,
)
from stereodeblur.errors import ConfigurationError, ResourceError, StateError
from stereodeblur.selection import CandidateSelector
from stereodeblur.tree_walk import PassOutput


def blocks(shape, block=8, seed=0):
    rng = np.random.default_rng(seed)
    values = rng.uniform(0.2, 0.8, (shape[0] // block, shape[1] // block))
    return np.kron(values, np.ones((block, block)))


def column_layers(shape, layers):
    cols = np.arange(shape[1]) * layers // shape[1]
    return np.broadcast_to(cols, shape).copy()


def box_kernel(width, box=5):
    kernel = np.zeros((width, width))
    lo = (width - box) // 2
    kernel[lo:lo + box, lo:lo + box] = 1.0
    return kernel / kernel.sum()


def synthetic_pair(size=64):
    """Sharp image and its 5x5 box blurred version (both views identical)."""
    sharp = blocks((size, size))
    blurred = convolve(sharp, np.full((5, 5), 1 / 25), mode='wrap')
    return sharp, blurred


def delta_kernel(width):
    kernel = np.zeros((width, width))
    kernel[width // 2, width // 2] = 1.0
    return kernel


def make_deblur(blurred, layers=2, threads=1, algorithm='fft', psf_width=9, root=None):
    deblur = DepthDeblur(blurred, blurred, psf_width=psf_width, layers=layers,
                         max_top_level_nodes=1, threads=threads,
                         deconv_algorithm=algorithm, reconstruction_algorithm=algorithm)
    layer_map = column_layers(blurred.shape[:2], layers)
    deblur.set_disparity_maps(layer_map, layer_map)
    deblur.region_tree_reconstruction()
    if root is None:
        root = box_kernel(psf_width)
    deblur.toplevel_kernel_estimation(kernels=[root])
    return deblur


def centroid(kernel):
    rows, cols = np.indices(kernel.shape)
    return (rows * kernel).sum(), (cols * kernel).sum()


def test_end_to_end():
    """Kernels are propagated to both layers and the reconstruction is sharper."""
    print("=== Testing End-To-End Deblurring ===")

    sharp, blurred = synthetic_pair()
    deblur = make_deblur(blurred, threads=2)
    deblur.estimate_mid_level_kernels()

    tree = deblur.region_tree
    for leaf in tree.leaf_ids:
        psf = tree[leaf].psf
        cy, cx = centroid(psf)
        print(f"  Leaf {leaf}: sum {psf.sum():.6f}, centroid ({cy:.2f}, {cx:.2f})")
        assert psf.shape == (9, 9)
        assert np.isclose(psf.sum(), 1.0)
        assert psf.min() >= 0
        assert abs(cy - 4) < 1.5 and abs(cx - 4) < 1.5
        assert tree[leaf].entropy is not None

    blurred_error = np.mean(np.abs(blurred * 255 - sharp * 255))

    coarse = deblur.reconstruct_top_level(View.LEFT)
    coarse_error = np.mean(np.abs(coarse.astype(np.float64) - sharp * 255))
    print(f"  Blurred MAE: {blurred_error:.2f}, top-level MAE: {coarse_error:.2f}")
    assert coarse.dtype == np.uint8 and coarse.shape == sharp.shape
    assert coarse_error < blurred_error

    result = deblur.reconstruct_image(View.LEFT)
    assert result.dtype == np.uint8 and result.shape == sharp.shape
    print("  Status: PASS\n")


def test_kernel_recovery_from_delta_root():
    """Leaf kernels grow from a delta at the root to the width of the true blur."""
    print("=== Testing Kernel Recovery From A Delta Root ===")

    _, blurred = synthetic_pair()
    deblur = make_deblur(blurred, threads=2, root=delta_kernel(9))
    deblur.estimate_mid_level_kernels()

    tree = deblur.region_tree
    for leaf in tree.leaf_ids:
        psf = tree[leaf].psf
        central = psf[2:7, 2:7].sum()
        outside_3x3 = 1.0 - psf[3:6, 3:6].sum()
        cy, cx = centroid(psf)
        print(f"  Leaf {leaf}: central 5x5 mass {central:.3f}, "
              f"outside 3x3 {outside_3x3:.3f}, centroid ({cy:.2f}, {cx:.2f})")
        assert np.isclose(psf.sum(), 1.0)
        assert central > 0.6
        assert outside_3x3 > 0.3
        assert abs(cy - 4) < 1 and abs(cx - 4) < 1
    print("  Status: PASS\n")


def test_reconstruction_from_coarse_root():
    """Starting from a too small root kernel, the layered reconstruction is still sharper."""
    print("=== Testing Reconstruction From A Coarse Root Kernel ===")

    sharp, blurred = synthetic_pair()
    deblur = make_deblur(blurred, algorithm='irls', root=box_kernel(9, box=3))
    deblur.estimate_mid_level_kernels()

    tree = deblur.region_tree
    for leaf in tree.leaf_ids:
        central = tree[leaf].psf[2:7, 2:7].sum()
        print(f"  Leaf {leaf}: central 5x5 mass {central:.3f}")
        assert central > 0.6

    blurred_error = np.mean(np.abs(blurred * 255 - sharp * 255))
    result = deblur.reconstruct_image(View.LEFT)
    error = np.mean(np.abs(result.astype(np.float64) - sharp * 255))
    print(f"  Blurred MAE: {blurred_error:.2f}, reconstruction MAE: {error:.2f}")
    assert result.dtype == np.uint8 and result.shape == sharp.shape
    assert error < blurred_error
    print("  Status: PASS\n")


class ScriptedSelector(CandidateSelector):
    """Scores candidates with fixed energies and records how many it was given."""

    def __init__(self, image, energies):
        super().__init__(image, deconvolver=None)
        self.energies = energies
        self.counts = []

    def select(self, candidates, mask):
        self.counts.append(len(candidates))
        self._scores = iter(self.energies)
        return super().select(candidates, mask)

    def energy(self, kernel, mask):
        return next(self._scores), np.zeros(self.image.shape)


def refinement_setup():
    """Four layers, leaf entropies [1, 1, 1, 5]: leaf 3 is the only unreliable kernel."""
    _, blurred = synthetic_pair()
    deblur = make_deblur(blurred, layers=4)
    tree = deblur.region_tree
    assert tree.top_level_ids == [6] and tree[5].children == (2, 3)

    for leaf, (box, entropy) in enumerate([(3, 1.0), (3, 1.0), (5, 1.0), (7, 5.0)]):
        tree[leaf].psf = box_kernel(9, box)
        tree[leaf].entropy = entropy
    tree[5].psf = box_kernel(9, 9)
    tree[5].entropy = 2.5
    return deblur, tree


def test_refinement_candidates():
    """The sibling kernel is offered only when it is reliable, ties keep the own kernel."""
    print("=== Testing Kernel Refinement Candidates ===")

    deblur, tree = refinement_setup()
    own = {leaf: tree[leaf].psf for leaf in tree.leaf_ids}

    selector = ScriptedSelector(deblur.gray_images[View.LEFT], [0.5, 0.5, 0.5])
    output = PassOutput(tree)
    deblur._refine_node(5, output, selector)

    # leaf 2 has the unreliable leaf 3 as sibling, leaf 3 the reliable leaf 2
    print(f"  Candidates per child: {selector.counts}")
    assert selector.counts == [2, 3]
    assert output.psf(2) is own[2] and output.psf(3) is own[3]
    # entropies of the winners are carried over, not recomputed
    assert output.entropy(2) == 1.0 and output.entropy(3) == 5.0
    # nothing reaches the tree before the pass is committed
    assert tree[2].psf is own[2] and tree[3].entropy == 5.0
    print("  Status: PASS\n")


def test_refinement_winners():
    """Parent and sibling winners are taken from the committed kernels of the last pass."""
    print("=== Testing Kernel Refinement Winners ===")

    deblur, tree = refinement_setup()
    own = {leaf: tree[leaf].psf for leaf in tree.leaf_ids}
    parent = tree[5].psf

    selector = ScriptedSelector(deblur.gray_images[View.LEFT], [0.5, 0.4, 0.1])
    output = PassOutput(tree)
    deblur._refine_node(5, output, selector)

    assert selector.counts == [2, 3]
    # leaf 2 has no sibling candidate, the parent wins
    assert output.psf(2) is parent and output.entropy(2) == 2.5
    # leaf 3 gets the sibling's kernel from before this pass
    assert output.psf(3) is own[2] and output.entropy(3) == 1.0

    output.commit()
    assert tree[2].psf is parent and tree[3].psf is own[2]
    assert tree[3].entropy == 1.0
    print("  Status: PASS\n")


def test_thread_count_invariance():
    """One and four threads produce bit-identical kernels and images."""
    print("=== Testing Thread Count Invariance ===")

    _, blurred = synthetic_pair()
    runs = []
    for threads in (1, 4):
        deblur = make_deblur(blurred, layers=4, threads=threads)
        deblur.estimate_mid_level_kernels(threads)
        image = deblur.reconstruct_image(View.LEFT, threads)
        runs.append(([node.psf for node in deblur.region_tree], image))

    (psfs1, image1), (psfs4, image4) = runs
    for psf1, psf4 in zip(psfs1, psfs4):
        assert np.array_equal(psf1, psf4)
    assert np.array_equal(image1, image4)
    print("  Status: PASS\n")


def test_latent_cache():
    """IRLS selection caches leaf latents that the reconstruction reuses."""
    print("=== Testing Cached Leaf Deconvolutions ===")

    _, blurred = synthetic_pair(48)
    deblur = make_deblur(blurred, algorithm='irls', psf_width=7)
    deblur.estimate_mid_level_kernels()

    tree = deblur.region_tree
    assert len(deblur.region_deconv) == len(tree.leaf_ids)

    expected = np.zeros(blurred.shape, dtype=np.uint8)
    for leaf in tree.leaf_ids:
        mask = tree.get_mask(leaf, View.LEFT)
        latent = deblur.region_deconv.get(leaf)
        expected[mask] = (np.clip(latent, 0, 1) * 255).astype(np.uint8)[mask]

    assert np.array_equal(deblur.reconstruct_image(View.LEFT), expected)
    print("  Status: PASS\n")


def test_color_reconstruction():
    print("=== Testing Color Reconstruction ===")

    sharp, _ = synthetic_pair()
    rgb = np.stack([convolve(sharp, np.full((5, 5), 1 / 25), mode='wrap')] * 3, axis=2)
    deblur = make_deblur(rgb)
    deblur.estimate_mid_level_kernels()

    result = deblur.reconstruct_image(View.RIGHT, color=True)
    assert result.shape == rgb.shape and result.dtype == np.uint8
    print("  Status: PASS\n")


def test_state_errors():
    """Operations called before their inputs exist raise StateError."""
    print("=== Testing Pipeline State Checks ===")

    _, blurred = synthetic_pair()
    deblur = DepthDeblur(blurred, blurred, psf_width=9, layers=2, max_top_level_nodes=1)

    with pytest.raises(StateError):
        deblur.region_tree_reconstruction()
    with pytest.raises(StateError):
        deblur.toplevel_kernel_estimation(kernels=[box_kernel(9)])
    with pytest.raises(StateError):
        deblur.reconstruct_image()

    deblur.set_disparity_maps(column_layers(blurred.shape, 2), column_layers(blurred.shape, 2))
    deblur.region_tree_reconstruction()
    with pytest.raises(StateError):
        deblur.estimate_mid_level_kernels()
    print("  Status: PASS\n")


def test_input_errors():
    print("=== Testing Input Validation ===")

    _, blurred = synthetic_pair()
    with pytest.raises(ConfigurationError):
        DepthDeblur(blurred, blurred[:32])
    with pytest.raises(ConfigurationError):
        DepthDeblur(blurred, blurred, psf_width=9, layers=2, deconv_algorithm='lucy')

    deblur = DepthDeblur(blurred, blurred, psf_width=9, layers=2, max_top_level_nodes=1)
    with pytest.raises(ConfigurationError):
        deblur.set_disparity_maps(np.zeros((8, 8), dtype=int), np.zeros((8, 8), dtype=int))

    deblur.set_disparity_maps(column_layers(blurred.shape, 2), column_layers(blurred.shape, 2))
    deblur.region_tree_reconstruction()
    with pytest.raises(ResourceError):
        deblur.toplevel_kernel_estimation(kernels=[box_kernel(9), box_kernel(9)])
    with pytest.raises(ResourceError):
        deblur.toplevel_kernel_estimation(kernels=[np.zeros((9, 9))])
    with pytest.raises(ResourceError):
        deblur.toplevel_kernel_estimation(kernels=[box_kernel(7)])
    with tempfile.TemporaryDirectory() as tmp:
        with pytest.raises(ResourceError):
            deblur.toplevel_kernel_estimation(pattern=str(Path(tmp) / 'kernel{}.png'))
    print("  Status: PASS\n")


def test_config_overrides():
    print("=== Testing Configuration Overrides ===")

    _, blurred = synthetic_pair()
    deblur = DepthDeblur(blurred, blurred, psf_width=10, layers=3)
    assert deblur.psf_width == 9 and deblur.layers == 2

    derived = DepthDeblur(blurred, blurred, deblur.config, threads=2)
    assert derived.config.threads == 2 and derived.config.psf_width == 9
    assert deblur.config.threads == 4
    print("  Status: PASS\n")


def test_load_kernels():
    """Kernel images are normalized on load, unusable files are reported."""
    print("=== Testing Kernel Images ===")

    with tempfile.TemporaryDirectory() as tmp:
        tmp = Path(tmp)
        image = np.zeros((9, 9), dtype=np.uint8)
        image[3:6, 3:6] = 255
        iio.imwrite(tmp / 'kernel0.png', image)
        iio.imwrite(tmp / 'kernel1.png', image)
        iio.imwrite(tmp / 'empty.png', np.zeros((9, 9), dtype=np.uint8))

        kernel = load_kernel(tmp / 'kernel0.png')
        assert kernel.shape == (9, 9)
        assert np.isclose(kernel.sum(), 1.0)
        assert np.isclose(kernel[4, 4], 1 / 9)

        resized = load_kernel(tmp / 'kernel0.png', size=15)
        assert resized.shape == (15, 15) and np.isclose(resized.sum(), 1.0)

        kernels = load_toplevel_kernels(2, str(tmp / 'kernel{}.png'))
        assert len(kernels) == 2

        with pytest.raises(ResourceError):
            load_kernel(tmp / 'missing.png')
        with pytest.raises(ResourceError):
            load_kernel(tmp / 'empty.png')
        with pytest.raises(ResourceError):
            load_toplevel_kernels(3, str(tmp / 'kernel{}.png'))
    print("  Status: PASS\n")


def test_toplevel_estimation():
    """Blind top-level estimation returns a valid kernel for every top-level region."""
    print("=== Testing Blind Top-Level Kernel Estimation ===")

    _, blurred = synthetic_pair()
    mask = np.ones(blurred.shape, dtype=bool)

    for n_scales in (1, 2):
        psf = estimate_toplevel_kernel(blurred, mask, 9, n_scales=n_scales, iterations=2)
        print(f"  {n_scales} scale(s): sum {psf.sum():.6f}")
        assert psf.shape == (9, 9)
        assert np.isclose(psf.sum(), 1.0)
        assert psf.min() >= 0

    deblur = DepthDeblur(blurred, blurred, psf_width=9, layers=2, max_top_level_nodes=1)
    deblur.set_disparity_maps(column_layers(blurred.shape, 2), column_layers(blurred.shape, 2))
    deblur.region_tree_reconstruction()
    deblur.toplevel_kernel_estimation(estimate=True)
    root = deblur.region_tree[deblur.region_tree.top_level_ids[0]]
    assert root.psf.shape == (9, 9) and np.isclose(root.psf.sum(), 1.0)
    assert root.entropy is not None
    print("  Status: PASS\n")


def test_disparity_stage():
    """The pipeline derives depth layers from the views itself."""
    print("=== Testing Disparity Stage ===")

    rng = np.random.default_rng(5)
    left = gaussian_filter(rng.random((48, 96)), 1.0)
    right = np.roll(left, -4, axis=1)

    deblur = DepthDeblur(left, right, psf_width=9, layers=2, max_disparity=16)
    left_map, right_map = deblur.disparity_estimation()
    assert left_map.shape == left.shape and right_map.shape == left.shape
    assert left_map.max() < 2 and right_map.max() < 2

    tree = deblur.region_tree_reconstruction()
    tree.check_partition()
    print("  Status: PASS\n")


def main():
    tests = [
        test_end_to_end,
        test_kernel_recovery_from_delta_root,
        test_reconstruction_from_coarse_root,
        test_refinement_candidates,
        test_refinement_winners,
        test_thread_count_invariance,
        test_latent_cache,
        test_color_reconstruction,
        test_state_errors,
        test_input_errors,
        test_config_overrides,
        test_load_kernels,
        test_toplevel_estimation,
        test_disparity_stage,
    ]

    results = []
    for test in tests:
        try:
            test()
            results.append((test.__name__, True))
        except AssertionError as e:
            print(f"  Status: FAIL {e}\n")
            results.append((test.__name__, False))

    print("=" * 40)
    print("SUMMARY")
    print("=" * 40)
    for name, passed in results:
        print(f"  {name}: {'PASS' if passed else 'FAIL'}")

    all_passed = all(passed for _, passed in results)
    print(f"\nOverall: {'ALL PASSED' if all_passed else 'SOME FAILED'}")
    return 0 if all_passed else 1


if __name__ == '__main__':
    exit(main())
