"""
Disparity estimation and depth layer quantization.

The blurry views are matched at half resolution, which roughly halves
the blur as well. Two matchers are available:

* ``'match'``: window based block matching (sum of absolute differences)
  for both views, a left-right consistency check, and occlusion filling
  with the background disparity along each scanline.
* ``'sgbm'``: OpenCV's semi-global block matching (needs ``opencv-python``).

Both disparity maps are quantized together into ``layers`` depth layers
with 1D k-means and upsampled to full resolution without interpolation.
"""

import logging

import numpy as np
from scipy import ndimage
from scipy.cluster.vq import kmeans2
from skimage.transform import pyramid_reduce, resize

from .errors import ConfigurationError
from .region_tree import View
from .utils import to_gray_float

logger = logging.getLogger(__name__)

SAMPLE_RATIO = 2


def _matching_cost(reference, other, max_disparity, window, direction):
    """SAD cost volume (D, H, W). ``direction`` is -1 for the left view, +1 for the right."""
    h, w = reference.shape
    costs = np.full((max_disparity + 1, h, w), np.inf)

    for d in range(max_disparity + 1):
        diff = np.full((h, w), np.inf)
        if direction < 0:
            # left pixel x matches right pixel x - d
            diff[:, d:] = np.abs(reference[:, d:] - other[:, :w - d])
        else:
            # right pixel x matches left pixel x + d
            diff[:, :w - d] = np.abs(reference[:, :w - d] - other[:, d:])
        valid = np.isfinite(diff)
        aggregated = ndimage.uniform_filter(np.where(valid, diff, 0.0), size=window, mode='nearest')
        costs[d] = np.where(valid, aggregated, np.inf)

    return costs


def _fill_occlusions(disparity, valid):
    """
    Replace invalid disparities with the smaller of the nearest valid
    disparities to the left and right on the same row (the background).
    """
    h, w = disparity.shape
    cols = np.arange(w)

    # nearest valid index to the left
    left_idx = np.where(valid, cols, -1)
    left_idx = np.maximum.accumulate(left_idx, axis=1)
    # nearest valid index to the right
    right_idx = np.where(valid, cols, w)
    right_idx = np.minimum.accumulate(right_idx[:, ::-1], axis=1)[:, ::-1]

    rows = np.arange(h)[:, None]
    big = np.iinfo(np.int64).max
    from_left = np.where(left_idx >= 0, disparity[rows, np.clip(left_idx, 0, w - 1)], big)
    from_right = np.where(right_idx < w, disparity[rows, np.clip(right_idx, 0, w - 1)], big)

    filled = np.where(valid, disparity, np.minimum(from_left, from_right))
    # rows without any valid pixel
    filled[filled == big] = 0
    return filled


def disparity_block_matching(left, right, max_disparity, window=7):
    """
    Block matching disparity for both views with occlusion filling.

    Returns
    -------
    left_map, right_map : ndarray
        Integer disparities
    """
    max_disparity = int(max(1, min(max_disparity, left.shape[1] - 1)))

    left_disp = np.argmin(_matching_cost(left, right, max_disparity, window, -1), axis=0)
    right_disp = np.argmin(_matching_cost(right, left, max_disparity, window, +1), axis=0)

    h, w = left.shape
    cols = np.arange(w)[None, :]
    rows = np.arange(h)[:, None]

    # left-right consistency check
    target = cols - left_disp
    inside = target >= 0
    left_valid = inside & (np.abs(left_disp - right_disp[rows, np.clip(target, 0, w - 1)]) <= 1)

    target = cols + right_disp
    inside = target < w
    right_valid = inside & (np.abs(right_disp - left_disp[rows, np.clip(target, 0, w - 1)]) <= 1)

    logger.debug("Occluded pixels: left %d, right %d",
                 int((~left_valid).sum()), int((~right_valid).sum()))

    return (_fill_occlusions(left_disp.astype(np.int64), left_valid),
            _fill_occlusions(right_disp.astype(np.int64), right_valid))


def disparity_sgbm(left, right, max_disparity, block_size=5):
    """Semi-global block matching for both views with occlusion filling."""
    import cv2

    num_disparities = max(16, int(np.ceil(max_disparity / 16)) * 16)
    matcher = cv2.StereoSGBM_create(
        minDisparity=0,
        numDisparities=num_disparities,
        blockSize=block_size,
        P1=8 * block_size ** 2,
        P2=32 * block_size ** 2,
        disp12MaxDiff=1,
        uniquenessRatio=10,
        speckleWindowSize=100,
        speckleRange=2,
    )

    left_u8 = (np.clip(left, 0, 1) * 255).astype(np.uint8)
    right_u8 = (np.clip(right, 0, 1) * 255).astype(np.uint8)

    left_disp = matcher.compute(left_u8, right_u8).astype(np.float64) / 16.0
    # the right view is matched by mirroring both images
    right_disp = matcher.compute(np.ascontiguousarray(right_u8[:, ::-1]),
                                 np.ascontiguousarray(left_u8[:, ::-1]))
    right_disp = right_disp[:, ::-1].astype(np.float64) / 16.0

    maps = []
    for disp in (left_disp, right_disp):
        valid = disp >= 0
        maps.append(_fill_occlusions(np.round(np.maximum(disp, 0)).astype(np.int64), valid))
    return maps[0], maps[1]


def quantize_disparity(maps, layers):
    """
    Quantize disparity maps jointly into ``layers`` levels.

    Level 0 holds the smallest disparities (farthest away).
    """
    values = np.concatenate([np.ravel(m) for m in maps]).astype(np.float64)
    init = np.quantile(values, (np.arange(layers) + 0.5) / layers)
    centroids, _ = kmeans2(values, init, minit='matrix', missing='warn')

    order = np.argsort(centroids)
    centroids = centroids[order]

    quantized = []
    for m in maps:
        distance = np.abs(np.asarray(m, dtype=np.float64)[..., None] - centroids)
        quantized.append(np.argmin(distance, axis=-1).astype(np.int64))
    return quantized


def estimate_disparity(views, layers, algorithm='match', max_disparity=80):
    """
    Quantized depth layer maps of both views.

    Parameters
    ----------
    views : sequence of ndarray
        Left and right image, grayscale or color
    layers : int
        Number of depth layers
    algorithm : str
        'match' or 'sgbm'
    max_disparity : int
        Largest disparity at full resolution

    Returns
    -------
    left_map, right_map : ndarray
        Depth layer per pixel, values in [0, layers)
    """
    left = to_gray_float(views[View.LEFT])
    right = to_gray_float(views[View.RIGHT])
    if left.shape != right.shape:
        raise ConfigurationError("Stereo images must have the same size")

    # down sample to roughly reduce the blur
    small_left = pyramid_reduce(left, downscale=SAMPLE_RATIO)
    small_right = pyramid_reduce(right, downscale=SAMPLE_RATIO)
    small_max = max(1, max_disparity // SAMPLE_RATIO)

    if algorithm == 'match':
        small_maps = disparity_block_matching(small_left, small_right, small_max)
    elif algorithm == 'sgbm':
        small_maps = disparity_sgbm(small_left, small_right, small_max)
    else:
        raise ConfigurationError(f"Invalid disparity algorithm '{algorithm}'")

    quantized = quantize_disparity(small_maps, layers)

    # up sample without interpolation
    return tuple(
        resize(q, left.shape, order=0, preserve_range=True, anti_aliasing=False).astype(np.int64)
        for q in quantized
    )
