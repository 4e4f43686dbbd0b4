"""
Kernels for the top-level regions of the region tree.

The top-level kernels seed the propagation down the tree. They either
come from kernel images produced by an external blind estimator (one
file per top-level region, e.g. ``kernel0.png``, ``kernel1.png``) or are
estimated here with a simple blind coarse-to-fine scheme: alternate
between a fast deconvolution with the current kernel, salient edge
extraction and the closed-form kernel solve, from a coarse image
pyramid level to the full resolution.
"""

import logging
from pathlib import Path

import numpy as np
from scipy.ndimage import zoom

from .deconvolution import FFTDeconvolver
from .edge_map import compute_salient_edge_map
from .errors import ResourceError
from .joint_psf import joint_psf_estimation
from .utils import img_to_norm_grayscale, normalize_kernel, normalize_symmetric, sobel_gradients

logger = logging.getLogger(__name__)


def load_kernel(kernel_path, size=None):
    """
    Load an energy preserving kernel from an image file.

    Parameters
    ----------
    kernel_path : str or Path
        Kernel image
    size : int, optional
        Resize the kernel to (size, size)

    Returns
    -------
    kernel : ndarray
        Non-negative kernel summing to one
    """
    import imageio.v3 as iio

    kernel_path = Path(kernel_path)
    if not kernel_path.exists():
        raise ResourceError(f"Can not load kernel: {kernel_path} not found")

    kernel = img_to_norm_grayscale(iio.imread(kernel_path))

    if size is not None and kernel.shape != (size, size):
        from skimage.transform import resize
        kernel = resize(kernel, (size, size), order=3, anti_aliasing=True)

    normalized = normalize_kernel(kernel)
    if normalized is None:
        raise ResourceError(f"Kernel image {kernel_path} has no energy")
    return normalized


def load_toplevel_kernels(count, pattern='kernel{}.png', size=None):
    """
    Load one kernel image per top-level region.

    Parameters
    ----------
    count : int
        Number of top-level regions
    pattern : str
        File name pattern, formatted with the index of the top-level region
    size : int, optional
        Resize every kernel to (size, size)

    Returns
    -------
    kernels : list of ndarray
    """
    kernels = []
    for i in range(count):
        path = Path(pattern.format(i))
        logger.info("Loading top-level kernel %d from %s", i, path)
        kernels.append(load_kernel(path, size))
    return kernels


def _build_image_pyramid(image, n_scales, order=3):
    """
    Build a pyramid of images (coarse to fine).

    Returns
    -------
    pyramid : list of ndarray
        List of images from coarsest to finest
    """
    pyramid = [None] * n_scales
    pyramid[n_scales - 1] = image

    current = image
    for scale in range(n_scales - 2, -1, -1):
        current = zoom(current, 0.5, order=order)
        pyramid[scale] = current

    return pyramid


def _upsample_psf(psf, new_size):
    """Upsample a PSF with bicubic interpolation, normalized to sum to 1."""
    zoom_factors = (new_size[0] / psf.shape[0], new_size[1] / psf.shape[1])
    upsampled = zoom(psf, zoom_factors, order=3)

    upsampled = np.maximum(upsampled, 0)
    upsampled = upsampled / (upsampled.sum() + 1e-10)

    return upsampled


def estimate_toplevel_kernel(image, mask, psf_width, n_scales=None, iterations=5,
                             regularizer=1.0, deconvolver=None, verbose='none'):
    """
    Blind kernel estimation for one top-level region.

    Parameters
    ----------
    image : ndarray
        Blurred grayscale float image
    mask : ndarray
        Boolean mask of the region
    psf_width : int
        Odd kernel width at full resolution
    n_scales : int, optional
        Number of pyramid levels. If None, chosen so the coarsest kernel
        is at least 5 pixels wide.
    iterations : int
        Alternations of latent estimation and kernel solve per scale
    regularizer : float
        Kernel energy weight of the closed-form solve
    deconvolver : Deconvolver, optional
        Solver for the intermediate latent images (FFT by default)
    verbose : str
        'none', 'brief', or 'all'

    Returns
    -------
    psf : ndarray
        Kernel of size (psf_width, psf_width) summing to one
    """
    image = np.asarray(image, dtype=np.float64)
    mask = np.asarray(mask, dtype=bool)
    if deconvolver is None:
        deconvolver = FFTDeconvolver()

    if n_scales is None:
        n_scales = max(1, int(np.floor(np.log2(psf_width / 5))) + 1)

    image_pyramid = _build_image_pyramid(image, n_scales)
    mask_pyramid = [m > 0.5 for m in _build_image_pyramid(mask.astype(np.float64), n_scales, order=0)]

    psf_sizes = []
    for scale in range(n_scales):
        factor = 2 ** (n_scales - 1 - scale)
        psf_sizes.append(max(3, (psf_width + factor - 1) // factor | 1))

    psf = None
    for scale in range(n_scales):
        size = psf_sizes[scale]
        image_s = image_pyramid[scale]
        mask_s = mask_pyramid[scale]

        if verbose in ('brief', 'all'):
            print(f"  Scale {scale + 1}/{n_scales}: image {image_s.shape}, kernel {size}x{size}")

        if psf is None:
            psf = np.zeros((size, size))
            psf[size // 2, size // 2] = 1.0
        else:
            psf = _upsample_psf(psf, (size, size))

        gx, gy = sobel_gradients(image_s)
        blurred = (np.where(mask_s, normalize_symmetric(gx), 0.0),
                   np.where(mask_s, normalize_symmetric(gy), 0.0))

        for i in range(iterations):
            latent = deconvolver.deconvolve(image_s, psf, mask_s)
            salient = compute_salient_edge_map(latent, size, mask_s)
            estimate = joint_psf_estimation([salient], [blurred], size, regularizer)

            if estimate.sum() <= 0:
                logger.warning("Scale %d: no kernel mass in iteration %d, keeping previous kernel",
                               scale + 1, i + 1)
                break
            psf = estimate

            if verbose == 'all':
                print(f"    iter {i + 1}, kernel peak {psf.max():.4f}")

    return psf
