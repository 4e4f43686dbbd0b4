"""
Utility functions shared by the kernel estimation and deconvolution code.
"""

from functools import lru_cache

import numpy as np
from scipy import ndimage
from scipy.fft import fft2

# Number of taper weight arrays kept, each one is image sized
TAPER_CACHE_SIZE = 8


def psf2otf(psf, shape):
    """
    Convert point spread function to optical transfer function.

    Equivalent to MATLAB's psf2otf: zero-pads the PSF to the given shape,
    circularly shifts it so the center is at (0,0), then computes FFT.

    Parameters
    ----------
    psf : ndarray
        Point spread function (kernel)
    shape : tuple
        Output shape (height, width)

    Returns
    -------
    otf : ndarray
        Optical transfer function (complex)
    """
    psf = np.asarray(psf)

    padded = np.zeros(shape, dtype=psf.dtype)
    psf_shape = psf.shape
    padded[:psf_shape[0], :psf_shape[1]] = psf

    shift = [-(s // 2) for s in psf_shape]
    padded = np.roll(padded, shift, axis=(0, 1))

    return fft2(padded)


def _create_taper_weights(psf, shape):
    """Create edge tapering weights from a PSF."""
    psf_proj_h = psf.sum(axis=1)
    psf_proj_w = psf.sum(axis=0)

    autocorr_h = np.convolve(psf_proj_h, psf_proj_h[::-1], mode='full')
    autocorr_w = np.convolve(psf_proj_w, psf_proj_w[::-1], mode='full')

    autocorr_h = autocorr_h / autocorr_h.max()
    autocorr_w = autocorr_w / autocorr_w.max()

    h, w = shape[:2]

    weight_h = np.ones(h)
    taper_len_h = len(autocorr_h) // 2
    if 0 < taper_len_h < h // 2:
        weight_h[:taper_len_h] = autocorr_h[taper_len_h:2*taper_len_h]
        weight_h[-taper_len_h:] = autocorr_h[taper_len_h:2*taper_len_h][::-1]

    weight_w = np.ones(w)
    taper_len_w = len(autocorr_w) // 2
    if 0 < taper_len_w < w // 2:
        weight_w[:taper_len_w] = autocorr_w[taper_len_w:2*taper_len_w]
        weight_w[-taper_len_w:] = autocorr_w[taper_len_w:2*taper_len_w][::-1]

    return np.outer(weight_h, weight_w)


@lru_cache(maxsize=TAPER_CACHE_SIZE)
def _cached_taper_weights(psf_bytes, psf_shape, shape):
    """Taper weights keyed on the raw bytes of a normalized float64 PSF."""
    psf = np.frombuffer(psf_bytes, dtype=np.float64).reshape(psf_shape)
    weight = _create_taper_weights(psf, shape)
    # shared between callers
    weight.setflags(write=False)
    return weight


def edgetaper(img, psf, n_iterations=1):
    """
    Taper image edges to reduce boundary artifacts in FFT deconvolution.

    Blends the image edges with a blurred version of the image, so the
    periodic extension assumed by the FFT has no hard seams.

    Parameters
    ----------
    img : ndarray
        Input image (2D)
    psf : ndarray
        Point spread function used for blurring
    n_iterations : int
        Number of tapering iterations

    Returns
    -------
    tapered : ndarray
        Edge-tapered image
    """
    img = np.asarray(img, dtype=np.float64)
    psf = np.asarray(psf, dtype=np.float64)

    psf_norm = psf / psf.sum()

    weight = _cached_taper_weights(psf_norm.tobytes(), psf_norm.shape, img.shape[:2])

    result = img.copy()
    for _ in range(n_iterations):
        blurred = ndimage.convolve(result, psf_norm, mode='wrap')
        result = weight * result + (1 - weight) * blurred

    return result


def img_to_norm_grayscale(img):
    """
    Convert image to normalized grayscale in range [0, 1].

    Parameters
    ----------
    img : ndarray
        Input image (can be color or grayscale, any dtype)

    Returns
    -------
    gray : ndarray
        Grayscale image normalized to [0, 1]
    """
    img = np.asarray(img)

    if img.ndim == 3 and img.shape[2] >= 3:
        gray = 0.299 * img[:, :, 0] + 0.587 * img[:, :, 1] + 0.114 * img[:, :, 2]
    else:
        gray = img.squeeze()

    gray = gray.astype(np.float64)

    if np.issubdtype(img.dtype, np.integer):
        info = np.iinfo(img.dtype)
        gray = (gray - info.min) / (info.max - info.min)
    else:
        vmin, vmax = gray.min(), gray.max()
        if vmax > vmin:
            gray = (gray - vmin) / (vmax - vmin)
        else:
            gray = np.zeros_like(gray)

    return gray


def img_to_float(img):
    """
    Convert an image to float64 in [0, 1] without changing its channels.

    Integer images are scaled by their dtype range, float images are
    assumed to be in [0, 1] already.
    """
    img = np.asarray(img)
    if np.issubdtype(img.dtype, np.integer):
        info = np.iinfo(img.dtype)
        return (img.astype(np.float64) - info.min) / (info.max - info.min)
    return img.astype(np.float64)


def to_uint8(img):
    """Clamp a [0, 1] float image and scale it to 8 bit."""
    return (np.clip(img, 0.0, 1.0) * 255).astype(np.uint8)


def sobel_gradients(image):
    """
    3x3 Sobel gradients in x (columns) and y (rows) direction.

    Returns
    -------
    gx, gy : ndarray
    """
    image = np.asarray(image, dtype=np.float64)
    gx = ndimage.sobel(image, axis=1, mode='reflect')
    gy = ndimage.sobel(image, axis=0, mode='reflect')
    return gx, gy


def normalize_symmetric(values):
    """Scale by the largest magnitude so values lie in [-1, 1] and zero stays zero."""
    values = np.asarray(values, dtype=np.float64)
    peak = np.abs(values).max() if values.size else 0.0
    if peak > 0:
        return values / peak
    return np.zeros_like(values)


def normalize_kernel(kernel):
    """
    Make a kernel energy preserving: non-negative and summing to one.

    Returns None if the kernel has no positive mass.
    """
    kernel = np.maximum(np.asarray(kernel, dtype=np.float64), 0)
    total = kernel.sum()
    if not np.isfinite(total) or total <= 0:
        return None
    return kernel / total


def kernel_entropy(kernel):
    """
    Shannon entropy -sum(p log p) over the positive kernel entries.

    A peaked, confident kernel has low entropy.
    """
    kernel = np.asarray(kernel, dtype=np.float64)
    p = kernel[kernel > 0]
    return float(-np.sum(p * np.log(p)))


def to_gray_float(img):
    """Grayscale float image in [0, 1] (luminance for color input)."""
    img = img_to_float(img)
    if img.ndim == 3 and img.shape[2] >= 3:
        return 0.299 * img[:, :, 0] + 0.587 * img[:, :, 1] + 0.114 * img[:, :, 2]
    if img.ndim == 3:
        return img[:, :, 0]
    return img
