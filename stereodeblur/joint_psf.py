"""
Joint PSF estimation from both views of a stereo pair.

For a region visible in the reference and the matching view one kernel
is solved for, using the salient edges of a latent estimate of each view
as the sharp reference (Hu et al., "Joint Depth Estimation and Camera
Shake Removal from Single Blurry Image", CVPR 2014, Xu & Jia 2012):

    E(k) = sum_v ||grad S_v * k - grad B_v||^2 + gamma ||k||^2

which has the closed form solution per frequency

              sum_v conj(F(dx S_v)) F(dx B_v) + conj(F(dy S_v)) F(dy B_v)
    F(k) = -----------------------------------------------------------------
            sum_v |F(dx S_v)|^2 + |F(dy S_v)|^2  +  gamma conj(F(delta)) F(delta)
"""

import logging

import numpy as np
from scipy.fft import fft2, ifft2

from .edge_map import compute_salient_edge_map
from .region_tree import View
from .utils import sobel_gradients, normalize_symmetric
from .tracing import trace_function

logger = logging.getLogger(__name__)


class GradientCache:
    """
    Sobel gradients of the blurred views, normalized to [-1, 1].

    Computed once per run and shared read-only by all joint estimations.
    """

    def __init__(self, images):
        self.gradients = []
        for image in images:
            gx, gy = sobel_gradients(image)
            self.gradients.append((normalize_symmetric(gx), normalize_symmetric(gy)))

    def __getitem__(self, view):
        return self.gradients[view]

    def region_gradients(self, view, mask):
        """Gradients of one view with everything outside ``mask`` set to zero."""
        gx, gy = self.gradients[view]
        mask = np.asarray(mask, dtype=bool)
        return np.where(mask, gx, 0.0), np.where(mask, gy, 0.0)


@trace_function("joint_psf")
def joint_psf_estimation(salient_edges, blurred_gradients, psf_width, regularizer=1.0,
                         threshold=0.0):
    """
    Solve for one kernel shared by several views.

    Parameters
    ----------
    salient_edges : sequence of (ndarray, ndarray)
        Per view the salient x/y gradients of the latent image, restricted
        to the region
    blurred_gradients : sequence of (ndarray, ndarray)
        Per view the x/y gradients of the blurred image, restricted to the
        same region
    psf_width : int
        Odd width of the square kernel
    regularizer : float
        Weight gamma of the kernel energy term
    threshold : float
        Entries below this fraction of the kernel peak are set to zero

    Returns
    -------
    psf : ndarray
        Non-negative (psf_width, psf_width) kernel summing to one, or all
        zeros if the regions carry no information (e.g. empty masks)
    """
    if psf_width % 2 == 0:
        raise ValueError(f"psf_width must be odd, got {psf_width}")
    if len(salient_edges) != len(blurred_gradients) or not salient_edges:
        raise ValueError("Need salient edges and blurred gradients for the same views")

    shape = salient_edges[0][0].shape
    if shape[0] < psf_width or shape[1] < psf_width:
        raise ValueError(f"Image {shape} is smaller than the kernel width {psf_width}")

    numer = np.zeros(shape, dtype=np.complex128)
    denom = np.zeros(shape, dtype=np.complex128)

    for (sx, sy), (bx, by) in zip(salient_edges, blurred_gradients):
        fsx, fsy = fft2(sx), fft2(sy)
        fbx, fby = fft2(bx), fft2(by)
        numer += np.conj(fsx) * fbx + np.conj(fsy) * fby
        denom += np.conj(fsx) * fsx + np.conj(fsy) * fsy

    # the transformed unit impulse spreads the scalar weight over all bins
    delta = np.zeros(shape)
    delta[0, 0] = 1.0
    fd = fft2(delta)
    denom += regularizer * np.conj(fd) * fd

    kernel = np.real(ifft2(numer / denom))

    # negative values are noise, not blur mass
    kernel = np.maximum(kernel, 0)

    # the kernel is centered at (0, 0); swap quadrants before cropping
    half = (psf_width - 1) // 2
    kernel = np.roll(kernel, (half, half), axis=(0, 1))
    psf = kernel[:psf_width, :psf_width].copy()

    peak = psf.max()
    if peak <= 0:
        logger.warning("Joint PSF estimation found no kernel mass, returning zero kernel")
        return np.zeros((psf_width, psf_width))

    # noise floor around the blur path
    psf[psf < threshold * peak] = 0.0

    return psf / psf.sum()


def estimate_child_psf(images, gradients, parent_psf, masks, psf_width,
                       deconvolver, regularizer=1.0, threshold=0.0):
    """
    Estimate the kernel of a region from the kernel of its parent region.

    Both views are deconvolved with the parent kernel, the salient edges of
    each latent image within the view's mask are extracted, and the joint
    estimation is solved against the masked blurred gradients.

    Parameters
    ----------
    images : sequence of ndarray
        Blurred grayscale float images indexed by ``View``
    gradients : GradientCache
        Gradients of the same images
    parent_psf : ndarray
        Kernel of the parent region
    masks : sequence of ndarray
        Region masks indexed by ``View``
    psf_width : int
        Odd kernel width
    deconvolver : Deconvolver
        Solver used for the latent images
    regularizer : float
        Kernel energy weight
    threshold : float
        Relative noise floor of the kernel, see ``joint_psf_estimation``

    Returns
    -------
    psf : ndarray
    """
    salient = []
    blurred = []
    for view in View:
        latent = deconvolver.deconvolve(images[view], parent_psf, masks[view])
        salient.append(compute_salient_edge_map(latent, psf_width, masks[view]))
        blurred.append(gradients.region_gradients(view, masks[view]))

    return joint_psf_estimation(salient, blurred, psf_width, regularizer, threshold)
