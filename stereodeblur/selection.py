"""
Kernel candidate selection.

Each region of the tree gets up to three kernel candidates: its own
estimate, the kernel of its parent and, if that one is reliable, the
kernel of its sibling. A candidate is judged by deconvolving the
reference view with it: a good kernel gives a latent image whose
gradients barely change under a shock filter, so the gradient
correlation between the latent image and its shock-filtered version is
high and the energy ``1 - correlation`` low.
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy import ndimage

from .coherence import coherence_filter
from .utils import sobel_gradients

logger = logging.getLogger(__name__)

OWN, PARENT, SIBLING = 'own', 'parent', 'sibling'

# Gaussian with a 5x5 support
_SMOOTH_SIGMA = 1.1
_SMOOTH_TRUNCATE = 2.0 / _SMOOTH_SIGMA


def is_reliable(entropy, peer_entropies, factor=0.2):
    """
    Whether a kernel is confident compared to the kernels of its level.

    A kernel is reliable if its entropy exceeds the mean entropy of its
    level peers by less than ``factor`` times that mean.
    """
    mean = float(np.mean(peer_entropies))
    return entropy - mean < factor * mean


def is_reliable_psf(tree, node_id, factor=0.2):
    """``is_reliable`` for a node of the region tree."""
    entropies = [tree[peer].entropy for peer in tree.level_peers(node_id)
                 if tree[peer].entropy is not None]
    entropy = tree[node_id].entropy
    if entropy is None or not entropies:
        return False
    return is_reliable(entropy, entropies, factor)


def cross_correlation(x, y, mask):
    """
    Normalized cross-correlation of two images over a mask.

    Returns 0 if either image is constant on the mask.
    """
    mask = np.asarray(mask, dtype=bool)
    x = np.asarray(x, dtype=np.float64)[mask]
    y = np.asarray(y, dtype=np.float64)[mask]
    if x.size == 0:
        return 0.0

    x = x - x.mean()
    y = y - y.mean()
    denom = np.sqrt(np.sum(x * x) * np.sum(y * y))
    if denom == 0:
        return 0.0
    return float(np.sum(x * y) / denom)


def _normed_gradient_magnitude(image):
    gx, gy = sobel_gradients(image)
    magnitude = np.hypot(gx, gy)
    peak = magnitude.max()
    if peak > 0:
        magnitude /= peak
    return magnitude


def gradient_correlation(image1, image2, mask):
    """Correlation of the gradient magnitudes (each scaled to [0, 1]) over a mask."""
    return cross_correlation(_normed_gradient_magnitude(image1),
                             _normed_gradient_magnitude(image2), mask)


@dataclass
class SelectionResult:
    winner: int
    energies: list
    latent: np.ndarray = None


class CandidateSelector:
    """
    Scores kernel candidates on a fixed blurred image.

    Parameters
    ----------
    image : ndarray
        Blurred grayscale float image of the reference view
    deconvolver : Deconvolver
        Solver used to produce the latent images
    """

    def __init__(self, image, deconvolver):
        self.image = image
        self.deconvolver = deconvolver

    def energy(self, kernel, mask):
        """
        Energy of one kernel on a region.

        Returns
        -------
        energy : float
            ``1 - gradient correlation``, lower is better
        latent : ndarray
            Latent image clamped to [0, 1]
        """
        latent = self.deconvolver.deconvolve(self.image, kernel, mask)
        latent = np.clip(latent, 0.0, 1.0)
        display = latent * 255

        # the whole image is smoothed to avoid border effects at the region
        smoothed = ndimage.gaussian_filter(display, _SMOOTH_SIGMA,
                                           truncate=_SMOOTH_TRUNCATE, mode='reflect')
        shock_filtered = coherence_filter(smoothed)

        return 1.0 - gradient_correlation(display, shock_filtered, mask), latent

    def select(self, candidates, mask):
        """
        Pick the candidate with the smallest energy.

        Ties go to the earlier candidate, so the order of ``candidates``
        decides between equally good kernels.
        """
        min_energy = np.inf
        winner = 0
        winner_latent = None
        energies = []

        for i, kernel in enumerate(candidates):
            energy, latent = self.energy(kernel, mask)
            energies.append(energy)
            if energy < min_energy:
                min_energy = energy
                winner = i
                winner_latent = latent

        return SelectionResult(winner, energies, winner_latent)
