# Depth-dependent motion deblurring of stereo image pairs.
# Python implementation of the region tree method from:
# Z. Hu, L. Xu, M.-H. Yang.
# "Joint Depth Estimation and Camera Shake Removal from Single Blurry Image."
# CVPR 2014 (stereo variant with joint two-view kernel estimation)

from .config import DeblurConfig
from .errors import ConfigurationError, ResourceError, NumericFailure, StateError
from .utils import psf2otf, edgetaper, img_to_norm_grayscale, kernel_entropy
from .deconvolution import (
    Deconvolver,
    FFTDeconvolver,
    IRLSDeconvolver,
    deconvolve_fft,
    deconvolve_irls,
    make_deconvolver,
)
from .coherence import coherence_filter
from .edge_map import compute_salient_edge_map
from .region_tree import View, RegionTree, RegionTreeNode, build_region_tree
from .joint_psf import GradientCache, joint_psf_estimation, estimate_child_psf
from .selection import CandidateSelector, is_reliable, gradient_correlation
from .tree_walk import ConcurrentTreeWalker, PassOutput
from .reconstruction import LatentStore, Reconstructor
from .disparity import estimate_disparity
from .toplevel import load_kernel, load_toplevel_kernels, estimate_toplevel_kernel
from .depth_deblur import DepthDeblur
from .tracing import tracer, trace
