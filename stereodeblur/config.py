"""
Configuration for depth-dependent stereo deblurring.
"""

from dataclasses import dataclass

from .errors import ConfigurationError

DECONV_ALGORITHMS = ('fft', 'irls')
DISPARITY_ALGORITHMS = ('match', 'sgbm')


@dataclass
class DeblurConfig:
    """
    All tunable parameters of the pipeline.

    Parameters
    ----------
    psf_width : int
        Width of the square blur kernel. Even values are reduced by one.
    layers : int
        Number of depth layers. Odd values are reduced by one.
    deconv_algorithm : str
        Solver used during kernel propagation and candidate selection,
        'fft' (fast, ringing artifacts) or 'irls' (slow, better quality).
    reconstruction_algorithm : str
        Solver used for the final per-region deconvolution.
    threads : int
        Total parallelism (worker threads + calling thread).
    max_top_level_nodes : int
        Upper bound on the number of roots of the region tree.
    disparity_algorithm : str
        'match' or 'sgbm'.
    max_disparity : int
        Largest disparity searched at full resolution.
    reliability_factor : float
        A kernel is reliable if entropy - mean < factor * mean over its level.
    regularizer : float
        Weight of the ||k||^2 term in the joint kernel estimation.
    kernel_threshold : float
        Kernel entries below this fraction of the peak are dropped after
        the joint estimation. 0 keeps the whole estimate.
    """
    psf_width: int = 35
    layers: int = 12
    deconv_algorithm: str = 'irls'
    reconstruction_algorithm: str = 'irls'
    threads: int = 4
    max_top_level_nodes: int = 3
    disparity_algorithm: str = 'match'
    max_disparity: int = 80
    reliability_factor: float = 0.2
    regularizer: float = 1.0
    kernel_threshold: float = 0.05

    def __post_init__(self):
        # odd kernel width is needed for a well defined center
        if self.psf_width % 2 == 0:
            self.psf_width -= 1
        # layers are merged pairwise into the region tree
        if self.layers % 2 != 0:
            self.layers -= 1
        self.validate()

    def validate(self):
        if self.psf_width < 3:
            raise ConfigurationError(f"psf_width must be at least 3, got {self.psf_width}")
        if self.layers < 2:
            raise ConfigurationError(f"layers must be at least 2, got {self.layers}")
        if self.threads < 1:
            raise ConfigurationError(f"threads must be at least 1, got {self.threads}")
        if self.max_top_level_nodes < 1:
            raise ConfigurationError("max_top_level_nodes must be at least 1")
        if self.max_disparity < 1:
            raise ConfigurationError("max_disparity must be positive")
        if self.regularizer <= 0:
            raise ConfigurationError("regularizer must be positive")
        if not 0 <= self.kernel_threshold < 1:
            raise ConfigurationError(
                f"kernel_threshold must be in [0, 1), got {self.kernel_threshold}")
        for name in ('deconv_algorithm', 'reconstruction_algorithm'):
            if getattr(self, name) not in DECONV_ALGORITHMS:
                raise ConfigurationError(
                    f"Unsupported {name} '{getattr(self, name)}', "
                    f"choose one of {', '.join(DECONV_ALGORITHMS)}")
        if self.disparity_algorithm not in DISPARITY_ALGORITHMS:
            raise ConfigurationError(
                f"Unsupported disparity algorithm '{self.disparity_algorithm}', "
                f"choose one of {', '.join(DISPARITY_ALGORITHMS)}")
