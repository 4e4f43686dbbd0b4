#!/usr/bin/env python3
"""
Command-line tool for depth-dependent deblurring of a stereo image pair.

Usage:
    ./deblur_stereo.py left.png right.png -o sharp.png
    ./deblur_stereo.py left.png right.png --kernels "kernel{}.png" --color
    ./deblur_stereo.py left.png right.png --estimate-toplevel --deconv fft

The blur kernel is assumed to change with scene depth. The scene is split
into depth layers using the disparity between both views, a hierarchy of
depth regions is built, and kernels are propagated from the top-level
regions down to every layer before each layer is deconvolved with its
own kernel.
"""

import argparse
import logging
import sys
from pathlib import Path

import imageio.v3 as iio

from stereodeblur import DepthDeblur, View, tracer
from stereodeblur.errors import ConfigurationError, NumericFailure, ResourceError, StateError


def main():
    parser = argparse.ArgumentParser(
        description='Deblur a stereo image pair with depth-dependent kernels.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s left.png right.png
  %(prog)s left.png right.png --kernels "kernel{}.png" -o sharp.png
  %(prog)s left.png right.png --estimate-toplevel --psf-width 25 --layers 8
  %(prog)s left.png right.png --deconv fft --threads 8 --color --verbose

Top-level kernels (one per top-level region, default: kernel{}.png):
  --kernels            File name pattern formatted with the region index
  --estimate-toplevel  Blind coarse-to-fine estimation from the left view
        """
    )

    parser.add_argument('left', type=Path,
                        help='Left (reference) view')
    parser.add_argument('right', type=Path,
                        help='Right view')
    parser.add_argument('-o', '--output', type=Path, default=None,
                        help='Output file (default: left_deblur.ext)')

    # Top-level kernel source (mutually exclusive)
    kernel_group = parser.add_mutually_exclusive_group()
    kernel_group.add_argument('--kernels', type=str, default=None, metavar='PATTERN',
                              help='Kernel image pattern, e.g. "kernel{}.png"')
    kernel_group.add_argument('--estimate-toplevel', action='store_true',
                              help='Estimate top-level kernels blindly')

    # Algorithm parameters
    parser.add_argument('--psf-width', type=int, default=35,
                        help='Kernel width, made odd (default: 35)')
    parser.add_argument('--layers', type=int, default=12,
                        help='Number of depth layers, made even (default: 12)')
    parser.add_argument('--max-top-level', type=int, default=3,
                        help='Maximum number of top-level regions (default: 3)')
    parser.add_argument('--disparity', type=str, default='match',
                        choices=['match', 'sgbm'],
                        help='Disparity algorithm (default: match)')
    parser.add_argument('--max-disparity', type=int, default=80,
                        help='Largest disparity in pixels (default: 80)')
    parser.add_argument('--deconv', type=str, default='irls',
                        choices=['fft', 'irls'],
                        help='Deconvolution for kernel selection (default: irls)')
    parser.add_argument('--reconstruction', type=str, default='irls',
                        choices=['fft', 'irls'],
                        help='Deconvolution for the final image (default: irls)')
    parser.add_argument('--threads', type=int, default=4,
                        help='Number of threads (default: 4)')

    # Output options
    parser.add_argument('--view', type=str, default='left', choices=['left', 'right'],
                        help='View to reconstruct (default: left)')
    parser.add_argument('--color', action='store_true',
                        help='Reconstruct the color image instead of grayscale')
    parser.add_argument('--top-level-only', action='store_true',
                        help='Deconvolve only the top-level regions')
    parser.add_argument('--trace', action='store_true',
                        help='Print a timing summary')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Print progress information')

    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')

    # Validate input
    for path in (args.left, args.right):
        if not path.exists():
            print(f"Error: Input file not found: {path}", file=sys.stderr)
            sys.exit(1)

    # Set output path
    if args.output is None:
        args.output = args.left.with_stem(args.left.stem + '_deblur')

    if args.trace:
        tracer.enable()

    # Load images
    if args.verbose:
        print(f"Loading images: {args.left}, {args.right}")

    left = iio.imread(args.left)
    right = iio.imread(args.right)

    if args.verbose:
        print(f"Image size: {left.shape[1]} x {left.shape[0]}")

    try:
        deblur = DepthDeblur(
            left, right,
            psf_width=args.psf_width,
            layers=args.layers,
            deconv_algorithm=args.deconv,
            reconstruction_algorithm=args.reconstruction,
            threads=args.threads,
            max_top_level_nodes=args.max_top_level,
            disparity_algorithm=args.disparity,
            max_disparity=args.max_disparity,
        )

        if args.verbose:
            print(f"\nEstimating {deblur.layers} depth layers ({args.disparity})...")
        deblur.disparity_estimation()

        tree = deblur.region_tree_reconstruction()
        if args.verbose:
            print(f"Region tree: {len(tree)} nodes, {len(tree.top_level_ids)} top-level regions")

        if args.verbose:
            source = 'blind estimation' if args.estimate_toplevel else (args.kernels or 'kernel{}.png')
            print(f"Top-level kernels: {source}")
        deblur.toplevel_kernel_estimation(pattern=args.kernels, estimate=args.estimate_toplevel)

        if not args.top_level_only:
            if args.verbose:
                print(f"\nPropagating kernels ({args.deconv}, {args.threads} threads)...")
            deblur.estimate_mid_level_kernels(args.threads)

        view = View.LEFT if args.view == 'left' else View.RIGHT
        if args.verbose:
            print(f"\nDeconvolving {args.view} view ({args.reconstruction})...")
        if args.top_level_only:
            result = deblur.reconstruct_top_level(view, args.threads, color=args.color)
        else:
            result = deblur.reconstruct_image(view, args.threads, color=args.color)

    except (ConfigurationError, ResourceError, StateError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except NumericFailure as e:
        print(f"Error: Numerical failure: {e}", file=sys.stderr)
        sys.exit(2)

    # Save result
    if args.verbose:
        print(f"\nSaving result: {args.output}")

    iio.imwrite(args.output, result)
    print(f"Deblurred image saved to: {args.output}")

    if args.trace:
        tracer.print_summary()


if __name__ == '__main__':
    main()
