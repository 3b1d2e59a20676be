"""Kernel Image Generator - content-addressed kernel container image builds.

This package drives container builds of several kernel versions, tags the
resulting images from the git tree hash of the build directory, and pushes
hash-qualified and floating tags plus multi-arch manifest lists.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
