"""
crosspkg - cross-distro package converter

Normalizes .deb, .rpm and .pkg.tar.* packages into one intermediate
representation and re-emits any of the three formats:
- metadata and dependency name translation
- maintainer script translation
- library path relocation
- recursive rebuild of dependencies missing from the target distro
"""

__version__ = "0.1.0"
__author__ = "crosspkg contributors"
