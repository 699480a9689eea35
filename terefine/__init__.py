"""
terefine: consensus refinement for transposable element families.

Iteratively re-calls repeat family consensus sequences from instances
aligned with an external search engine, extends them through H pads and
corrects spurious indels introduced by transitive alignment.
"""

__version__ = "0.1.0"
__author__ = "terefine developers"

from .refine import main as refine_main
from .indels import main as indels_main

__all__ = ["refine_main", "indels_main", "__version__"]
