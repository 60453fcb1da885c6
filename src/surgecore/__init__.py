"""
surgecore - Synthetic load generation and performance regression engine.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import DependencyContainer
from .definition import TestDefinition, build_definition, load_definition
from .engine import LoadTestService

__all__ = [
    "__version__",
    "Config",
    "DependencyContainer",
    "LoadTestService",
    "TestDefinition",
    "build_definition",
    "load_definition",
]
