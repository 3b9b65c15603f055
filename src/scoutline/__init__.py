"""
Scoutline - competitor SEO analysis pipeline.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import DependencyContainer
from .pipeline import PipelineOrchestrator

__all__ = ["__version__", "Config", "DependencyContainer", "PipelineOrchestrator"]
