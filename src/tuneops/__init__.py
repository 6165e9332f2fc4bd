"""Experiment generation, trial rendering and remote synchronization."""

from tuneops._logging import setup_logging
from tuneops.generator import GenerationResult, Generator, generate
from tuneops.job import JobBuild, build_job, new_job
from tuneops.patching import apply_patches, render_patches
from tuneops.settings import GeneratorSettings, load_settings
from tuneops.sync import Synchronizer

__all__ = [
    "GenerationResult",
    "Generator",
    "GeneratorSettings",
    "JobBuild",
    "Synchronizer",
    "apply_patches",
    "build_job",
    "generate",
    "load_settings",
    "new_job",
    "render_patches",
    "setup_logging",
]
