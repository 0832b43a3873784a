"""layersmith: Dockerfile interpreter and layered build-plan executor.

Parses a build file, plans a DAG of stages, resolves every layer against a
content-addressed cache, executes cache misses against immutable
filesystem snapshots and assembles an image manifest.
"""

__version__ = "0.1.0"
__description__ = "Dockerfile interpreter and layered build-plan executor"

from layersmith.core.builder import Builder, BuildResult
from layersmith.core.errors import BuildError
from layersmith.models.config import BuildOptions

__all__ = ["Builder", "BuildResult", "BuildOptions", "BuildError", "__version__"]
