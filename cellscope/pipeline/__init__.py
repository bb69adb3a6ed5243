"""Pipeline orchestration module.

Runs a YAML-defined sequence of analysis stages over one Dataset, in
dependency order, with checkpoint and resume support.

Example Usage
-------------
>>> from cellscope.pipeline import (
...     PipelineConfig,
...     PipelineExecutor,
...     PipelineLogger,
... )
>>> # Load configuration
>>> config = PipelineConfig("pipeline.yaml")
>>> config.load()
>>> config.parse_stages()
>>> # Setup logging
>>> logger = PipelineLogger("logs/")
>>> logger.setup()
>>> # Execute pipeline
>>> executor = PipelineExecutor(config, logger, state_file="out/.state.json")
>>> dataset = executor.run()
"""

# Stage representation
from .stage import Stage

# Configuration
from .config import PipelineConfig

# Logging
from .logger import (
    ColoredFormatter,
    PipelineLogger,
)

# Operations
from .operations import (
    OPERATIONS,
    PipelineContext,
    get_operation,
    list_operations,
    register_operation,
)

# Execution
from .executor import PipelineExecutor

__all__ = [
    # Stage
    "Stage",
    # Config
    "PipelineConfig",
    # Logging
    "ColoredFormatter",
    "PipelineLogger",
    # Operations
    "OPERATIONS",
    "PipelineContext",
    "get_operation",
    "list_operations",
    "register_operation",
    # Execution
    "PipelineExecutor",
]
