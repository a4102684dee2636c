"""
Ralph - run an agent session in a loop until it declares the task done.

Usage:
    ralph run --prompt-file TASK.md --completion-promise DONE

Heavy modules (core.loop, core.selector) are NOT re-exported here to
avoid circular imports.  Import them directly::

    from ralph.core.loop import LoopController, run_loop
    from ralph.core.selector import ModelSelector
"""

__version__ = "0.1.0"

from ralph.core.errors import ConfigError, ModelIncompatible, ProviderError, RalphError

__all__ = [
    "ConfigError",
    "ModelIncompatible",
    "ProviderError",
    "RalphError",
    "__version__",
]
