"""Core module - loop controller, governors, sessions and model switching.

Only the exception taxonomy is re-exported here; the other submodules pull
in config and llm.  Import them directly::

    from ralph.core.loop import LoopController
    from ralph.core.outcome import Completed, BudgetExceeded
"""

from ralph.core.errors import (
    ConfigError,
    ModelIncompatible,
    ProviderError,
    RalphError,
    UnknownModelError,
)

__all__ = [
    "RalphError",
    "ProviderError",
    "ModelIncompatible",
    "UnknownModelError",
    "ConfigError",
]
