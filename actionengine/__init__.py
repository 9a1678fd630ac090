"""Action execution engine: validated, approval-gated and reversible business actions."""

from .core.config import VERSION

__version__ = VERSION
