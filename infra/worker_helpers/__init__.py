"""Common worker helpers.

Shared by the hop processors so every delivery path applies the same
resumption guard.
"""

from .state_guard import HopGuard

__all__ = ["HopGuard"]
