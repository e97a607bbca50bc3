"""
Core module for MCU Flasher.

This module provides the single source of truth for:
- Result objects (results.py)
- Standardized warnings/messages (messages.py)
- Option value parsing (parsing.py)
- Unified flash/convert/inspect workflows (actions.py)

Front ends should call into this module rather than implementing their own
logic. parsing and actions depend on the flasher itself, so import them by
their module path.
"""

from .results import OperationResult, FlashResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    warnings_from_strings,
    result_to_warnings,
)

__all__ = [
    # Results
    "OperationResult",
    "FlashResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "warnings_from_strings",
    "result_to_warnings",
]
