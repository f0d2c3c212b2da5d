"""
Rudimentary type [re-]definitions for Python runtime & mypy.

Some standard library classes are generics for type-checkers only
(e.g. ``logging.LoggerAdapter``), but not subscriptable at runtime.
This module defines them in a most suitable and reusable way.
"""
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    LoggerAdapter = logging.LoggerAdapter[Any]
else:
    LoggerAdapter = logging.LoggerAdapter

# As publicly exposed: we only promise that it is based on one of the built-in loggable classes.
Logger = logging.Logger | LoggerAdapter
