"""
Engine Exceptions

Compute operations raise ``InvalidArgumentError`` for bad input and let
``StorageError`` from the gateway propagate. Read operations never raise for
bad input; they return empty results instead.
"""

from typing import Optional


class PopularityEngineError(Exception):
    """Base class for all engine errors"""


class InvalidArgumentError(PopularityEngineError, ValueError):
    """Input rejected before any write was attempted"""
    
    def __init__(self, message: str, argument: Optional[str] = None):
        super().__init__(message)
        self.argument = argument


class StorageError(PopularityEngineError):
    """
    Storage gateway failure (timeout, connection loss, constraint violation).
    
    The engine does not retry; callers decide the retry policy.
    """
    
    retryable = True
    
    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
