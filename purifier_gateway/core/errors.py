# core/errors.py
"""
Error taxonomy for the purifier gateway
Errors raised by bleach itself are not wrapped and pass through unchanged
"""


class PurifierError(Exception):
    """Base class for gateway errors"""


class StorageError(PurifierError):
    """Cache directory could not be created or is not a directory"""

    def __init__(self, path, reason):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Cache path unavailable: {self.path} ({reason})")


class ConfigLockedError(PurifierError):
    """Configuration mutated after it was finalized"""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Cannot {action}: configuration is finalized")


class UnsupportedInputError(PurifierError, TypeError):
    """clean() received a shape it does not handle"""

    def __init__(self, value):
        self.value_type = type(value).__name__
        super().__init__(f"Unsupported input type for clean(): {self.value_type}")


class DefinitionError(PurifierError, ValueError):
    """Invalid element/attribute definition record or value spec"""
