# clear_engine/errors.py

"""
Error taxonomy shared by the training core.

Every error derives from EngineError and from the builtin exception a caller
would naturally expect (ValueError for bad input, IndexError for bad indices,
and so on), so plain `except ValueError` still works.
"""


class EngineError(Exception):
    """Base class for all errors raised by clear_engine."""


class ConfigError(EngineError, ValueError):
    """Invalid or missing configuration (e.g. kernel larger than the padded input)."""


class FormatError(EngineError, ValueError):
    """Dataset header or payload does not match what the reader expects."""


class OutOfRangeError(EngineError, IndexError):
    """Index access beyond the number of stored instances."""


class InvalidKeyError(EngineError, KeyError):
    """Parameter key or weight tag cannot be encoded/decoded."""

    def __str__(self):
        # KeyError quotes its argument, keep the message readable
        return str(self.args[0]) if self.args else ""


class UsageError(EngineError, RuntimeError):
    """The caller broke an interface contract (wrong call order, disabled call)."""
