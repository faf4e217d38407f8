"""Exceptions related to kots-local."""

__all__ = [
    "KotsException",
    "InputException",
    "AlreadyExistsError",
    "KustomizationParseError",
    "WriteException",
    "TemplateException",
]


class KotsException(Exception):
    """Generic base exception used for this library."""


class InputException(KotsException):
    """Raised when the input files or values are not formatted as expected."""


class AlreadyExistsError(KotsException):
    """Raised when a render target exists and may not be replaced."""


class KustomizationParseError(InputException):
    """Raised when an existing Kustomization file cannot be read or parsed."""


class WriteException(KotsException):
    """Raised when rendered content cannot be serialized or written to disk."""


class TemplateException(InputException):
    """Raised when a template expression fails to evaluate."""
