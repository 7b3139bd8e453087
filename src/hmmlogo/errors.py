"""
Exception hierarchy for hmmlogo.
All custom exceptions inherit from HmmLogoError.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class HmmLogoError(Exception):
    """Base exception for all hmmlogo errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __reduce__(self):
        return self.__class__, (self.message, self.details)


class ParseError(HmmLogoError, ValueError):
    """A HMMER file could not be turned into a profile."""


class HeaderMalformed(ParseError):
    """Header section is missing required fields or the model section marker."""


class RowMalformed(ParseError):
    """A model-section line does not fit the grammar of its generation."""

    def __init__(self, line: str, message: Optional[str] = None):
        self.line = line
        super().__init__(message or f"Malformed model line: {line.strip()!r}", {"line": line})

    def __reduce__(self):
        return self.__class__, (self.line, self.message)


class UnsupportedVersion(ParseError):
    """The HMMER version token names a generation that has no parser."""

    def __init__(self, version: str):
        self.version = version
        super().__init__(f"Unsupported HMMER version: {version}", {"version": version})

    def __reduce__(self):
        return self.__class__, (self.version,)


class CodecError(HmmLogoError, ValueError):
    """Base class for score conversion errors."""


class InvalidToken(CodecError):
    """A score token is neither numeric nor the zero-probability sentinel."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Invalid score token: {token!r}", {"token": token})

    def __reduce__(self):
        return self.__class__, (self.token,)


class GeometryError(HmmLogoError):
    """Base class for layout computation errors."""


class InvalidStartTransitionArity(GeometryError):
    """Start transition vector is neither 3 (HMMER2) nor 7 (HMMER3) wide."""

    def __init__(self, width: int):
        self.width = width
        super().__init__(f"Start transitions must have 3 or 7 entries, got {width}", {"width": width})

    def __reduce__(self):
        return self.__class__, (self.width,)


class FileUnreadable(ParseError):
    """A HMMER file could not be opened or decoded as text."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot read {path}: {reason}", {"path": path})

    def __reduce__(self):
        return self.__class__, (self.path, self.reason)
