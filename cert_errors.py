"""
Exception hierarchy for certificate rendering.

Every failure that reaches a caller of the batch, preview or archive
operations is a ``CertificateError`` so the serving layer can report it as a
single structured failure.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CertificateError(Exception):
    """Base exception for all certificate rendering errors"""

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = context or {}

    def __str__(self):
        parts = [self.message]
        if self.cause:
            parts.append(f" (caused by: {type(self.cause).__name__}: {self.cause})")
        if self.context:
            parts.append(f" Context: {self.context}")
        return "".join(parts)


class TemplateDecodeError(CertificateError):
    """Template bytes are corrupt or not a supported raster format"""
    pass


class BatchGenerationError(CertificateError):
    """A row failed to render or its output could not be written"""
    pass


class ArchiveError(CertificateError):
    """Packaging the batch into an archive failed"""
    pass


class FontDownloadError(CertificateError):
    """A catalog font could not be fetched or cached"""
    pass
