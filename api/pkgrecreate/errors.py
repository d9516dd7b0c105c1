"""Error taxonomy for the package reconstruction pipeline."""

from __future__ import annotations

from typing import List, Optional


class RecreateError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, suggestion: Optional[str] = None) -> None:
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)

    def __str__(self) -> str:
        if self.suggestion:
            return f"{self.message}\nSuggestion: {self.suggestion}"
        return self.message


class UsageError(RecreateError):
    """Bad or missing input; raised before any side effect."""


class ConfigError(RecreateError):
    """Configuration file or override could not be applied."""


class HostEnvironmentError(RecreateError):
    """A required external tool is missing or unusable."""


class PackageNotInstalled(RecreateError):
    def __init__(self, name: str) -> None:
        super().__init__(
            f"Package '{name}' is not installed on the system.",
            "Check the name with: pacman -Qs <pattern>",
        )
        self.name = name


class FileListingError(RecreateError):
    """The package database could not list the package's files."""


class EmptyPackageError(RecreateError):
    def __init__(self, name: str) -> None:
        super().__init__(
            f"Package '{name}' owns no files.",
            "Pass --allow-empty to build a package without content",
        )
        self.name = name


class StagingBusyError(RecreateError):
    """Another run holds the staging lock for the same package."""


class PartialStagingError(RecreateError):
    """Some installed entries could not be copied into the staging root."""

    def __init__(self, failures: List[dict], limit: int) -> None:
        preview = ", ".join(f["path"] for f in failures[:5])
        more = f" (+{len(failures) - 5} more)" if len(failures) > 5 else ""
        super().__init__(
            f"{len(failures)} entr{'y' if len(failures) == 1 else 'ies'} could not be staged "
            f"(allowed: {limit}): {preview}{more}",
            "Re-run with --max-copy-failures N to tolerate them",
        )
        self.failures = failures
        self.limit = limit


class MetadataSynthesisError(RecreateError):
    """Package database output could not be turned into package metadata."""


class ManifestBuildError(RecreateError):
    """The tree manifest could not be computed or written."""


class ArchiveCreationError(RecreateError):
    """The compressed package archive could not be written."""


class ChecksumError(RecreateError):
    """The archive checksum sidecar could not be written."""


class ArchiveVerificationError(RecreateError):
    """The finished archive is missing, empty or unreadable."""


class PipelineCancelled(RecreateError):
    def __init__(self, stage: str) -> None:
        super().__init__(f"Cancelled during {stage}")
        self.stage = stage
