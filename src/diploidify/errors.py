"""Exception types shared across the pipeline.

Only classification conflicts are absorbed silently (see
:class:`diploidify.classifier.AssignmentTable`); everything below ends the run.
"""

from __future__ import annotations

from typing import Optional


class ConfigurationError(ValueError):
    """Invalid or missing run configuration, detected before any processing."""


class UpstreamArtifactError(FileNotFoundError):
    """An artifact expected from an earlier stage is missing or empty."""


class MissingTagError(KeyError):
    """A required auxiliary tag is absent from an alignment record."""

    def __init__(self, tag: str, read_name: Optional[str] = None) -> None:
        super().__init__(tag, read_name)
        self.tag = tag
        self.read_name = read_name

    def __str__(self) -> str:
        where = f" on read {self.read_name!r}" if self.read_name else ""
        return f"Required alignment tag '{self.tag}' is missing{where}"


class ChromosomeTaskError(RuntimeError):
    """A per-chromosome task failed; the whole run is aborted."""

    def __init__(self, message: str, *, stage: str, chrom: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.chrom = chrom
