class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be initialized."""


class ImportPipelineError(Exception):
    """Base class for failures raised by the CSV import pipeline."""


class ParseError(ImportPipelineError):
    """Raised when CSV input is empty or cannot be read."""


class MappingIncompleteError(ImportPipelineError):
    """Raised when the column mapping is missing mandatory fields."""

    def __init__(self, problems):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "Column mapping is incomplete")


class ReferenceResolutionError(ImportPipelineError):
    """Raised at commit time when an account, category or goal name no longer resolves."""


class WriteError(ImportPipelineError):
    """Raised by a store when an underlying write fails."""


class ImportSessionNotFound(ImportPipelineError):
    """Raised when a staged import session does not exist or has expired."""
