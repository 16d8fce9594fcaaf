"""
Exception hierarchy for the migration engine.

Row-level conditions (RowValidationError) are recorded on the session and
never abort a run. SystemicError and MigrationStateError propagate.
"""
from typing import Optional


class MigratorError(Exception):
    """Base class for all migration engine errors."""

    pass


class AnalysisError(MigratorError):
    """A sheet (or the whole workbook) could not be parsed or profiled."""

    def __init__(self, message: str, sheet: Optional[str] = None):
        self.sheet = sheet
        self.message = message
        prefix = f"Sheet '{sheet}': " if sheet else ""
        super().__init__(f"{prefix}{message}")


class MappingAmbiguityError(MigratorError):
    """Too many low-confidence mappings to proceed without an override."""

    def __init__(self, low_ratio: float, threshold: float):
        self.low_ratio = low_ratio
        self.threshold = threshold
        super().__init__(
            f"{low_ratio:.0%} of mapped fields are below review confidence "
            f"(max {threshold:.0%}); override required to proceed"
        )


class MappingConflictError(MigratorError, ValueError):
    """An edited or approved mapping is inconsistent with the target schema."""

    pass


class RowValidationError(MigratorError):
    """A single row failed validation; recorded as an import error."""

    def __init__(self, field: Optional[str], code: str, message: str):
        self.field = field
        self.code = code
        self.message = message
        super().__init__(message)


class SystemicError(MigratorError):
    """Store, connectivity or transaction failure. Fails the session."""

    pass


class MigrationStateError(MigratorError):
    """Operation not valid for the current session state."""

    pass


class MigrationAborted(MigratorError):
    """Raised at a batch boundary once the session has been aborted."""

    pass
