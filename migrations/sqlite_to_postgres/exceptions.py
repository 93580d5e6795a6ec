class MigrationException(Exception):
    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class SourceDatabaseError(MigrationException):
    pass


class TargetConnectionError(MigrationException):
    pass


class ConversionError(MigrationException):
    def __init__(self, value, target_type: str, field: str | None = None, table: str | None = None, reason: str = ""):
        self.value = value
        self.target_type = target_type
        self.field = field
        self.table = table
        location = ".".join(part for part in (table, field) if part) or "value"
        message = f"Cannot convert {location}={value!r} to {target_type}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"table": table, "field": field, "target_type": target_type})


class BackupError(MigrationException):
    pass


class RollbackUnavailableError(MigrationException):
    def __init__(self, message: str = "No backup available for rollback"):
        super().__init__(message)


class PhaseError(MigrationException):
    def __init__(self, phase: str, message: str):
        self.phase = phase
        super().__init__(f"{phase} phase failed: {message}", {"phase": phase})


class MigrationCancelled(MigrationException):
    def __init__(self, message: str = "Migration cancelled by user"):
        super().__init__(message)
