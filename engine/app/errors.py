class BackupError(Exception):
    """Base class for every error raised by the backup engine."""


class ConfigurationError(BackupError):
    pass


class DatabaseConnectionError(BackupError):
    """The database target could not be reached."""


class DumpError(BackupError):
    """The engine failed while dumping one database."""


class UploadError(BackupError):
    """An artifact was produced but could not be delivered."""


class SchedulerInternalError(BackupError):
    pass


class UnknownJobError(BackupError, KeyError):
    def __str__(self):
        return f"unknown job: {self.args[0]}" if self.args else "unknown job"


class JobAlreadyRunning(BackupError):
    def __str__(self):
        return f"job '{self.args[0]}' is already running" if self.args else "job is already running"


class ShutdownInProgress(BackupError):
    pass
