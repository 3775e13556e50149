from __future__ import annotations


class BackupError(RuntimeError):
    pass


class FetchError(BackupError):
    pass


class ClassificationNegative(BackupError):
    pass


class ExtractionError(BackupError):
    pass


class ArchiveIOError(BackupError):
    pass


class JobNotFoundError(BackupError):
    pass


class JobStateError(BackupError):
    pass
