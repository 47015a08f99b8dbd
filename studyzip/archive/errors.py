"""Failure taxonomy for archive creation, storage and retrieval."""


class ArchiveError(Exception):
    """Base class for every failure recorded on a job or archive record."""


class TransientNetworkError(ArchiveError):
    """An export fetch or upload timed out or lost its connection.

    The job fails; a new create call retries it.
    """


class PartialConversionError(ArchiveError):
    """One source file could not be converted. Skipped, never fatal."""

    def __init__(self, file_id: str, reason: str):
        super().__init__(f"{file_id}: {reason}")
        self.file_id = file_id
        self.reason = reason


class TotalConversionFailure(ArchiveError):
    """Local assembly converted zero files."""


class StorageProviderError(ArchiveError):
    """The object store rejected an operation (auth, quota, bucket)."""


class RecordNotFound(ArchiveError):
    """The dataset is unknown to the Dataset Store."""

    def __init__(self, dataset_id: str):
        super().__init__(f"Dataset {dataset_id} not found")
        self.dataset_id = dataset_id
