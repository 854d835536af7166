class MediaPipelineError(Exception):
    """Base error. `message` is safe to return to API callers."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(MediaPipelineError):
    status_code = 400
    default_message = "Invalid input"


class QueueUnavailable(MediaPipelineError):
    default_message = "Failed to queue job"


class CompressionFailure(MediaPipelineError):
    default_message = "Compression failed"


class UploadFailure(MediaPipelineError):
    default_message = "Upload failed"


class JobNotFound(MediaPipelineError):
    status_code = 404
    default_message = "Job not found"


class DispatchUnavailable(MediaPipelineError):
    """The job could not be started; the delivery should be retried."""

    status_code = 503
    default_message = "Job could not be started"


class JobAbandoned(MediaPipelineError):
    default_message = "Job is no longer processing"
