class JobError(Exception):
    """Base exception for generation queue errors."""
    pass

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")

class GenerationError(JobError):
    """The upstream model call failed; the job may be retried."""
    pass

class EnrichmentError(Exception):
    """An auxiliary context lookup failed. Never fails a job."""
    pass
