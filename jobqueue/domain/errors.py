class JobError(Exception):
    """Base exception for job queue errors."""
    pass

class ConfigurationError(JobError):
    pass

class ProviderClosedError(JobError):
    def __init__(self, provider_name: str = "queue"):
        super().__init__(f"Queue provider '{provider_name}' is closed")

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")

class ReceiptError(JobError):
    pass

class StaleReceiptError(ReceiptError):
    def __init__(self, receipt_handle: str):
        self.receipt_handle = receipt_handle
        super().__init__(f"Job not found for receipt handle: {receipt_handle}")

class NoHandlerError(JobError):
    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")

class JobCancelledError(JobError):
    pass

class JobTimeoutError(JobCancelledError):
    pass

class ScheduleError(JobError):
    pass
