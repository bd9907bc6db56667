"""Exception hierarchy for the scan pipeline."""


class ScanPipelineError(Exception):
    """Base class for all pipeline errors."""


class TemplateLoadError(ScanPipelineError):
    """Template catalogue could not be loaded or parsed."""


class UnknownTemplateError(ScanPipelineError):
    """A template key is not present in the registry."""


class IntakeError(ScanPipelineError):
    """A file was rejected at batch intake."""


class InvalidTransitionError(ScanPipelineError):
    """An item was asked to move to a state it cannot reach."""


class BatchAlreadyStartedError(ScanPipelineError):
    """The batch has already been dispatched and cannot be modified or rerun."""


class ReviewError(ScanPipelineError):
    """A review operation was attempted on an item that cannot be reviewed."""


class PersistenceError(ScanPipelineError):
    """The document store rejected or failed a write."""
