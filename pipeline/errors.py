"""Exceptions raised by the validation pipeline.

Content-policy failures (too small, duplicate, blurry, wrong face count or
size) are never raised: they are returned as `CheckVerdict`s and end in
REJECTED. The exceptions below are infrastructure faults that end in ERROR,
or caller errors.
"""


class PipelineError(Exception):
    """Base class for all pipeline faults."""


class ConversionError(PipelineError):
    """The image buffer could not be decoded or converted."""


class HashingError(PipelineError):
    """The perceptual fingerprint could not be computed."""


class ComparisonError(PipelineError):
    """Two fingerprints of different length were compared."""


class MalformedDetectionError(PipelineError):
    """The face-detection capability answered with an unusable payload."""


class ImageNotFoundError(PipelineError, KeyError):
    pass


class BatchNotFoundError(PipelineError, KeyError):
    pass


class InvalidTransitionError(PipelineError):
    """A lifecycle operation was requested from a state that does not allow it."""


class UploadRejectedError(PipelineError):
    """An upload was refused before storage (mime type or size)."""
