"""
Error taxonomy for the extraction pipeline.

None of these escape SupplementExtractor.extract(); they are raised inside
layers and services and converted to fallback transitions by the
orchestrators.
"""


class ExtractionError(Exception):
    """Base class for pipeline errors."""


class MalformedInputError(ExtractionError):
    """Markup produced no semantic blocks."""


class SchemaValidationError(ExtractionError):
    """A model response did not match the normalized record schema."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])


class ExternalServiceError(ExtractionError):
    """Completion or vision service failed: timeout, non-2xx, unparsable body."""

    def __init__(self, message, service=None):
        super().__init__(message)
        self.service = service


class UnitConversionError(ExtractionError, ValueError):
    """Dosage unit is not one the pipeline can express in milligrams."""
