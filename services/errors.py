"""
Typed failures raised by the A/B testing services.

Validation and not-found conditions are always raised to the immediate caller.
Storage failures are transient and may be retried; cache failures never leave
the cache layer.
"""


class ABTestingError(Exception):
    """Base class for every error raised by the A/B testing services."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ABTestingError):
    """A test definition or update violates one or more constraints."""

    def __init__(self, errors: list[str] | str):
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


class InvalidTransition(ValidationError):
    """The requested lifecycle action is not allowed from the test's current status."""


class NotFound(ABTestingError):
    pass


class TestNotFound(NotFound):
    __test__ = False  # not a pytest test class

    def __init__(self, name_or_id):
        super().__init__(f"Test {name_or_id} not found.")
        self.name_or_id = name_or_id


class VariantNotFound(NotFound):
    def __init__(self, test_name: str, variant_name: str):
        super().__init__(f"Variant {variant_name} not found in test {test_name}.")
        self.test_name = test_name
        self.variant_name = variant_name


class TestNotActive(ABTestingError):
    __test__ = False

    def __init__(self, test_name: str, status: str):
        super().__init__(f"Test {test_name} is not active (status: {status}).")
        self.test_name = test_name
        self.status = status


class InsufficientData(ABTestingError):
    pass


class InvalidSubject(ABTestingError):
    def __init__(self, message: str = "Either user_id or session_id must be provided."):
        super().__init__(message)


class StorageError(ABTestingError):
    pass


class OperationTimeout(StorageError):
    pass


class CacheError(ABTestingError):
    pass
