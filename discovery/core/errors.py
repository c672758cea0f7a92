from __future__ import annotations


class DiscoveryError(Exception):
    pass


class DimensionMismatchError(DiscoveryError, ValueError):
    def __init__(self, expected: int, actual: int, context: str | None = None):
        self.expected = expected
        self.actual = actual
        self.context = context
        message = f"Vector dimension mismatch: expected {expected}, got {actual}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class IndexNotBuiltError(DiscoveryError, RuntimeError):
    def __init__(self, message: str = "Index not built. Call build() first."):
        super().__init__(message)


class IndexCapacityError(DiscoveryError, RuntimeError):
    pass


class InvalidParameterError(DiscoveryError, ValueError):
    pass


class InvalidLambdaError(InvalidParameterError):
    pass


class InvalidLimitError(InvalidParameterError):
    pass


class InvalidFairnessThresholdError(InvalidParameterError):
    pass


class InvalidSessionTransitionError(DiscoveryError, RuntimeError):
    pass
