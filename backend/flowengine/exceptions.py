# /flowengine/exceptions.py

# Exceptions raised by the service layer. The execution Driver itself never
# raises to its caller; these exist for the seams around it.


class FlowEngineError(Exception):
    """Base class for all flow engine errors."""


class FlowNotFoundError(FlowEngineError):
    def __init__(self, identifier: str):
        super().__init__(f"Flow '{identifier}' is not loaded")
        self.identifier = identifier


class CircuitOpenError(FlowEngineError):
    def __init__(self, name: str):
        super().__init__(f"Circuit breaker is OPEN for {name}")
        self.name = name


class SessionStoreError(FlowEngineError):
    """A session could not be read from or written to the store."""
