"""
Error taxonomy for the engine conversation.

Every failure that can come out of the supervisor derives from EngineError so
the HTTP layer can map them with a single except clause. Request validation
errors are not part of this hierarchy: they are raised by pydantic and never
reach the engine.
"""


class EngineError(Exception):
    """Base class for failures talking to the engine process."""


class EngineTimeoutError(EngineError):
    """No terminal reply arrived within the command's time budget."""


class EngineCrashedError(EngineError):
    """The engine process exited while commands were still outstanding."""


class EngineSpawnError(EngineError):
    """The engine executable is missing or could not be started."""


class ConcurrentSearchError(EngineError):
    """A search was started while another one was still outstanding.

    The serializer makes this impossible in normal operation; seeing it means
    some code path talked to the engine without holding the gate.
    """


class InvalidTransitionError(EngineError):
    """The supervisor was asked to move to a state the lifecycle forbids."""
