class FatalError(Exception):
    """A condition after which the run cannot make further progress."""

    kind = "fatal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TransportFailure(FatalError):
    kind = "transport_failure"


class ReadOnlyMount(FatalError):
    kind = "read_only_mount"


class EnumerationEmpty(FatalError):
    kind = "enumeration_empty"


class EnumerationFailed(FatalError):
    kind = "enumeration_failed"


class PayloadDecodeError(ValueError):
    pass
