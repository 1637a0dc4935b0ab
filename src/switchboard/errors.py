"""Error taxonomy for the control plane."""


class SwitchboardError(Exception):
    """Base class for all Switchboard errors."""


class ProtocolParseError(SwitchboardError):
    """Malformed wire line or mailbox file."""


class RequestTimeout(SwitchboardError):
    """A worker did not answer within the request timeout.

    The worker itself is left untouched.
    """


class RequestCancelled(SwitchboardError):
    """The caller's cancellation token fired before a result was delivered."""


class WorkerUnavailable(SwitchboardError):
    """No worker is running, or the manager is shutting down."""


class WorkerCrash(SwitchboardError):
    """The worker process exited while requests were outstanding."""


class WorkerError(SwitchboardError):
    """The worker answered with status=error."""


class AuthorizationViolation(SwitchboardError):
    """A namespace tried to act outside its own scope."""


class SchedulingSpecError(SwitchboardError):
    """Invalid cron expression, interval, or timestamp."""


class ConcurrencyLimitExceeded(SwitchboardError):
    """Admission control rejected new work."""
