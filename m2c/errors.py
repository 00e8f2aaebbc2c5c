"""Error taxonomy for the console.

User input errors are rejected before any state change. Transport errors are
raised inside a lane or phase and caught at the nearest orchestration entry
point, which turns them into an advisory.
"""


class ConsoleError(Exception):
    """Base class for every error the console raises on purpose."""


class UserInputError(ConsoleError):
    """Rejected request: empty selection, missing deploy URL, bad meeting name."""


class ApiError(ConsoleError):
    """Non-2xx response. ``message`` is the server's ``error`` string, verbatim."""

    def __init__(self, message: str, status_code: int | None = None, path: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.path = path


class StreamError(ConsoleError):
    """The service reported a failure mid-stream with an ``event: error`` frame."""


class DispatchError(ConsoleError):
    """Every lane of a dispatch batch failed."""

    def __init__(self, lane_errors: dict[str, str]):
        super().__init__("; ".join(f"{lane}: {err}" for lane, err in lane_errors.items()))
        self.lane_errors = lane_errors


class DeployError(ConsoleError):
    """Deployment finished without producing a URL."""
