"""Exception hierarchy shared by the scanner modules."""


class MasqueError(Exception):
    """Base class for every error raised by the scanner."""


class InvalidEndpointError(MasqueError, ValueError):
    """User supplied endpoint, bind address or port is malformed."""


class RegistrationError(MasqueError):
    """``usque register`` did not complete."""


class SupervisorError(MasqueError):
    """A supervised usque process ended without a usable tunnel."""


class PrivateKeyError(SupervisorError):
    """usque could not load its private key; re-registration is required."""

    def __init__(self, message: str = "Failed to get private key"):
        super().__init__(message)


class EndpointInvalidError(SupervisorError):
    def __init__(self, message: str = "failed to set endpoint"):
        super().__init__(message)


class HandshakeFailedError(SupervisorError):
    def __init__(self, message: str = "handshake failure"):
        super().__init__(message)


class TunnelFailuresExceeded(SupervisorError):
    def __init__(self, count: int, limit: int):
        self.count = count
        self.limit = limit
        super().__init__(f"tunnel connect failed {count} times (limit {limit})")


class ConnectTimeout(SupervisorError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"connect timeout after {timeout:g}s")


class ProcessExited(SupervisorError):
    def __init__(self, returncode: int | None):
        self.returncode = returncode
        super().__init__(f"usque exited with code {returncode}")


class NoViableEndpoint(MasqueError):
    def __init__(self, tried: int):
        self.tried = tried
        super().__init__(f"no viable endpoint found (tried {tried})")
