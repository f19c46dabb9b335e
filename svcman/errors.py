import builtins
from contextlib import contextmanager


class ServiceManagerError(Exception):
    """Base class for every error raised by svcman."""


class NotActiveError(ServiceManagerError):
    def __init__(self, operation: str):
        super().__init__(f"{operation} only works while the service directory is active")
        self.operation = operation


class ConfigurationError(ServiceManagerError):
    pass


class UnsupportedPlatformError(ServiceManagerError):
    pass


class ConnectionError(ServiceManagerError, builtins.ConnectionError):
    def __init__(self, machine_name, reason: str):
        target = machine_name or "local machine"
        super().__init__(f"cannot open service control manager on {target}: {reason}")
        self.machine_name = machine_name
        self.reason = reason


class SubsystemError(ServiceManagerError):
    """A service control manager call failed."""

    def __init__(self, operation: str, reason: str, winerror: int = 0):
        super().__init__(f"{operation} failed: {reason}")
        self.operation = operation
        self.reason = reason
        self.winerror = winerror


class InstallError(SubsystemError):
    def __init__(self, reason: str, winerror: int = 0):
        super().__init__("CreateService", reason, winerror)


class NotFoundError(ServiceManagerError, KeyError):
    def __init__(self, name: str):
        super().__init__(f"service not found: {name}")
        self.name = name

    def __str__(self):
        return self.args[0]


class IndexOutOfRangeError(ServiceManagerError, IndexError):
    def __init__(self, index: int, count: int):
        super().__init__(f"index {index} out of bounds (count={count})")
        self.index = index
        self.count = count


class UnsupportedControlError(ServiceManagerError):
    def __init__(self, service: str, control: str):
        super().__init__(f"service {service} cannot be {control}")
        self.service = service
        self.control = control


class PreconditionError(ServiceManagerError):
    pass


class TransitionTimeoutError(ServiceManagerError):
    def __init__(self, service: str, expected, actual):
        super().__init__(
            f"service {service} did not reach {expected} (still {actual}, no checkpoint progress)"
        )
        self.service = service
        self.expected = expected
        self.actual = actual


class UnknownStateError(ServiceManagerError):
    def __init__(self, service: str, code: int):
        super().__init__(f"service {service} reported an unknown state code {code}")
        self.service = service
        self.code = code


class UnknownStartTypeError(ServiceManagerError):
    def __init__(self, service: str, code: int):
        super().__init__(f"service {service} has an unsupported start type {code}")
        self.service = service
        self.code = code


class LockingNotAllowedError(ServiceManagerError):
    pass


class NativeError(Exception):
    """Raised by the SCM surface when a native call fails (mirrors pywintypes.error)."""

    def __init__(self, winerror: int, funcname: str, strerror: str):
        super().__init__(winerror, funcname, strerror)
        self.winerror = winerror
        self.funcname = funcname
        self.strerror = strerror

    def __str__(self):
        return f"{self.funcname}: {self.strerror} ({self.winerror})"


@contextmanager
def native_errors(operation: str):
    """Re-raise NativeError from the SCM surface as SubsystemError naming the operation."""
    try:
        yield
    except NativeError as err:
        raise SubsystemError(operation, err.strerror, err.winerror) from err
