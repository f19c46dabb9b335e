from dataclasses import dataclass, field
from enum import Enum, IntEnum, IntFlag


# Service types (CreateService / ChangeServiceConfig)
class ServiceType(IntFlag):
    KERNEL_DRIVER = 0x00000001
    FILE_SYSTEM_DRIVER = 0x00000002
    ADAPTER = 0x00000004  # reserved
    WIN32_OWN_PROCESS = 0x00000010
    WIN32_SHARE_PROCESS = 0x00000020
    INTERACTIVE_PROCESS = 0x00000100

SERVICE_WIN32 = ServiceType.WIN32_OWN_PROCESS | ServiceType.WIN32_SHARE_PROCESS


class StartType(IntEnum):
    BOOT = 0x00000000  # drivers only
    SYSTEM = 0x00000001  # drivers only
    AUTO = 0x00000002
    DEMAND = 0x00000003
    DISABLED = 0x00000004


class ErrorControl(IntEnum):
    IGNORE = 0x00000000
    NORMAL = 0x00000001
    SEVERE = 0x00000002
    CRITICAL = 0x00000003


SERVICE_NO_CHANGE = 0xFFFFFFFF

# EnumServicesStatus / EnumDependentServices state filter
SERVICE_ACTIVE = 0x00000001
SERVICE_INACTIVE = 0x00000002
SERVICE_STATE_ALL = SERVICE_ACTIVE | SERVICE_INACTIVE

# Service control manager access rights
SC_MANAGER_CONNECT = 0x0001
SC_MANAGER_CREATE_SERVICE = 0x0002
SC_MANAGER_ENUMERATE_SERVICE = 0x0004
SC_MANAGER_LOCK = 0x0008
SC_MANAGER_ALL_ACCESS = 0xF003F

# Service access rights
SERVICE_QUERY_CONFIG = 0x0001
SERVICE_CHANGE_CONFIG = 0x0002
SERVICE_QUERY_STATUS = 0x0004
SERVICE_ENUMERATE_DEPENDENTS = 0x0008
SERVICE_START = 0x0010
SERVICE_STOP = 0x0020
SERVICE_PAUSE_CONTINUE = 0x0040
DELETE = 0x00010000
SERVICE_ALL_ACCESS = 0xF01FF

# Control codes
SERVICE_CONTROL_STOP = 0x00000001
SERVICE_CONTROL_PAUSE = 0x00000002
SERVICE_CONTROL_CONTINUE = 0x00000003

# Win32 error codes the two-phase calls signal with
ERROR_INSUFFICIENT_BUFFER = 122
ERROR_MORE_DATA = 234


class ServiceState(IntEnum):
    STOPPED = 0x00000001
    START_PENDING = 0x00000002
    STOP_PENDING = 0x00000003
    RUNNING = 0x00000004
    CONTINUE_PENDING = 0x00000005
    PAUSE_PENDING = 0x00000006
    PAUSED = 0x00000007

    @property
    def label(self) -> str:
        return _STATE_LABELS[self]

    def __str__(self):
        return self.label


_STATE_LABELS = {
    ServiceState.STOPPED: "Stopped",
    ServiceState.START_PENDING: "Start Pending",
    ServiceState.STOP_PENDING: "Stop Pending",
    ServiceState.RUNNING: "Started",
    ServiceState.CONTINUE_PENDING: "Continue Pending",
    ServiceState.PAUSE_PENDING: "Pause Pending",
    ServiceState.PAUSED: "Paused",
}


class AcceptedControl(IntFlag):
    """Controls a service declares it honours. Values are the SERVICE_ACCEPT_* bits."""
    NONE = 0
    STOP = 0x00000001
    PAUSE_CONTINUE = 0x00000002
    SHUTDOWN = 0x00000004

    @classmethod
    def from_mask(cls, mask: int) -> "AcceptedControl":
        out = cls.NONE
        for flag in (cls.STOP, cls.PAUSE_CONTINUE, cls.SHUTDOWN):
            if mask & flag:
                out |= flag
        return out


class StartupType(Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    DISABLED = "disabled"


STARTUP_BY_START_TYPE = {
    StartType.AUTO: StartupType.AUTOMATIC,
    StartType.DEMAND: StartupType.MANUAL,
    StartType.DISABLED: StartupType.DISABLED,
}


class RefreshPolicy(Enum):
    """How a service record answers status/config reads."""
    CACHED = "cached"  # reuse the last snapshot
    LIVE = "live"      # re-query the SCM on every read


@dataclass
class ServiceStatus:
    service_type: int = 0
    current_state: int = ServiceState.STOPPED
    controls_accepted: int = 0
    win32_exit_code: int = 0
    service_specific_exit_code: int = 0
    check_point: int = 0
    wait_hint: int = 0
    process_id: int = 0


@dataclass
class ServiceConfig:
    service_type: int
    start_type: int
    error_control: int
    binary_path: str
    load_order_group: str = ""
    tag_id: int = 0
    dependencies: list[str] = field(default_factory=list)
    user_name: str = ""
    display_name: str = ""


@dataclass
class EnumEntry:
    """One record returned by a services/dependents enumeration."""
    name: str
    display_name: str
    status: ServiceStatus


@dataclass
class BufferResult:
    """Outcome of a sized SCM call: either data, or the size the caller must allocate."""
    ok: bool
    error: int = 0
    bytes_needed: int = 0
    payload: object = None


@dataclass
class ServiceRow:
    name: str
    display_name: str
    binary_path: str
    state_label: str
