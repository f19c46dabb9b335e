"""Shared fixtures: an in-memory service control manager standing in for Win32Subsystem."""

from dataclasses import dataclass, field
from typing import Optional

import pytest

from svcman.directory import ServiceDirectory
from svcman.errors import NativeError
from svcman.values import (
    DELETE,
    ERROR_INSUFFICIENT_BUFFER,
    ERROR_MORE_DATA,
    SC_MANAGER_LOCK,
    SERVICE_CHANGE_CONFIG,
    SERVICE_CONTROL_CONTINUE,
    SERVICE_CONTROL_PAUSE,
    SERVICE_CONTROL_STOP,
    SERVICE_ENUMERATE_DEPENDENTS,
    SERVICE_NO_CHANGE,
    SERVICE_PAUSE_CONTINUE,
    SERVICE_QUERY_CONFIG,
    SERVICE_QUERY_STATUS,
    SERVICE_START,
    SERVICE_STOP,
    AcceptedControl,
    BufferResult,
    EnumEntry,
    ServiceConfig,
    ServiceState,
    ServiceStatus,
    ServiceType,
    StartType,
)

ACCESS_DENIED = 5
SERVICE_ALREADY_RUNNING = 1056
SERVICE_NOT_ACTIVE = 1062
SERVICE_EXISTS = 1073
SERVICE_DOES_NOT_EXIST = 1060
DATABASE_LOCKED = 1055

RUNNING_ACCEPTS = AcceptedControl.STOP | AcceptedControl.PAUSE_CONTINUE | AcceptedControl.SHUTDOWN


@dataclass
class FakeService:
    name: str
    display_name: str
    binary_path: str = r"C:\Windows\System32\svchost.exe -k netsvcs"
    service_type: int = ServiceType.WIN32_SHARE_PROCESS
    start_type: int = StartType.AUTO
    error_control: int = 1
    load_order_group: str = ""
    dependencies: list = field(default_factory=list)
    user_name: str = "LocalSystem"
    description: str = ""
    state: int = ServiceState.STOPPED
    accepts: int = 0
    check_point: int = 0
    wait_hint: int = 0
    process_id: int = 0
    # pending transition: (target state, polls left)
    pending: Optional[tuple] = None
    hung: bool = False
    running_accepts: int = RUNNING_ACCEPTS


@dataclass(eq=False)
class FakeHandle:
    kind: str
    name: Optional[str] = None
    access: int = 0


class FakeSubsystem:
    """
    Simulated SCM with the Win32Subsystem surface. Sized calls honour the
    probe/fill protocol, every handle is tracked so leaks are visible, and
    state transitions take `pending_polls` status queries to complete.
    """

    def __init__(self, pending_polls: int = 2):
        self.services: dict[str, FakeService] = {}
        self.open_handles: list[FakeHandle] = []
        self.calls: list[tuple] = []
        self.sized_calls: list[tuple] = []
        self.pending_polls = pending_polls
        self.lock = None
        self.deny_manager = False
        self.manager_access: list[int] = []
        self.next_pid = 4000

    # ---- helpers for tests ----

    def add(self, name, display_name=None, **kwargs) -> FakeService:
        svc = FakeService(name=name, display_name=display_name or name, **kwargs)
        if svc.state == ServiceState.RUNNING and not svc.accepts:
            svc.accepts = svc.running_accepts
        self.services[name.casefold()] = svc
        return svc

    def service(self, name) -> FakeService:
        return self.services[name.casefold()]

    def _fail(self, code, func, text):
        raise NativeError(code, func, text)

    def _new_handle(self, kind, name=None, access=0):
        h = FakeHandle(kind, name, access)
        self.open_handles.append(h)
        return h

    def _service_for(self, handle, needed, func) -> FakeService:
        if handle not in self.open_handles:
            self._fail(6, func, "The handle is invalid.")
        if handle.access & needed != needed:
            self._fail(ACCESS_DENIED, func, "Access is denied.")
        svc = self.services.get(handle.name.casefold())
        if svc is None:
            self._fail(SERVICE_DOES_NOT_EXIST, func, "The specified service does not exist as an installed service.")
        return svc

    def _status(self, svc: FakeService) -> ServiceStatus:
        return ServiceStatus(
            service_type=svc.service_type,
            current_state=svc.state,
            controls_accepted=svc.accepts,
            check_point=svc.check_point,
            wait_hint=svc.wait_hint,
            process_id=svc.process_id,
        )

    def _begin(self, svc: FakeService, pending_state, target):
        svc.state = pending_state
        svc.accepts = 0
        svc.check_point = 1
        svc.pending = (target, self.pending_polls)

    def _advance(self, svc: FakeService):
        if svc.pending is None or svc.hung:
            return
        target, left = svc.pending
        left -= 1
        if left > 0:
            svc.pending = (target, left)
            svc.check_point += 1
            return
        svc.pending = None
        svc.state = target
        svc.check_point = 0
        if target == ServiceState.STOPPED:
            svc.accepts = 0
            svc.process_id = 0
        else:
            svc.accepts = svc.running_accepts

    @staticmethod
    def _entry_size(name, display_name):
        # struct + both wide strings with terminators
        return 36 + 2 * (len(name) + 1) + 2 * (len(display_name) + 1)

    def _sized(self, func, entries, buf_size, more_error):
        self.sized_calls.append((func, buf_size))
        needed = sum(self._entry_size(e.name, e.display_name) for e in entries)
        if not entries:
            return BufferResult(ok=True, payload=[])
        if buf_size < needed:
            return BufferResult(ok=False, error=more_error, bytes_needed=needed)
        return BufferResult(ok=True, bytes_needed=needed, payload=entries)

    # ---- Win32Subsystem surface ----

    def check_platform(self):
        pass

    def error_text(self, code):
        return f"system error {code}"

    def open_manager(self, machine_name, access):
        self.calls.append(("open_manager", machine_name, access))
        if self.deny_manager:
            self._fail(ACCESS_DENIED, "OpenSCManager", "Access is denied.")
        self.manager_access.append(access)
        return self._new_handle("manager", access=access)

    def close_handle(self, handle):
        if handle not in self.open_handles:
            self._fail(6, "CloseServiceHandle", "The handle is invalid.")
        self.open_handles.remove(handle)

    def enum_services_status(self, manager, buf_size):
        entries = [EnumEntry(s.name, s.display_name, self._status(s)) for s in self.services.values()]
        return self._sized("EnumServicesStatus", entries, buf_size, ERROR_MORE_DATA)

    def enum_dependent_services(self, handle, buf_size):
        svc = self._service_for(handle, SERVICE_ENUMERATE_DEPENDENTS, "EnumDependentServices")
        entries = [
            EnumEntry(s.name, s.display_name, self._status(s))
            for s in self.services.values()
            if svc.name.casefold() in (d.casefold() for d in s.dependencies)
        ]
        return self._sized("EnumDependentServices", entries, buf_size, ERROR_MORE_DATA)

    def query_config(self, handle, buf_size):
        svc = self._service_for(handle, SERVICE_QUERY_CONFIG, "QueryServiceConfig")
        self.sized_calls.append(("QueryServiceConfig", buf_size))
        needed = 36 + 2 * (len(svc.binary_path) + len(svc.user_name) + len(svc.display_name) + 4)
        if buf_size < needed:
            return BufferResult(ok=False, error=ERROR_INSUFFICIENT_BUFFER, bytes_needed=needed)
        return BufferResult(ok=True, bytes_needed=needed, payload=ServiceConfig(
            service_type=svc.service_type,
            start_type=svc.start_type,
            error_control=svc.error_control,
            binary_path=svc.binary_path,
            load_order_group=svc.load_order_group,
            dependencies=list(svc.dependencies),
            user_name=svc.user_name,
            display_name=svc.display_name,
        ))

    def create_service(self, manager, name, display_name, access, service_type, start_type,
                       error_control, binary_path, load_order_group, fetch_tag, dependencies,
                       user_name, password):
        self.calls.append(("create_service", name))
        if manager not in self.open_handles:
            self._fail(6, "CreateService", "The handle is invalid.")
        if name.casefold() in self.services:
            self._fail(SERVICE_EXISTS, "CreateService", "The specified service already exists.")
        self.add(name, display_name, binary_path=binary_path, service_type=service_type,
                 start_type=start_type, error_control=error_control,
                 load_order_group=load_order_group, dependencies=list(dependencies),
                 user_name=user_name)
        return self._new_handle("service", name, access), (7 if fetch_tag else 0)

    def open_service(self, manager, name, access):
        if manager not in self.open_handles:
            self._fail(6, "OpenService", "The handle is invalid.")
        if name.casefold() not in self.services:
            self._fail(SERVICE_DOES_NOT_EXIST, "OpenService",
                       "The specified service does not exist as an installed service.")
        return self._new_handle("service", self.service(name).name, access)

    def delete_service(self, handle):
        svc = self._service_for(handle, DELETE, "DeleteService")
        self.calls.append(("delete_service", svc.name))
        del self.services[svc.name.casefold()]
        return True

    def query_status(self, handle):
        svc = self._service_for(handle, SERVICE_QUERY_STATUS, "QueryServiceStatus")
        status = self._status(svc)
        self._advance(svc)
        return status

    def query_description(self, handle):
        return self._service_for(handle, SERVICE_QUERY_CONFIG, "QueryServiceConfig2").description

    def change_config(self, handle, service_type, start_type, error_control, binary_path=None,
                      load_order_group=None, dependencies=None, user_name=None, password=None,
                      display_name=None):
        svc = self._service_for(handle, SERVICE_CHANGE_CONFIG, "ChangeServiceConfig")
        self.calls.append(("change_config", svc.name, dict(
            service_type=service_type, start_type=start_type, error_control=error_control,
            binary_path=binary_path, load_order_group=load_order_group, dependencies=dependencies,
            user_name=user_name, password=password, display_name=display_name,
        )))
        if service_type != SERVICE_NO_CHANGE:
            svc.service_type = service_type
        if start_type != SERVICE_NO_CHANGE:
            svc.start_type = start_type
        if error_control != SERVICE_NO_CHANGE:
            svc.error_control = error_control
        if binary_path is not None:
            svc.binary_path = binary_path
        if user_name is not None:
            svc.user_name = user_name
        if display_name is not None:
            svc.display_name = display_name

    def change_description(self, handle, description):
        svc = self._service_for(handle, SERVICE_CHANGE_CONFIG, "ChangeServiceConfig2")
        self.calls.append(("change_description", svc.name, description, self.lock is not None))
        svc.description = description

    def start_service(self, handle, args=None):
        svc = self._service_for(handle, SERVICE_START, "StartService")
        self.calls.append(("start_service", svc.name))
        if svc.state != ServiceState.STOPPED:
            self._fail(SERVICE_ALREADY_RUNNING, "StartService", "An instance of the service is already running.")
        self.next_pid += 4
        svc.process_id = self.next_pid
        self._begin(svc, ServiceState.START_PENDING, ServiceState.RUNNING)
        svc.wait_hint = 100

    def control_service(self, handle, control):
        needed = SERVICE_STOP if control == SERVICE_CONTROL_STOP else SERVICE_PAUSE_CONTINUE
        svc = self._service_for(handle, needed, "ControlService")
        self.calls.append(("control_service", svc.name, control))
        if control == SERVICE_CONTROL_STOP:
            if svc.state == ServiceState.STOPPED:
                self._fail(SERVICE_NOT_ACTIVE, "ControlService", "The service has not been started.")
            self._begin(svc, ServiceState.STOP_PENDING, ServiceState.STOPPED)
        elif control == SERVICE_CONTROL_PAUSE:
            self._begin(svc, ServiceState.PAUSE_PENDING, ServiceState.PAUSED)
        elif control == SERVICE_CONTROL_CONTINUE:
            self._begin(svc, ServiceState.CONTINUE_PENDING, ServiceState.RUNNING)

    def lock_database(self, manager):
        if manager not in self.open_handles:
            self._fail(6, "LockServiceDatabase", "The handle is invalid.")
        if not manager.access & SC_MANAGER_LOCK:
            self._fail(ACCESS_DENIED, "LockServiceDatabase", "Access is denied.")
        if self.lock is not None:
            self._fail(DATABASE_LOCKED, "LockServiceDatabase", "The service database is locked.")
        self.lock = object()
        return self.lock

    def unlock_database(self, lock):
        if lock is not self.lock:
            self._fail(6, "UnlockServiceDatabase", "The handle is invalid.")
        self.lock = None

    # ---- assertions ----

    def service_handles(self):
        return [h for h in self.open_handles if h.kind == "service"]

    def change_calls(self):
        return [c for c in self.calls if c[0] == "change_config"]


def populate(scm: FakeSubsystem):
    scm.add("RpcSs", "Remote Procedure Call (RPC)", state=ServiceState.RUNNING,
            running_accepts=AcceptedControl.NONE, process_id=900)
    scm.add("Spooler", "Print Spooler", binary_path=r"C:\Windows\System32\spoolsv.exe",
            service_type=ServiceType.WIN32_OWN_PROCESS | ServiceType.INTERACTIVE_PROCESS,
            dependencies=["RPCSS", "http"], state=ServiceState.RUNNING, process_id=2400,
            running_accepts=AcceptedControl.STOP, description="Loads files to memory for later printing")
    scm.add("Fax", "Fax", binary_path=r"C:\Windows\system32\fxssvc.exe",
            service_type=ServiceType.WIN32_OWN_PROCESS, start_type=StartType.DEMAND,
            dependencies=["Spooler"], user_name=r"NT AUTHORITY\NetworkService")
    scm.add("wuauserv", "Windows Update", start_type=StartType.DEMAND)
    scm.add("http", "HTTP Service", service_type=ServiceType.KERNEL_DRIVER, start_type=StartType.DEMAND,
            binary_path=r"system32\drivers\HTTP.sys", state=ServiceState.RUNNING, accepts=AcceptedControl.STOP)
    scm.add("Audiosrv", "Windows Audio", state=ServiceState.RUNNING, start_type=StartType.AUTO,
            running_accepts=RUNNING_ACCEPTS)
    return scm


@pytest.fixture
def scm():
    return populate(FakeSubsystem())


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def directory(scm, sleeps):
    d = ServiceDirectory(subsystem=scm, allow_locking=True, sleep=sleeps.append)
    d.set_active(True)
    yield d
    d.set_active(False)

