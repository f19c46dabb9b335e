"""
Win32 service control manager surface.

Plain calls go through pywin32 and raise NativeError on failure. The sized calls
(EnumServicesStatus, EnumDependentServices, QueryServiceConfig) are made through
ctypes so the caller sees the native size-probe / fill protocol: they return a
BufferResult instead of raising.
"""
import ctypes
import logging
from contextlib import contextmanager
from ctypes import wintypes

import pywintypes
import win32api
import win32con
import win32service

from svcman.errors import NativeError, UnsupportedPlatformError
from svcman.values import (
    SERVICE_STATE_ALL,
    SERVICE_WIN32,
    BufferResult,
    EnumEntry,
    ServiceConfig,
    ServiceStatus,
)

logger = logging.getLogger(__name__)

advapi32 = ctypes.WinDLL("advapi32", use_last_error=True)


class SERVICE_STATUS(ctypes.Structure):
    _fields_ = [
        ("dwServiceType", wintypes.DWORD),
        ("dwCurrentState", wintypes.DWORD),
        ("dwControlsAccepted", wintypes.DWORD),
        ("dwWin32ExitCode", wintypes.DWORD),
        ("dwServiceSpecificExitCode", wintypes.DWORD),
        ("dwCheckPoint", wintypes.DWORD),
        ("dwWaitHint", wintypes.DWORD),
    ]


class ENUM_SERVICE_STATUSW(ctypes.Structure):
    _fields_ = [
        ("lpServiceName", wintypes.LPWSTR),
        ("lpDisplayName", wintypes.LPWSTR),
        ("ServiceStatus", SERVICE_STATUS),
    ]


class QUERY_SERVICE_CONFIGW(ctypes.Structure):
    _fields_ = [
        ("dwServiceType", wintypes.DWORD),
        ("dwStartType", wintypes.DWORD),
        ("dwErrorControl", wintypes.DWORD),
        ("lpBinaryPathName", wintypes.LPWSTR),
        ("lpLoadOrderGroup", wintypes.LPWSTR),
        ("dwTagId", wintypes.DWORD),
        ("lpDependencies", ctypes.c_void_p),  # double-null terminated list
        ("lpServiceStartName", wintypes.LPWSTR),
        ("lpDisplayName", wintypes.LPWSTR),
    ]


_EnumServicesStatusW = advapi32.EnumServicesStatusW
_EnumServicesStatusW.argtypes = [
    wintypes.HANDLE, wintypes.DWORD, wintypes.DWORD, ctypes.c_void_p, wintypes.DWORD,
    wintypes.LPDWORD, wintypes.LPDWORD, wintypes.LPDWORD,
]
_EnumServicesStatusW.restype = wintypes.BOOL

_EnumDependentServicesW = advapi32.EnumDependentServicesW
_EnumDependentServicesW.argtypes = [
    wintypes.HANDLE, wintypes.DWORD, ctypes.c_void_p, wintypes.DWORD,
    wintypes.LPDWORD, wintypes.LPDWORD,
]
_EnumDependentServicesW.restype = wintypes.BOOL

_QueryServiceConfigW = advapi32.QueryServiceConfigW
_QueryServiceConfigW.argtypes = [wintypes.HANDLE, ctypes.c_void_p, wintypes.DWORD, wintypes.LPDWORD]
_QueryServiceConfigW.restype = wintypes.BOOL


@contextmanager
def _translated():
    try:
        yield
    except pywintypes.error as err:
        raise NativeError(err.winerror, err.funcname, err.strerror) from err


def _handle_value(handle) -> int:
    return int(handle)


def _alloc(size: int):
    return ctypes.create_string_buffer(size) if size > 0 else None


def _last_error() -> int:
    return ctypes.get_last_error()


def _status_from_struct(s: SERVICE_STATUS) -> ServiceStatus:
    return ServiceStatus(
        service_type=s.dwServiceType,
        current_state=s.dwCurrentState,
        controls_accepted=s.dwControlsAccepted,
        win32_exit_code=s.dwWin32ExitCode,
        service_specific_exit_code=s.dwServiceSpecificExitCode,
        check_point=s.dwCheckPoint,
        wait_hint=s.dwWaitHint,
    )


def _read_entries(buffer, count: int) -> list[EnumEntry]:
    records = ctypes.cast(buffer, ctypes.POINTER(ENUM_SERVICE_STATUSW))
    out = []
    for i in range(count):
        r = records[i]
        out.append(EnumEntry(
            name=r.lpServiceName or "",
            display_name=r.lpDisplayName or "",
            status=_status_from_struct(r.ServiceStatus),
        ))
    return out


def _read_multi_sz(address) -> list[str]:
    items = []
    if not address:
        return items
    while True:
        item = ctypes.wstring_at(address)
        if not item:
            return items
        items.append(item)
        address += (len(item) + 1) * ctypes.sizeof(ctypes.c_wchar)


def _status_from_dict(d: dict) -> ServiceStatus:
    return ServiceStatus(
        service_type=d["ServiceType"],
        current_state=d["CurrentState"],
        controls_accepted=d["ControlsAccepted"],
        win32_exit_code=d["Win32ExitCode"],
        service_specific_exit_code=d["ServiceSpecificExitCode"],
        check_point=d["CheckPoint"],
        wait_hint=d["WaitHint"],
        process_id=d.get("ProcessId", 0),
    )


class Win32Subsystem:
    """The real service control manager, as seen by ServiceDirectory and ServiceHandle."""

    def check_platform(self):
        major, minor, build, platform_id, _ = win32api.GetVersionEx()
        if platform_id != win32con.VER_PLATFORM_WIN32_NT:
            raise UnsupportedPlatformError("service control requires a Windows NT family system")
        logger.debug("Windows %s.%s build %s", major, minor, build)

    def error_text(self, code: int) -> str:
        return win32api.FormatMessage(code).strip()

    def open_manager(self, machine_name, access: int):
        with _translated():
            return win32service.OpenSCManager(machine_name or None, None, access)

    def close_handle(self, handle):
        with _translated():
            win32service.CloseServiceHandle(handle)

    def enum_services_status(self, manager, buf_size: int) -> BufferResult:
        buffer = _alloc(buf_size)
        needed = wintypes.DWORD(0)
        returned = wintypes.DWORD(0)
        resume = wintypes.DWORD(0)
        ok = _EnumServicesStatusW(
            _handle_value(manager), int(SERVICE_WIN32), SERVICE_STATE_ALL, buffer, buf_size,
            ctypes.byref(needed), ctypes.byref(returned), ctypes.byref(resume),
        )
        if not ok:
            return BufferResult(ok=False, error=_last_error(), bytes_needed=needed.value)
        return BufferResult(ok=True, bytes_needed=needed.value,
                            payload=_read_entries(buffer, returned.value) if buffer is not None else [])

    def enum_dependent_services(self, service, buf_size: int) -> BufferResult:
        buffer = _alloc(buf_size)
        needed = wintypes.DWORD(0)
        returned = wintypes.DWORD(0)
        ok = _EnumDependentServicesW(
            _handle_value(service), SERVICE_STATE_ALL, buffer, buf_size,
            ctypes.byref(needed), ctypes.byref(returned),
        )
        if not ok:
            return BufferResult(ok=False, error=_last_error(), bytes_needed=needed.value)
        return BufferResult(ok=True, bytes_needed=needed.value,
                            payload=_read_entries(buffer, returned.value) if buffer is not None else [])

    def query_config(self, service, buf_size: int) -> BufferResult:
        buffer = _alloc(buf_size)
        needed = wintypes.DWORD(0)
        ok = _QueryServiceConfigW(_handle_value(service), buffer, buf_size, ctypes.byref(needed))
        if not ok:
            return BufferResult(ok=False, error=_last_error(), bytes_needed=needed.value)
        if buffer is None:
            return BufferResult(ok=True)
        c = ctypes.cast(buffer, ctypes.POINTER(QUERY_SERVICE_CONFIGW)).contents
        return BufferResult(ok=True, bytes_needed=needed.value, payload=ServiceConfig(
            service_type=c.dwServiceType,
            start_type=c.dwStartType,
            error_control=c.dwErrorControl,
            binary_path=c.lpBinaryPathName or "",
            load_order_group=c.lpLoadOrderGroup or "",
            tag_id=c.dwTagId,
            dependencies=_read_multi_sz(c.lpDependencies),
            user_name=c.lpServiceStartName or "",
            display_name=c.lpDisplayName or "",
        ))

    def create_service(self, manager, name, display_name, access, service_type, start_type,
                       error_control, binary_path, load_order_group, fetch_tag, dependencies,
                       user_name, password):
        with _translated():
            result = win32service.CreateService(
                manager, name, display_name, access, service_type, start_type, error_control,
                binary_path, load_order_group or None, bool(fetch_tag), list(dependencies) or None,
                user_name or None, password or None,
            )
        # bFetchTag makes pywin32 return (handle, tag)
        return result if fetch_tag else (result, 0)

    def open_service(self, manager, name: str, access: int):
        with _translated():
            return win32service.OpenService(manager, name, access)

    def delete_service(self, service) -> bool:
        try:
            win32service.DeleteService(service)
        except pywintypes.error as err:
            logger.warning("DeleteService failed: %s", err.strerror)
            return False
        return True

    def query_status(self, service) -> ServiceStatus:
        with _translated():
            return _status_from_dict(win32service.QueryServiceStatusEx(service))

    def query_description(self, service) -> str:
        with _translated():
            return win32service.QueryServiceConfig2(service, win32service.SERVICE_CONFIG_DESCRIPTION) or ""

    def change_config(self, service, service_type, start_type, error_control, binary_path=None,
                      load_order_group=None, dependencies=None, user_name=None, password=None,
                      display_name=None):
        with _translated():
            win32service.ChangeServiceConfig(
                service, service_type, start_type, error_control, binary_path, load_order_group,
                False, dependencies, user_name, password, display_name,
            )

    def change_description(self, service, description: str):
        with _translated():
            win32service.ChangeServiceConfig2(service, win32service.SERVICE_CONFIG_DESCRIPTION, description)

    def start_service(self, service, args=None):
        with _translated():
            win32service.StartService(service, list(args) if args else None)

    def control_service(self, service, control: int):
        with _translated():
            win32service.ControlService(service, control)

    def lock_database(self, manager):
        with _translated():
            return win32service.LockServiceDatabase(manager)

    def unlock_database(self, lock):
        with _translated():
            win32service.UnlockServiceDatabase(lock)
