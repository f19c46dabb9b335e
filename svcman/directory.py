import logging
import time
from contextlib import contextmanager

from svcman import export
from svcman.buffers import fetch_sized
from svcman.errors import (
    ConfigurationError,
    ConnectionError,
    IndexOutOfRangeError,
    InstallError,
    LockingNotAllowedError,
    NativeError,
    NotActiveError,
    NotFoundError,
    native_errors,
)
from svcman.service import ServiceHandle
from svcman.values import (
    ERROR_MORE_DATA,
    SC_MANAGER_ALL_ACCESS,
    SC_MANAGER_CONNECT,
    SC_MANAGER_ENUMERATE_SERVICE,
    SC_MANAGER_LOCK,
    SERVICE_ALL_ACCESS,
    RefreshPolicy,
    ServiceRow,
)

logger = logging.getLogger(__name__)

DEFAULT_WAIT_HINT_MS = 5000


def _default_subsystem():
    # pywin32 only exists on Windows; import it when a real SCM is needed
    from svcman.native import Win32Subsystem
    return Win32Subsystem()


class ServiceDirectory:
    """
    The services of one machine, as seen through a service control manager connection.

    Records are only valid while the directory is active. Activating opens the
    connection and enumerates every Win32 service; rebuilding discards all records
    (and whatever they cached) and enumerates again.
    """

    def __init__(self, machine_name: str | None = None, allow_locking: bool = False, subsystem=None,
                 refresh: RefreshPolicy = RefreshPolicy.CACHED,
                 fallback_wait_hint: int = DEFAULT_WAIT_HINT_MS, sleep=time.sleep):
        self._subsystem = subsystem
        self._machine_name = machine_name
        self._allow_locking = allow_locking
        self._connection = None
        self._lock = None
        self._active = False
        self._services: dict[int, ServiceHandle] = {}
        self.refresh = refresh
        self.fallback_wait_hint = fallback_wait_hint
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings, subsystem=None, **kwargs):
        return cls(
            machine_name=settings.manager.machine_name or None,
            allow_locking=settings.manager.allow_locking,
            subsystem=subsystem,
            refresh=RefreshPolicy.LIVE if settings.manager.live else RefreshPolicy.CACHED,
            fallback_wait_hint=settings.wait.fallback_wait_hint_ms,
            **kwargs,
        )

    def __enter__(self):
        return self.set_active(True)

    def __exit__(self, *exc):
        self.set_active(False)

    def __len__(self):
        return self.count

    def __iter__(self):
        self._require_active("iterating services")
        return iter([self._services[i] for i in sorted(self._services)])

    @property
    def subsystem(self):
        if self._subsystem is None:
            self._subsystem = _default_subsystem()
        return self._subsystem

    @property
    def connection(self):
        return self._connection

    @property
    def machine_name(self):
        return self._machine_name

    @machine_name.setter
    def machine_name(self, value):
        if self._active:
            raise ConfigurationError("cannot change machine name while active")
        self._machine_name = value

    @property
    def allow_locking(self) -> bool:
        return self._allow_locking

    @allow_locking.setter
    def allow_locking(self, value: bool):
        if self._active:
            raise ConfigurationError("cannot change allow locking while active")
        self._allow_locking = value

    @property
    def active(self) -> bool:
        return self._active

    @active.setter
    def active(self, value: bool):
        self.set_active(value)

    def _require_active(self, operation: str):
        if not self._active:
            raise NotActiveError(operation)

    # ---- connection ----

    def set_active(self, value: bool):
        if value:
            if self._active:
                return self
            self.subsystem.check_platform()
            access = SC_MANAGER_CONNECT | SC_MANAGER_ENUMERATE_SERVICE
            if self._allow_locking:
                access |= SC_MANAGER_LOCK
            try:
                self._connection = self.subsystem.open_manager(self._machine_name, access)
            except NativeError as err:
                raise ConnectionError(self._machine_name, err.strerror) from err
            self._active = True
            logger.debug("Connected to service control manager on %s", self._machine_name or "local machine")
            try:
                self.rebuild()
            except Exception:
                self.set_active(False)
                raise
        else:
            if not self._active:
                return self
            try:
                self.unlock()
            finally:
                try:
                    self._clear()
                finally:
                    connection, self._connection = self._connection, None
                    self._active = False
                    with native_errors("CloseServiceHandle"):
                        self.subsystem.close_handle(connection)
        return self

    def open_service(self, name: str, access: int):
        self._require_active(f"opening {name}")
        with native_errors("OpenService"):
            handle = self.subsystem.open_service(self._connection, name, access)
        logger.debug("Opened %s (access 0x%x)", name, access)
        return handle

    def close_handle(self, handle):
        with native_errors("CloseServiceHandle"):
            self.subsystem.close_handle(handle)

    # ---- database lock ----

    def lock(self):
        if not self._allow_locking:
            raise LockingNotAllowedError("locking of the service database is not allowed")
        self._require_active("lock")
        with native_errors("LockServiceDatabase"):
            self._lock = self.subsystem.lock_database(self._connection)
        logger.debug("Service database locked")

    def unlock(self):
        if self._lock is None:
            return
        lock, self._lock = self._lock, None
        with native_errors("UnlockServiceDatabase"):
            self.subsystem.unlock_database(lock)
        logger.debug("Service database unlocked")

    @contextmanager
    def locked(self):
        self.lock()
        try:
            yield self
        finally:
            self.unlock()

    # ---- enumeration ----

    def _clear(self):
        services, self._services = self._services, {}
        for service in services.values():
            service.close()

    def rebuild(self):
        self._require_active("rebuild")
        self._clear()
        scm = self.subsystem
        entries = fetch_sized(scm, "EnumServicesStatus",
                              lambda size: scm.enum_services_status(self._connection, size),
                              ERROR_MORE_DATA)
        for i, entry in enumerate(entries or []):
            self._services[i] = ServiceHandle(self, entry.name, entry.display_name, entry.status, i,
                                              refresh=self.refresh)
        logger.debug("Enumerated %d services", len(self._services))
        return self

    @property
    def count(self) -> int:
        self._require_active("count")
        return len(self._services)

    def get(self, index: int) -> ServiceHandle:
        self._require_active("get")
        if index not in self._services:
            raise IndexOutOfRangeError(index, len(self._services))
        return self._services[index]

    def _find(self, name: str):
        wanted = name.casefold()
        for i in sorted(self._services):
            if self._services[i].name.casefold() == wanted:
                return self._services[i]
        return None

    def get_by_name(self, name: str) -> ServiceHandle:
        self._require_active("get_by_name")
        service = self._find(name)
        if service is None:
            raise NotFoundError(name)
        return service

    def exists(self, name: str) -> bool:
        if not self._active:
            return False
        return self._find(name) is not None

    def sort_by_display_name(self):
        self._require_active("sort_by_display_name")
        ordered = sorted((self._services[i] for i in sorted(self._services)), key=lambda s: s.display_name)
        self._services = {}
        for i, service in enumerate(ordered):
            service._set_index(i)
            self._services[i] = service
        return self

    # ---- install / uninstall ----

    def install(self, name: str, display_name: str, service_type: int, start_type: int,
                error_control: int, binary_path: str, load_order_group: str = "",
                fetch_tag: bool = False, dependencies=(), run_as_user: str = "LocalSystem",
                password: str = "") -> ServiceHandle:
        """
        Create a service and return its record. The create call always goes through its
        own full-access connection; the directory's connection is rebuilt afterwards.
        """
        scm = self.subsystem
        try:
            manager = scm.open_manager(self._machine_name, SC_MANAGER_ALL_ACCESS)
        except NativeError as err:
            raise InstallError(err.strerror, err.winerror) from err
        try:
            try:
                service, tag = scm.create_service(
                    manager, name, display_name, SERVICE_ALL_ACCESS, int(service_type), int(start_type),
                    int(error_control), binary_path, load_order_group, fetch_tag, list(dependencies),
                    run_as_user, password,
                )
            except NativeError as err:
                raise InstallError(err.strerror, err.winerror) from err
            with native_errors("CloseServiceHandle"):
                scm.close_handle(service)
        finally:
            with native_errors("CloseServiceHandle"):
                scm.close_handle(manager)
        logger.info("Installed service %s (%s)%s", name, binary_path, f", tag {tag}" if fetch_tag else "")

        if self._active:
            self.rebuild()
        else:
            self.set_active(True)
        installed = self._find(name)
        if installed is None:
            raise LookupError(f"service {name} was installed but is not listed")
        return installed

    def uninstall(self, name: str) -> bool:
        self.rebuild()
        deleted = self.get_by_name(name).delete()
        if deleted:
            self.rebuild()
        return deleted

    # ---- projections ----

    def to_rows(self, sorted_by_display_name: bool = False) -> list[ServiceRow]:
        self.rebuild()
        if sorted_by_display_name:
            self.sort_by_display_name()
        return [
            ServiceRow(s.name, s.display_name, s.get_binary_path(), s.get_state().label)
            for s in self
        ]

    def to_csv(self, sorted_by_display_name: bool = False, delimiter: str = ";") -> str:
        return export.to_csv(self.to_rows(sorted_by_display_name), delimiter=delimiter)

    def to_xml(self, sorted_by_display_name: bool = False) -> str:
        return export.to_xml(self.to_rows(sorted_by_display_name))
