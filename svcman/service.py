import logging
from contextlib import contextmanager

import psutil

from svcman.buffers import fetch_sized
from svcman.errors import (
    IndexOutOfRangeError,
    NotActiveError,
    PreconditionError,
    SubsystemError,
    TransitionTimeoutError,
    UnknownStartTypeError,
    UnknownStateError,
    UnsupportedControlError,
    native_errors,
)
from svcman.values import (
    ERROR_INSUFFICIENT_BUFFER,
    ERROR_MORE_DATA,
    SERVICE_ALL_ACCESS,
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
    SERVICE_WIN32,
    STARTUP_BY_START_TYPE,
    AcceptedControl,
    RefreshPolicy,
    ServiceConfig,
    ServiceState,
    ServiceStatus,
    ServiceType,
    StartupType,
)

logger = logging.getLogger(__name__)


class ServiceHandle:
    """
    One installed service, as enumerated by a ServiceDirectory.

    Status and configuration are cached snapshots; with RefreshPolicy.LIVE every
    read goes back to the service control manager. Each operation opens its own
    service handle with the rights it needs and closes it before returning.
    Mutators return the handle so calls can be chained.
    """

    def __init__(self, directory, name: str, display_name: str, status: ServiceStatus, index: int,
                 refresh: RefreshPolicy = RefreshPolicy.CACHED):
        self._directory = directory
        self._name = name
        self._display_name = display_name
        self._index = index
        self.status = status
        self.refresh = refresh
        self._config: ServiceConfig | None = None
        self.config_queried = False
        self._dependent_names: list[str] = []
        self.dependents_searched = False
        self._handle = None

    def __repr__(self):
        return f"<ServiceHandle {self._index}: {self._name!r}>"

    @property
    def name(self) -> str:
        return self._name

    @property
    def display_name(self) -> str:
        return self._display_name

    @property
    def index(self) -> int:
        return self._index

    def _set_index(self, index: int):
        self._index = index

    @property
    def live(self) -> bool:
        return self.refresh is RefreshPolicy.LIVE

    @live.setter
    def live(self, value: bool):
        self.refresh = RefreshPolicy.LIVE if value else RefreshPolicy.CACHED

    @property
    def directory(self):
        if self._directory is None:
            raise NotActiveError(f"service {self._name}")
        return self._directory

    @property
    def _scm(self):
        return self.directory.subsystem

    # ---- handle lifetime ----

    @contextmanager
    def _opened(self, access: int):
        handle = self.directory.open_service(self._name, access)
        previous, self._handle = self._handle, handle
        try:
            yield handle
        finally:
            self._handle = previous
            self.directory.close_handle(handle)

    def close(self):
        """Detach from the owning directory. Called when the directory discards its records."""
        if self._handle is not None and self._directory is not None:
            self._directory.close_handle(self._handle)
        self._handle = None
        self._directory = None

    # ---- status ----

    def refresh_status(self) -> ServiceStatus:
        if self._handle is not None:
            with native_errors("QueryServiceStatus"):
                self.status = self._scm.query_status(self._handle)
        else:
            with self._opened(SERVICE_QUERY_STATUS) as handle:
                with native_errors("QueryServiceStatus"):
                    self.status = self._scm.query_status(handle)
        return self.status

    def get_state(self) -> ServiceState:
        if self.live:
            self.refresh_status()
        code = self.status.current_state
        try:
            return ServiceState(code)
        except ValueError:
            raise UnknownStateError(self._name, code) from None

    state = property(get_state)

    def is_started(self) -> bool:
        return self.get_state() == ServiceState.RUNNING

    def is_stopped(self) -> bool:
        return self.get_state() == ServiceState.STOPPED

    def is_paused(self) -> bool:
        return self.get_state() == ServiceState.PAUSED

    def is_start_pending(self) -> bool:
        return self.get_state() == ServiceState.START_PENDING

    def is_stop_pending(self) -> bool:
        return self.get_state() == ServiceState.STOP_PENDING

    def is_pause_pending(self) -> bool:
        return self.get_state() == ServiceState.PAUSE_PENDING

    def is_continue_pending(self) -> bool:
        return self.get_state() == ServiceState.CONTINUE_PENDING

    def get_service_accept(self) -> AcceptedControl:
        if self.live:
            self.refresh_status()
        return AcceptedControl.from_mask(self.status.controls_accepted)

    def process(self):
        """The psutil.Process hosting the service, or None when it is not running."""
        status = self.refresh_status()
        if status.current_state != ServiceState.RUNNING or not status.process_id:
            return None
        try:
            return psutil.Process(status.process_id)
        except psutil.NoSuchProcess:
            return None

    # ---- state transitions ----

    def wait_for(self, state: ServiceState):
        """
        Poll until the service reports `state`. Between polls sleep for the wait hint
        the service advertised (or the directory's fallback when it gave none). If a
        poll shows no checkpoint progress the service is considered hung.
        """
        status = self.refresh_status()
        while status.current_state != state:
            old_check_point = status.check_point
            wait_ms = status.wait_hint if status.wait_hint > 0 else self.directory.fallback_wait_hint
            logger.debug("%s: state %s, checkpoint %d, waiting %d ms",
                         self._name, status.current_state, old_check_point, wait_ms)
            self.directory.sleep(wait_ms / 1000.0)
            status = self.refresh_status()
            if status.current_state == state:
                break
            if status.check_point <= old_check_point:
                actual = status.current_state
                try:
                    actual = ServiceState(actual)
                except ValueError:
                    pass
                raise TransitionTimeoutError(self._name, ServiceState(state), actual)
        return self

    def _require_accepted(self, control: AcceptedControl, verb: str):
        accepted = AcceptedControl.from_mask(self.refresh_status().controls_accepted)
        if control not in accepted:
            raise UnsupportedControlError(self._name, verb)

    def _control(self, access, accept, verb, code, target, wait):
        with self._opened(SERVICE_QUERY_STATUS | access) as handle:
            self._require_accepted(accept, verb)
            with native_errors("ControlService"):
                self._scm.control_service(handle, code)
            logger.info("Requested %s to be %s", self._name, verb)
            if wait:
                self.wait_for(target)
            else:
                self.refresh_status()
        return self

    def start(self, wait: bool = False, args=()):
        with self._opened(SERVICE_QUERY_STATUS | SERVICE_START) as handle:
            with native_errors("StartService"):
                self._scm.start_service(handle, args)
            logger.info("Started %s", self._name)
            if wait:
                self.wait_for(ServiceState.RUNNING)
            else:
                self.refresh_status()
        return self

    def stop(self, wait: bool = False):
        return self._control(SERVICE_STOP, AcceptedControl.STOP, "stopped",
                             SERVICE_CONTROL_STOP, ServiceState.STOPPED, wait)

    def pause(self, wait: bool = False):
        return self._control(SERVICE_PAUSE_CONTINUE, AcceptedControl.PAUSE_CONTINUE, "paused",
                             SERVICE_CONTROL_PAUSE, ServiceState.PAUSED, wait)

    def resume(self, wait: bool = False):
        return self._control(SERVICE_PAUSE_CONTINUE, AcceptedControl.PAUSE_CONTINUE, "continued",
                             SERVICE_CONTROL_CONTINUE, ServiceState.RUNNING, wait)

    continue_ = resume

    def delete(self) -> bool:
        with self._opened(SERVICE_ALL_ACCESS) as handle:
            deleted = self._scm.delete_service(handle)
        if deleted:
            logger.info("Deleted %s", self._name)
        return deleted

    # ---- dependents ----

    def _search_dependents(self):
        if self.dependents_searched:
            return
        scm = self._scm
        with self._opened(SERVICE_ENUMERATE_DEPENDENTS) as handle:
            entries = fetch_sized(scm, "EnumDependentServices",
                                  lambda size: scm.enum_dependent_services(handle, size),
                                  ERROR_MORE_DATA)
        self._dependent_names = [e.name for e in entries or []]
        self.dependents_searched = True

    def dependent_count(self) -> int:
        self._search_dependents()
        return len(self._dependent_names)

    def dependents(self, index: int) -> "ServiceHandle":
        self._search_dependents()
        if not 0 <= index < len(self._dependent_names):
            raise IndexOutOfRangeError(index, len(self._dependent_names))
        return self.directory.get_by_name(self._dependent_names[index])

    def iter_dependents(self):
        for i in range(self.dependent_count()):
            yield self.dependents(i)

    # ---- configuration ----

    def query_config(self) -> ServiceConfig:
        scm = self._scm
        with self._opened(SERVICE_QUERY_CONFIG) as handle:
            config = fetch_sized(scm, "QueryServiceConfig",
                                 lambda size: scm.query_config(handle, size),
                                 ERROR_INSUFFICIENT_BUFFER)
        if config is None:
            raise SubsystemError("QueryServiceConfig", "no configuration returned")
        self._config = config
        self.config_queried = True
        return config

    def _current_config(self) -> ServiceConfig:
        if self.live or not self.config_queried:
            self.query_config()
        return self._config

    def get_binary_path(self) -> str:
        return self._current_config().binary_path

    def get_start_type(self) -> StartupType:
        code = self._current_config().start_type
        try:
            return STARTUP_BY_START_TYPE[code]
        except KeyError:
            raise UnknownStartTypeError(self._name, code) from None

    def get_error_control(self) -> int:
        return self._current_config().error_control

    def own_process(self) -> bool:
        return (self._current_config().service_type & SERVICE_WIN32) == ServiceType.WIN32_OWN_PROCESS

    def get_interactive(self) -> bool:
        return bool(self._current_config().service_type & ServiceType.INTERACTIVE_PROCESS)

    def get_user_name(self) -> str:
        return self._current_config().user_name

    def get_description(self) -> str:
        with self._opened(SERVICE_QUERY_CONFIG) as handle:
            with native_errors("QueryServiceConfig2"):
                return self._scm.query_description(handle)

    def _change_config(self, what: str, service_type=SERVICE_NO_CHANGE, start_type=SERVICE_NO_CHANGE,
                       error_control=SERVICE_NO_CHANGE, **fields):
        with self._opened(SERVICE_CHANGE_CONFIG) as handle:
            with native_errors("ChangeServiceConfig"):
                self._scm.change_config(handle, int(service_type), int(start_type), int(error_control), **fields)
        # next read picks up the new values
        self.config_queried = False
        logger.info("Changed %s of %s", what, self._name)
        return self

    def _require_not_running(self, what: str):
        if self.refresh_status().current_state == ServiceState.RUNNING:
            raise PreconditionError(f"stop {self._name} before changing its {what}")

    def change_service_type(self, service_type: int):
        self.query_config()
        self._require_not_running("service type")
        return self._change_config("service type", service_type=service_type)

    def change_start_type(self, start_type: int):
        self.query_config()
        return self._change_config("start type", start_type=start_type)

    def change_error_control(self, error_control: int):
        self.query_config()
        return self._change_config("error control", error_control=error_control)

    def change_binary_path(self, binary_path: str):
        self.query_config()
        self._require_not_running("binary path")
        return self._change_config("binary path", binary_path=binary_path)

    def change_account_name(self, account_name: str, password: str = ""):
        self.query_config()
        return self._change_config("account", user_name=account_name, password=password)

    def change_display_name(self, display_name: str):
        self.query_config()
        return self._change_config("display name", display_name=display_name)

    def change_description(self, description: str):
        with self.directory.locked():
            with self._opened(SERVICE_CHANGE_CONFIG) as handle:
                with native_errors("ChangeServiceConfig2"):
                    self._scm.change_description(handle, description)
        logger.info("Changed description of %s", self._name)
        return self
