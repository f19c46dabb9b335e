import logging
from typing import Callable

from svcman.errors import SubsystemError
from svcman.values import BufferResult

logger = logging.getLogger(__name__)


def fetch_sized(subsystem, operation: str, call: Callable[[int], BufferResult], expected_error: int):
    """
    Two-phase SCM query: probe with an empty buffer, then fill one of exactly the
    reported size. `expected_error` is the code the probe signals "buffer too small"
    with (ERROR_MORE_DATA or ERROR_INSUFFICIENT_BUFFER); anything else is fatal.
    """
    probe = call(0)
    if probe.ok:
        # nothing to return
        return probe.payload
    if probe.error != expected_error:
        raise SubsystemError(operation, subsystem.error_text(probe.error), probe.error)
    logger.debug("%s needs %d bytes", operation, probe.bytes_needed)
    result = call(probe.bytes_needed)
    if not result.ok:
        raise SubsystemError(operation, subsystem.error_text(result.error), result.error)
    return result.payload
