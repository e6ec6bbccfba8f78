#!/usr/bin/env python3


class FlowmodeError(Exception):
    """Base class for errors reported to the user"""


class ConfigInvalid(FlowmodeError):
    pass


class InvalidDuration(ConfigInvalid):
    pass


class AcquisitionFailed(FlowmodeError):
    pass


class HostsPermissionDenied(FlowmodeError):
    pass


class HostsIOError(FlowmodeError):
    pass


class ReleaseFailed(FlowmodeError):
    """The hosts file could not be restored; the recovery marker is kept"""


class AlreadyActive(FlowmodeError):
    pass


class BackupAlreadyLive(RuntimeError):
    pass


class BackupAlreadyReleased(RuntimeError):
    pass
