"""Exceptions raised by the remote processor loader and resource table parser."""

from __future__ import annotations


class RemoteprocError(Exception):
    """Base class for every remote processor error."""

    default_message = "remote processor error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(self.default_message if message is None else message)


class InvalidArgumentError(RemoteprocError, ValueError):
    """An argument, image or state was not valid for the operation."""

    default_message = "invalid argument"


class NoDeviceError(RemoteprocError):
    """No remote processor was given to operate on."""

    default_message = "no such device"


class BusyError(RemoteprocError):
    """The remote processor is in a state that forbids the operation."""

    default_message = "device busy, try again"


class OutOfMemoryError(RemoteprocError):
    """Memory needed for the operation could not be obtained."""

    default_message = "out of memory"


class LoaderStateError(RemoteprocError):
    """The image loader has not reached the state the operation needs."""

    default_message = "loader is not in the required state"


class ResourceTableError(RemoteprocError):
    """Base class for resource table errors."""

    default_message = "resource table error"


class ResourceTableTruncatedError(ResourceTableError):
    """The resource table is shorter than its header says."""

    default_message = "resource table truncated"


class ResourceTableVersionError(ResourceTableError):
    """The resource table version is not supported."""

    default_message = "unsupported resource table version"


class ResourceTableReservedError(ResourceTableError):
    """A reserved resource table field is not zero."""

    default_message = "reserved resource table field is not zero"


class ResourceNotPresentError(ResourceTableError):
    """A resource is missing or could not be assigned."""

    default_message = "resource not present"


class ResourceNotSupportedError(ResourceTableError):
    """A resource is not supported and is skipped."""

    default_message = "resource not supported"