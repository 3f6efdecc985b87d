"""Timing and behaviour parameters of a port."""

import attr

from typing import Any, Dict, Optional, Union

__all__ = ("PortConfig",)


def _to_bytes(value: Optional[Union[bytes, bytearray, str]]) -> Optional[bytes]:
    if value is None:
        return None
    elif isinstance(value, str):
        return value.encode("utf-8")
    else:
        return bytes(value)


def _non_negative(instance, attribute, value) -> None:
    if value < 0:
        raise ValueError(f"{attribute.name} must not be negative")


def _positive(instance, attribute, value) -> None:
    if value <= 0:
        raise ValueError(f"{attribute.name} must be positive")


#: Maps camel-cased option names to the names of the attributes of
#: PortConfig_ and a scaling factor for the value
_ALIASES = {
    "autoOpen": ("auto_open", None),
    "keepOpen": ("keep_open", None),
    "closeOnNoData": ("close_on_no_data", None),
    "disconnectTimeoutMS": ("disconnect_timeout", 0.001),
    "assumeDisconnectMS": ("disconnect_timeout", 0.001),
    "reconnectDelayMS": ("reconnect_delay", 0.001),
    "retryDelayMS": ("retry_delay", 0.001),
    "sendOnOpen": ("send_on_open", None),
    "writeQueueSize": ("write_queue_size", None),
}


@attr.s(frozen=True)
class PortConfig:
    """Resolved configuration of a port.

    Instances are immutable; use `evolve()` to derive a modified copy.
    All durations are expressed in seconds.
    """

    #: Whether the port should be opened as soon as it starts running
    auto_open: bool = attr.ib(default=True, converter=bool)

    #: Whether the port should be reopened automatically after it was closed
    #: without being asked to stay closed
    keep_open: bool = attr.ib(default=True, converter=bool)

    #: Whether to close the port when no data arrives in `disconnect_timeout`
    #: seconds
    close_on_no_data: bool = attr.ib(default=True, converter=bool)

    #: Number of seconds without incoming data after which the link is
    #: assumed to be dead
    disconnect_timeout: float = attr.ib(
        default=5.0, converter=float, validator=_positive
    )

    #: Number of seconds to wait after an unplanned close before the first
    #: attempt to reopen the port
    reconnect_delay: float = attr.ib(
        default=1.0, converter=float, validator=_non_negative
    )

    #: Number of seconds to wait between failed attempts to reopen the port
    retry_delay: float = attr.ib(default=5.0, converter=float, validator=_non_negative)

    #: Bytes to write to the port right after it was opened
    send_on_open: Optional[bytes] = attr.ib(default=None, converter=_to_bytes)

    #: Maximum number of writes that were accepted but not handed over to
    #: the transport yet
    write_queue_size: int = attr.ib(default=64, converter=int, validator=_positive)

    @classmethod
    def from_dict(cls, options: Optional[Dict[str, Any]] = None, **kwds):
        """Creates a configuration object from a dictionary.

        Keys may be the names of the attributes of this class or the
        camel-cased aliases of these names
        (``keepOpen``, ``disconnectTimeoutMS`` and so on). Keys ending in
        ``MS`` are interpreted as milliseconds.

        Parameters:
            options: the dictionary to process
            kwds: additional options that are merged into the dictionary

        Raises:
            ValueError: if the dictionary contains an unknown key or an
                invalid value
        """
        options = dict(options or {}, **kwds)

        names = {field.name for field in attr.fields(cls)}
        values = {}
        for key, value in options.items():
            if key in names:
                values[key] = value
            elif key in _ALIASES:
                name, scale = _ALIASES[key]
                if scale is not None and value is not None:
                    value = value * scale
                values[name] = value
            else:
                raise ValueError(f"unknown port option: {key!r}")

        return cls(**values)

    def evolve(self, **changes):
        """Returns a copy of this configuration with some of its attributes
        replaced.
        """
        return attr.evolve(self, **changes)
