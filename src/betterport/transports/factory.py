"""Transport factory object that allows transports to be constructed
from a simple string or dict representation.

Each transport type is registered with the names of the parameters that it
accepts under alternative spellings and an optional function that maps the
generic ``host``, ``port`` and ``path`` parts of a specification to the
parameters of the transport. The factory rejects parameters that the
transport does not know about before constructing it, so a typo in a
configuration file shows up as a clear error instead of a cryptic
`TypeError` from deep inside a constructor.
"""

import attr

from functools import partial
from inspect import Parameter, signature
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlparse

from betterport.errors import UnknownTransportTypeError


__all__ = ("TransportFactory", "create_transport", "create_transport_factory")

#: Type specification for the parameters of a transport
Parameters = Dict[str, Any]


def _parse_query_value(value: str) -> Any:
    """Casts a query parameter value from a URL-style specification to an
    integer, a float or a boolean where it looks like one.
    """
    for func in (int, float):
        try:
            return func(value)
        except ValueError:
            pass

    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    elif lowered in ("false", "no", "off"):
        return False
    else:
        return value


def _accepted_parameters(factory: Callable) -> Optional[frozenset]:
    """Returns the names of the keyword arguments that the given transport
    factory accepts, or `None` if it accepts arbitrary keyword arguments or
    its signature cannot be determined.
    """
    try:
        params = signature(factory).parameters.values()
    except (TypeError, ValueError):
        return None

    names = set()
    for param in params:
        if param.kind is Parameter.VAR_KEYWORD:
            return None
        elif param.kind in (Parameter.POSITIONAL_OR_KEYWORD, Parameter.KEYWORD_ONLY):
            names.add(param.name)
    return frozenset(names)


@attr.s(frozen=True)
class TransportRegistration:
    """A transport type registered in a TransportFactory_."""

    name: str = attr.ib()
    factory: Callable = attr.ib()

    #: Mapping from alternative parameter names to the real ones
    aliases: Dict[str, str] = attr.ib(factory=dict)

    #: Function that turns the generic parts of a specification into the
    #: parameters of the transport
    normalize: Optional[Callable[[Parameters], Parameters]] = attr.ib(default=None)

    def prepare(self, parameters: Parameters) -> Parameters:
        """Turns the raw parameters of a specification into the keyword
        arguments of the transport factory.

        Raises:
            ValueError: if a parameter is given twice under different names
                or the transport does not accept it
        """
        result = {}
        for key, value in parameters.items():
            name = self.aliases.get(key, key)
            if name in result:
                raise ValueError(
                    f"parameter {name!r} of {self.name} transports is given twice"
                )
            result[name] = value

        if self.normalize is not None:
            result = self.normalize(result)

        accepted = _accepted_parameters(self.factory)
        if accepted is not None:
            unknown = sorted(key for key in result if key not in accepted)
            if unknown:
                raise ValueError(
                    f"unknown parameters for {self.name} transports: "
                    + ", ".join(unknown)
                )

        return result


class TransportFactory(object):
    """Transport factory object that creates transports from a URL-like
    string representation or a simple dict representation.
    """

    def __init__(self):
        """Constructor."""
        self._registry: Dict[str, TransportRegistration] = dict()

    def create(self, specification):
        """Creates a transport object from its specification.

        The specification is either a URL-style string or a dictionary.
        Strings look like this::

            scheme:[//host:port]/path?param1=value1&param2=value2&...

        The scheme selects the registered transport type; ``host``,
        ``port``, ``path`` and the query parameters are passed to it as
        keyword arguments after the aliases and the normalizer of the
        transport type were applied. Query parameter values that look like
        integers, floats or booleans are cast accordingly; everything else
        is passed as a string. Some examples::

            serial:/dev/ttyUSB0?baud=57600
            udp://192.168.1.10:14550?rec_port=14551
            udp://:14550
            tcp://localhost:5760?timeout=3&keepAlive=true

        The dictionary form uses a ``type`` key for the scheme, optional
        ``host``, ``port`` and ``path`` keys and an optional ``parameters``
        dictionary. Values in the dictionary form are passed as they are::

            {
                "type": "serial",
                "path": "/dev/ttyUSB0",
                "parameters": {"baudRate": 57600}
            }

        Parameters:
            specification (str or dict): the specification of the transport
                to create, in one of the two possible formats outlined above

        Returns:
            Transport: the transport that was created by the factory

        Raises:
            UnknownTransportTypeError: if the type of the transport is not
                known to the factory
            ValueError: if the specification contains parameters that the
                transport does not accept
        """
        if isinstance(specification, str):
            specification = self._url_specification_to_dict(specification)

        transport_type = specification["type"]
        registration = self._registry.get(transport_type)
        if registration is None:
            raise UnknownTransportTypeError(transport_type)

        parameters = {}
        for name in ("host", "port", "path"):
            if name in specification:
                parameters[name] = specification[name]
        parameters.update(specification.get("parameters", {}))

        return registration.factory(**registration.prepare(parameters))

    def register(
        self,
        name: str,
        klass=None,
        *,
        aliases: Optional[Dict[str, str]] = None,
        normalize: Optional[Callable[[Parameters], Parameters]] = None,
    ):
        """Registers the given class for this transport factory with the
        given name, or returns a decorator that will register an arbitrary
        class with the given name (if no class is specified).

        Parameters:
            name: the name that will be used in the factory to refer to the
                given transport class. See the `create()`_ method for more
                information about how this name is used.
            klass (Optional[class]): a transport class or a callable that
                returns a new transport instance when called with some
                keyword arguments (that are provided by the factory in
                the `create()`_ method).
            aliases: mapping from alternative parameter names (typically
                camel-cased ones) to the names that the class accepts
            normalize: function that receives the parameters after the
                aliases were resolved and returns the keyword arguments to
                pass to the class

        Returns:
            when ``klass`` is not ``None``, returns the class itself. When
            ``klass`` is ``None``, returns a decorator that can be applied
            on a class to register it with the given name in this factory.
        """
        if klass is None:
            return partial(self.register, name, aliases=aliases, normalize=normalize)

        self._registry[name] = TransportRegistration(
            name=name, factory=klass, aliases=dict(aliases or {}), normalize=normalize
        )
        return klass

    @property
    def types(self):
        """Returns the names of the registered transport types."""
        return sorted(self._registry)

    @staticmethod
    def _url_specification_to_dict(specification):
        """Converts a URL-styled specification to a dict-styled
        specification.

        Parameters:
            specification (str): the URL-styled specification to convert

        Returns:
            dict: the dict-styled specification
        """
        parts = urlparse(specification, allow_fragments=False)

        host, _, port = parts.netloc.partition(":")
        port = int(port) if port else None

        parameters = {}
        for key, values in (parse_qs(parts.query) if parts.query else {}).items():
            if len(values) > 1:
                raise ValueError("repeated parameters are not supported")
            parameters[key] = _parse_query_value(values[0])

        result = {"type": parts.scheme, "parameters": parameters}
        if host:
            result["host"] = host
        if port is not None:
            result["port"] = port
        if parts.path:
            result["path"] = parts.path
        return result

    def __call__(self, *args, **kwds):
        """Forwards the invocation to the `create()`_ method."""
        return self.create(*args, **kwds)


create_transport = TransportFactory()  #: Singleton transport factory


def create_transport_factory(*args, **kwds):
    """Creates a transport factory function that creates a transport
    configured in a specific way when invoked with no arguments.

    This is essentially a deferred call to `create_transport()`
    """
    return partial(create_transport, *args, **kwds)
