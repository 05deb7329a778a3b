"""
Backend dispatch.

Every platform the tool knows about has a :class:`PlatformName`. Backends
shipped here (QEMU and external provisioning) are registered in the
factory table; cloud backends live in separate packages and plug in with
:func:`register_backend`.
"""

from enum import Enum
from typing import Any, Callable, Dict

from .base import (
    Cluster,
    DiscoveryError,
    Flight,
    Machine,
    MachineError,
    PlatformError,
    PlatformOptions,
    RuntimeConfig,
    SSHCommandError,
    new_machines,
)


class PlatformName(str, Enum):
    AWS = "aws"
    AZURE = "azure"
    BRIGHTBOX = "brightbox"
    DO = "do"
    ESX = "esx"
    EXTERNAL = "external"
    GCE = "gce"
    HETZNER = "hetzner"
    OPENSTACK = "openstack"
    EQUINIXMETAL = "equinixmetal"
    QEMU = "qemu"
    QEMU_UNPRIV = "qemu-unpriv"
    SCALEWAY = "scaleway"


FlightFactory = Callable[[PlatformOptions], Flight]


def _qemu(options: Any) -> Flight:
    from .qemu import QEMUFlight
    return QEMUFlight(options)


def _qemu_unpriv(options: Any) -> Flight:
    from .qemu import QEMUFlight
    return QEMUFlight(options, unprivileged=True)


def _external(options: Any) -> Flight:
    from .external import ExternalFlight
    return ExternalFlight(options)


_backends: Dict[PlatformName, FlightFactory] = {
    PlatformName.QEMU: _qemu,
    PlatformName.QEMU_UNPRIV: _qemu_unpriv,
    PlatformName.EXTERNAL: _external,
}


def register_backend(name: str, factory: FlightFactory) -> None:
    """Install (or replace) the flight factory for platform ``name``."""
    _backends[PlatformName(name)] = factory


def available_backends() -> Dict[str, FlightFactory]:
    return {name.value: factory for name, factory in _backends.items()}


def new_flight(name: str, options: PlatformOptions) -> Flight:
    """
    Create the flight for platform ``name``.

    Raises:
        PlatformError: the platform is unknown, has no backend installed, or
            the backend failed to initialize.
    """
    try:
        platform = PlatformName(name)
    except ValueError:
        raise PlatformError(f"invalid platform {name!r}") from None

    factory = _backends.get(platform)
    if factory is None:
        raise PlatformError(f"no backend installed for platform {name!r}")
    return factory(options)


__all__ = [
    "Cluster", "DiscoveryError", "Flight", "Machine", "MachineError",
    "PlatformError", "PlatformName", "PlatformOptions", "RuntimeConfig",
    "SSHCommandError", "available_backends", "new_flight", "new_machines",
    "register_backend",
]
