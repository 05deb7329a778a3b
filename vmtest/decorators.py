"""
Test decorator for vmtest suites.

The @vm_test() decorator builds a TestDescriptor from its arguments and
attaches it to the decorated function. Nothing is registered globally: a
suite module is handed to :meth:`vmtest.registry.TestRegistry.collect`,
which picks the descriptors up.
"""

import functools
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from packaging.version import Version

from .models import Flag, SkipFunc, TestDescriptor


VersionLike = Union[str, Version, None]


def _version(value: VersionLike) -> Optional[Version]:
    if value is None or isinstance(value, Version):
        return value
    return Version(value)


def vm_test(
    name: str,
    cluster_size: int = 1,
    platforms: Iterable[str] = (),
    exclude_platforms: Iterable[str] = (),
    architectures: Iterable[str] = (),
    distros: Iterable[str] = (),
    exclude_distros: Iterable[str] = (),
    channels: Iterable[str] = (),
    exclude_channels: Iterable[str] = (),
    offerings: Iterable[str] = (),
    exclude_offerings: Iterable[str] = (),
    min_version: VersionLike = None,
    end_version: VersionLike = None,
    native_funcs: Optional[Mapping[str, Callable[[], Any]]] = None,
    user_data: Optional[Any] = None,
    flags: Iterable[Flag] = (),
    fail_fast: bool = False,
    skip_func: Optional[SkipFunc] = None,
    default_user: Optional[str] = None,
    tags: Iterable[str] = (),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator to mark a function as a VM acceptance test.

    Args:
        name: Unique dotted test name, e.g. ``cl.basic``.
        cluster_size: Machines provisioned before the body runs. 0 means the
            body creates its own machines.
        platforms, architectures, distros, channels, offerings: Include
            lists. Empty means "any".
        exclude_*: Exclude lists, which always win over include lists.
        min_version, end_version: Half-open OS version range
            ``[min_version, end_version)``. None means unbounded.
        native_funcs: Functions run inside the guest through the native
            helper, by name.
        user_data: :class:`vmtest.platform.conf.UserData` for every machine.
        flags: :class:`vmtest.models.Flag` values.
        fail_fast: Skip remaining subtests after the first failure, and stop
            the whole run if this test fails.
        skip_func: Extra predicate consulted once the OS version is known.
        default_user: SSH user to log in as instead of the platform default.

    Example:
        @vm_test("cl.etcd.discovery", cluster_size=3,
                 user_data=UserData.cloud_config(ETCD_CONFIG))
        def etcd_discovery(c):
            c.must_ssh(c.machines()[0], "etcdctl member list")
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        test = TestDescriptor(
            name=name,
            run=func,
            platforms=tuple(platforms),
            exclude_platforms=tuple(exclude_platforms),
            architectures=tuple(architectures),
            distros=tuple(distros),
            exclude_distros=tuple(exclude_distros),
            channels=tuple(channels),
            exclude_channels=tuple(exclude_channels),
            offerings=tuple(offerings),
            exclude_offerings=tuple(exclude_offerings),
            min_version=_version(min_version),
            end_version=_version(end_version),
            cluster_size=cluster_size,
            native_funcs=dict(native_funcs or {}),
            user_data=user_data,
            flags=frozenset(flags),
            fail_fast=fail_fast,
            skip_func=skip_func,
            default_user=default_user,
            tags=tuple(tags),
        )

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return func(*args, **kwargs)

        wrapper._vm_test = test  # type: ignore
        return wrapper

    return decorator
