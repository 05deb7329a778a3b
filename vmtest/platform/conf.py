"""
Machine user data.

:class:`UserData` is what a test declares (Ignition JSON, cloud-config YAML,
a shell script, or nothing). :meth:`UserData.render` turns it into a
:class:`Conf`, the mutable document the cluster decorates with SSH keys,
files and users before handing it to the machine.
"""

import json
import logging
import urllib.parse
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import yaml


log = logging.getLogger(__name__)

DEFAULT_IGNITION = '{"ignition": {"version": "3.0.0"}}'
CLOUD_CONFIG_HEADER = "#cloud-config"


class ConfError(Exception):
    """Raised for user data that cannot be parsed or rendered."""
    pass


class Kind(str, Enum):
    IGNITION = "ignition"
    CLOUD_CONFIG = "cloud-config"
    SCRIPT = "script"
    EMPTY = "empty"


class UserData:
    """Immutable, unrendered user data as declared by a test."""

    def __init__(self, kind: Kind, data: str = "", user: str = "core"):
        self.kind = kind
        self.data = data
        self.user = user

    @classmethod
    def ignition(cls, data: str) -> "UserData":
        return cls(Kind.IGNITION, data)

    @classmethod
    def cloud_config(cls, data: str) -> "UserData":
        return cls(Kind.CLOUD_CONFIG, data)

    @classmethod
    def script(cls, data: str) -> "UserData":
        return cls(Kind.SCRIPT, data)

    @classmethod
    def empty(cls) -> "UserData":
        return cls(Kind.EMPTY)

    def contains(self, needle: str) -> bool:
        return needle in self.data

    def subst(self, old: str, new: str) -> "UserData":
        """Copy with every occurrence of ``old`` replaced by ``new``."""
        return UserData(self.kind, self.data.replace(old, new), self.user)

    def with_user(self, user: str) -> "UserData":
        return UserData(self.kind, self.data, user)

    def is_ignition_compatible(self) -> bool:
        return self.kind in (Kind.IGNITION, Kind.EMPTY)

    def render(self) -> "Conf":
        """
        Parse the data into a :class:`Conf`.

        Raises:
            ConfError: the Ignition JSON or cloud-config YAML is malformed.
        """
        if self.kind == Kind.IGNITION:
            try:
                doc = json.loads(self.data)
            except ValueError as e:
                raise ConfError(f"invalid ignition config: {e}") from e
            if not isinstance(doc, dict) or "version" not in doc.get("ignition", {}):
                raise ConfError("ignition config has no ignition.version")
            return Conf(Kind.IGNITION, doc, self.user)

        if self.kind == Kind.CLOUD_CONFIG:
            try:
                doc = yaml.safe_load(self.data) or {}
            except yaml.YAMLError as e:
                raise ConfError(f"invalid cloud-config: {e}") from e
            if not isinstance(doc, dict):
                raise ConfError("cloud-config must be a mapping")
            return Conf(Kind.CLOUD_CONFIG, doc, self.user)

        if self.kind == Kind.SCRIPT:
            return Conf(Kind.SCRIPT, self.data, self.user)

        return Conf(Kind.EMPTY, None, self.user)

    def __repr__(self) -> str:
        return f"UserData({self.kind.value!r}, {len(self.data)} bytes)"


class Conf:
    """Rendered, mutable machine configuration."""

    def __init__(self, kind: Kind, doc: Any, user: str = "core"):
        self.kind = kind
        self.doc = doc
        self.user = user

    def is_ignition(self) -> bool:
        return self.kind == Kind.IGNITION

    def is_empty(self) -> bool:
        return self.kind == Kind.EMPTY

    def _ignition_user(self, name: str) -> Dict[str, Any]:
        users = self.doc.setdefault("passwd", {}).setdefault("users", [])
        for user in users:
            if user.get("name") == name:
                return user
        user = {"name": name}
        users.append(user)
        return user

    def add_file(self, path: str, contents: str, mode: int = 0o644, owner: str = "root") -> None:
        """Write ``contents`` to ``path`` on first boot. No-op for scripts."""
        if self.kind == Kind.IGNITION:
            files = self.doc.setdefault("storage", {}).setdefault("files", [])
            files[:] = [f for f in files if f.get("path") != path]
            files.append({
                "path": path,
                "contents": {"source": "data:," + urllib.parse.quote(contents)},
                "mode": mode,
                "overwrite": True,
                "user": {"name": owner},
            })
        elif self.kind == Kind.CLOUD_CONFIG:
            files = self.doc.setdefault("write_files", [])
            files[:] = [f for f in files if f.get("path") != path]
            files.append({
                "path": path,
                "content": contents,
                "permissions": f"0{mode:o}",
                "owner": owner,
            })
        else:
            log.warning("cannot add file %s to %s user data", path, self.kind.value)

    def add_systemd_unit(self, name: str, contents: str, enable: bool = False) -> None:
        if self.kind == Kind.IGNITION:
            units = self.doc.setdefault("systemd", {}).setdefault("units", [])
            units[:] = [u for u in units if u.get("name") != name]
            units.append({"name": name, "contents": contents, "enabled": enable})
        elif self.kind == Kind.CLOUD_CONFIG:
            units = self.doc.setdefault("coreos", {}).setdefault("units", [])
            units[:] = [u for u in units if u.get("name") != name]
            units.append({"name": name, "content": contents, "enable": enable})
        else:
            log.warning("cannot add unit %s to %s user data", name, self.kind.value)

    def copy_keys(self, keys: Iterable[str]) -> None:
        """Authorize the public ``keys`` for the configured user."""
        keys = list(keys)
        if not keys:
            return
        if self.kind == Kind.IGNITION:
            user = self._ignition_user(self.user)
            existing = user.setdefault("sshAuthorizedKeys", [])
            existing.extend(k for k in keys if k not in existing)
        elif self.kind == Kind.CLOUD_CONFIG:
            if self.user == "core":
                existing = self.doc.setdefault("ssh_authorized_keys", [])
                existing.extend(k for k in keys if k not in existing)
            else:
                user = self._cloud_config_user(self.user)
                existing = user.setdefault("ssh-authorized-keys", [])
                existing.extend(k for k in keys if k not in existing)
        else:
            log.warning("cannot add SSH keys to %s user data", self.kind.value)

    def _cloud_config_user(self, name: str) -> Dict[str, Any]:
        users = self.doc.setdefault("users", [])
        for user in users:
            if user.get("name") == name:
                return user
        user = {"name": name}
        users.append(user)
        return user

    def add_user_to_groups(self, name: str, groups: List[str]) -> None:
        if self.kind == Kind.IGNITION:
            user = self._ignition_user(name)
        elif self.kind == Kind.CLOUD_CONFIG:
            user = self._cloud_config_user(name)
        else:
            raise ConfError(f"cannot add user {name} to {self.kind.value} user data")
        existing = user.setdefault("groups", [])
        existing.extend(g for g in groups if g not in existing)

    def serialize(self) -> str:
        if self.kind == Kind.IGNITION:
            return json.dumps(self.doc)
        if self.kind == Kind.CLOUD_CONFIG:
            return CLOUD_CONFIG_HEADER + "\n" + yaml.safe_dump(self.doc, default_flow_style=False)
        if self.kind == Kind.SCRIPT:
            return self.doc
        return ""

    def write_file(self, path: str) -> None:
        with open(path, "w") as f:
            f.write(self.serialize())
