"""
User data rendering.

Covers:
- Parsing Ignition and cloud-config, and rejecting malformed input
- Placeholder substitution
- Adding files, units, SSH keys and groups
- Serialization
- Cluster-level decoration (keys, update.conf, non-core users, opt-outs)
"""

from __future__ import annotations

import json
from pathlib import Path
from urllib.parse import unquote

import pytest
import yaml

from conftest import TEST_PUBLIC_KEY, FakeFlight
from vmtest.platform.base import RuntimeConfig
from vmtest.platform.conf import DEFAULT_IGNITION, ConfError, Kind, UserData


class TestRender:

    def test_ignition(self):
        conf = UserData.ignition(DEFAULT_IGNITION).render()
        assert conf.is_ignition()
        assert conf.doc == {"ignition": {"version": "3.0.0"}}

    def test_ignition_without_version(self):
        with pytest.raises(ConfError, match="ignition.version"):
            UserData.ignition('{"storage": {}}').render()

    def test_ignition_invalid_json(self):
        with pytest.raises(ConfError):
            UserData.ignition("{not json").render()

    def test_cloud_config(self):
        conf = UserData.cloud_config("#cloud-config\nhostname: box\n").render()
        assert conf.kind == Kind.CLOUD_CONFIG
        assert conf.doc == {"hostname": "box"}

    def test_cloud_config_must_be_mapping(self):
        with pytest.raises(ConfError, match="mapping"):
            UserData.cloud_config("- a\n- b\n").render()

    def test_cloud_config_invalid_yaml(self):
        with pytest.raises(ConfError):
            UserData.cloud_config("a: [unclosed\n").render()

    def test_empty(self):
        conf = UserData.empty().render()
        assert conf.is_empty()
        assert conf.serialize() == ""

    def test_script_passes_through(self):
        conf = UserData.script("#!/bin/sh\necho hi\n").render()
        assert conf.serialize() == "#!/bin/sh\necho hi\n"


class TestSubstitution:

    def test_subst_returns_copy(self):
        original = UserData.cloud_config("discovery: $discovery\n")
        replaced = original.subst("$discovery", "https://example.com/x")
        assert original.contains("$discovery")
        assert not replaced.contains("$discovery")
        assert replaced.render().doc == {"discovery": "https://example.com/x"}


class TestConfEdits:

    def test_ignition_file_and_keys(self):
        conf = UserData.ignition(DEFAULT_IGNITION).render()
        conf.add_file("/etc/motd", "hello world\n", 0o600)
        conf.copy_keys(["key-a", "key-b", "key-a"])

        files = conf.doc["storage"]["files"]
        assert files[0]["path"] == "/etc/motd"
        assert files[0]["mode"] == 0o600
        assert unquote(files[0]["contents"]["source"][len("data:,"):]) == "hello world\n"
        assert conf.doc["passwd"]["users"] == [
            {"name": "core", "sshAuthorizedKeys": ["key-a", "key-b"]},
        ]

    def test_add_file_replaces_same_path(self):
        conf = UserData.ignition(DEFAULT_IGNITION).render()
        conf.add_file("/etc/x", "one")
        conf.add_file("/etc/x", "two")
        assert len(conf.doc["storage"]["files"]) == 1

    def test_ignition_unit(self):
        conf = UserData.ignition(DEFAULT_IGNITION).render()
        conf.add_systemd_unit("foo.service", "[Service]\n", enable=True)
        assert conf.doc["systemd"]["units"] == [
            {"name": "foo.service", "contents": "[Service]\n", "enabled": True},
        ]

    def test_cloud_config_keys_for_core(self):
        conf = UserData.cloud_config("hostname: box\n").render()
        conf.copy_keys(["key-a"])
        assert conf.doc["ssh_authorized_keys"] == ["key-a"]

    def test_cloud_config_keys_for_other_user(self):
        conf = UserData.cloud_config("hostname: box\n").with_user("admin").render()
        conf.copy_keys(["key-a"])
        conf.add_user_to_groups("admin", ["sudo"])
        assert conf.doc["users"] == [
            {"name": "admin", "ssh-authorized-keys": ["key-a"], "groups": ["sudo"]},
        ]

    def test_cloud_config_serialize(self):
        conf = UserData.cloud_config("hostname: box\n").render()
        conf.add_file("/etc/x", "data\n", 0o644)
        text = conf.serialize()
        assert text.startswith("#cloud-config\n")
        doc = yaml.safe_load(text)
        assert doc["write_files"][0]["permissions"] == "0644"

    def test_groups_on_script_rejected(self):
        conf = UserData.script("#!/bin/sh\n").render()
        with pytest.raises(ConfError):
            conf.add_user_to_groups("admin", ["sudo"])

    def test_write_file(self, tmp_path: Path):
        conf = UserData.ignition(DEFAULT_IGNITION).render()
        conf.write_file(str(tmp_path / "ignition.json"))
        assert json.loads((tmp_path / "ignition.json").read_text()) == conf.doc


# ---------------------------------------------------------------------------
# Cluster decoration
# ---------------------------------------------------------------------------

class TestClusterRender:

    def cluster(self, **rconf):
        return FakeFlight().new_cluster(RuntimeConfig(**rconf))

    def test_default_ignition(self):
        conf = self.cluster().render_user_data(None)
        assert conf.is_ignition()
        assert conf.doc["passwd"]["users"][0]["sshAuthorizedKeys"] == [TEST_PUBLIC_KEY]
        update = conf.doc["storage"]["files"][0]
        assert update["path"] == "/etc/flatcar/update.conf"
        assert "SERVER%3Ddisabled" in update["contents"]["source"]

    def test_no_ssh_key_flag(self):
        conf = self.cluster(no_ssh_key_in_user_data=True).render_user_data(None)
        assert "passwd" not in conf.doc

    def test_no_disable_updates_flag(self):
        conf = self.cluster(no_disable_updates=True).render_user_data(None)
        assert "storage" not in conf.doc

    def test_non_core_user_gets_sudo(self):
        conf = self.cluster(default_user="admin").render_user_data(None)
        users = conf.doc["passwd"]["users"]
        assert users == [{
            "name": "admin",
            "groups": ["sudo"],
            "sshAuthorizedKeys": [TEST_PUBLIC_KEY],
        }]

    def test_ignition_vars(self):
        user_data = UserData.ignition('{"ignition": {"version": "3.0.0"}, "x": "$private_ipv4"}')
        conf = self.cluster().render_user_data(user_data, {"$private_ipv4": "10.0.0.5"})
        assert conf.doc["x"] == "10.0.0.5"

    def test_ignition_vars_not_applied_to_cloud_config(self):
        user_data = UserData.cloud_config("x: $private_ipv4\n")
        conf = self.cluster().render_user_data(user_data, {"$private_ipv4": "10.0.0.5"})
        assert conf.doc["x"] == "$private_ipv4"

    def test_empty_left_alone(self):
        conf = self.cluster().render_user_data(UserData.empty())
        assert conf.is_empty()
