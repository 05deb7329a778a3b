"""
Run output directory.

Covers:
- Explicit output dir is cleaned and recreated
- Default dir under the base dir with an atomically replaced -latest symlink
- A -latest path that is not a symlink is an error
- properties.json content and exclusive creation
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from vmtest.models import RunConfig
from vmtest.runner import RunError, setup_output_dir, write_properties


class TestSetupOutputDir:

    def test_explicit_dir_is_cleaned(self, tmp_path: Path):
        out = tmp_path / "results"
        out.mkdir()
        (out / "stale.txt").write_text("old run")

        assert setup_output_dir(str(out), "qemu", str(tmp_path / "base")) == str(out)
        assert out.is_dir()
        assert list(out.iterdir()) == []
        assert not (tmp_path / "base").exists()

    def test_explicit_dir_created(self, tmp_path: Path):
        out = tmp_path / "a" / "b"
        setup_output_dir(str(out), "qemu", str(tmp_path / "base"))
        assert out.is_dir()

    def test_default_dir_and_latest_link(self, tmp_path: Path):
        base = tmp_path / "base"
        out = Path(setup_output_dir("", "qemu", str(base)))

        assert out.parent == base
        assert out.name.startswith("qemu-")
        assert out.name.endswith(f"-{os.getpid()}")
        link = base / "qemu-latest"
        assert link.is_symlink()
        assert os.readlink(link) == out.name
        assert link.resolve() == out.resolve()
        assert not (out / "latest").exists()

    def test_latest_link_repointed(self, tmp_path: Path):
        base = tmp_path / "base"
        base.mkdir()
        os.symlink("old-run", base / "qemu-latest")

        out = Path(setup_output_dir("", "qemu", str(base)))
        assert os.readlink(base / "qemu-latest") == out.name

    def test_latest_not_a_symlink(self, tmp_path: Path):
        base = tmp_path / "base"
        (base / "qemu-latest").mkdir(parents=True)
        with pytest.raises(RunError, match="not a symlink"):
            setup_output_dir("", "qemu", str(base))


class TestWriteProperties:

    def test_content(self, tmp_path: Path):
        config = RunConfig(
            platform="qemu",
            distro="cl",
            board="arm64-usr",
            channel="beta",
            offering="pro",
            command_line=["vmtest", "run", "cl.*"],
        )
        write_properties(str(tmp_path), config, version="3510.2.0")
        props = json.loads((tmp_path / "properties.json").read_text())
        assert props == {
            "cmdline": ["vmtest", "run", "cl.*"],
            "platform": "qemu",
            "distro": "cl",
            "board": "arm64-usr",
            "channel": "beta",
            "offering": "pro",
            "version": "3510.2.0",
        }

    def test_exclusive_create(self, tmp_path: Path):
        config = RunConfig(command_line=["vmtest"])
        write_properties(str(tmp_path), config)
        with pytest.raises(FileExistsError):
            write_properties(str(tmp_path), config)
