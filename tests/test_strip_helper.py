"""Parallel stripping of staged modules."""
from __future__ import annotations

import sys

import pytest

import strip_helper
from conftest import fake_elf, write_file


@pytest.fixture
def modules(tmp_path):
    d = tmp_path / "modules"
    return [
        fake_elf(d / "good.ko", 0o644),
        fake_elf(d / "bad.ko", 0o644),
        write_file(d / "fuse.ko.xz", b"\xfd7zXZ\x00"),
    ]


@pytest.fixture
def fake_strip(tmp_path, monkeypatch):
    strip = write_file(tmp_path / "bin" / "strip",
                       b'#!/bin/sh\ncase "$2" in *bad*) exit 1 ;; esac\nexit 0\n', 0o755)
    monkeypatch.setattr(strip_helper, "which", lambda name: strip)
    return strip


def test_strip_paths_counts_only_successful_strips(modules, fake_strip):
    assert strip_helper.strip_paths(modules, threads=2) == 1


def test_strip_paths_without_strip(modules, monkeypatch):
    monkeypatch.setattr(strip_helper, "which", lambda name: None)
    assert strip_helper.strip_paths(modules) == 0


def test_main_reports_stripped_count(modules, fake_strip, tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["strip_helper", "--dir", str(tmp_path / "modules")])
    strip_helper.main()
    assert capsys.readouterr().out.strip() == "stripped 1 of 2 ELF files"
