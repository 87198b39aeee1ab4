"""Package fetch, extraction listing and object scanning."""
from __future__ import annotations

import os

import httpx
import pytest

import package_helper
from conftest import fake_elf, write_file
from package_helper import (
    PackageError,
    _listed_paths,
    add_package,
    download,
    fetch,
    package_format,
    scan_objects,
)


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)


def test_package_format():
    assert package_format("/tmp/busybox_1.36_amd64.deb") == "deb"
    assert package_format("strace-6.9-1.fc40.x86_64.RPM") == "rpm"
    assert package_format("thing.tar.gz") is None


def test_fetch_local_file(tmp_path):
    pkg = write_file(tmp_path / "a.deb")
    assert fetch(pkg, str(tmp_path)) == pkg


def test_fetch_unresolvable_source(tmp_path):
    with pytest.raises(PackageError, match="package not found"):
        fetch(str(tmp_path / "missing.deb"), str(tmp_path))
    with pytest.raises(PackageError):
        fetch("ftp://example.org/a.deb", str(tmp_path))


def test_download_writes_body(tmp_path):
    def handler(request):
        assert request.url.path == "/pool/main/b/busybox.deb"
        return httpx.Response(200, content=b"!<arch>\npayload")

    with _client(handler) as client:
        path = download("https://mirror.example/pool/main/b/busybox.deb", str(tmp_path), client)
    assert path == str(tmp_path / "busybox.deb")
    with open(path, "rb") as f:
        assert f.read() == b"!<arch>\npayload"


def test_download_follows_redirects(tmp_path):
    def handler(request):
        if request.url.path == "/old.rpm":
            return httpx.Response(302, headers={"location": "https://mirror.example/new.rpm"})
        return httpx.Response(200, content=b"rpm")

    with _client(handler) as client:
        path = fetch("https://mirror.example/old.rpm", str(tmp_path), client)
    assert os.path.basename(path) == "old.rpm"


def test_download_http_error(tmp_path):
    with _client(lambda request: httpx.Response(404)) as client:
        with pytest.raises(PackageError, match="cannot download"):
            download("https://mirror.example/nope.deb", str(tmp_path), client)


def test_listed_paths():
    lines = ["./", "./usr/", "./usr/bin/", "./usr/bin/strace", "", "garbage"]
    assert _listed_paths(lines) == ["/usr", "/usr/bin", "/usr/bin/strace"]


def test_scan_objects(tree):
    fake_elf(tree.staged_path("/usr/bin/tool"))
    fake_elf(tree.staged_path("/usr/lib/libx.so.1"), mode=0o644)
    fake_elf(tree.staged_path("/usr/lib/plugin.bin"), mode=0o644)
    write_file(tree.staged_path("/usr/bin/script"), b"#!/bin/sh\n", 0o755)
    tree.symlink("tool", "/usr/bin/alias")
    paths = ["/usr", "/usr/bin/tool", "/usr/lib/libx.so.1", "/usr/lib/plugin.bin",
             "/usr/bin/script", "/usr/bin/alias"]
    assert scan_objects(paths, tree) == ["/usr/bin/tool", "/usr/lib/libx.so.1"]


class RecordingResolver:
    def __init__(self):
        self.resolved = []

    def resolve_dependencies(self, path):
        self.resolved.append(path)


def test_add_package_resolves_extracted_objects(tree, tmp_path, monkeypatch):
    pkg = write_file(tmp_path / "tool_1.0_amd64.deb")

    def fake_extract(path, t):
        assert path == pkg
        fake_elf(t.staged_path("/usr/bin/tool"))
        write_file(t.staged_path("/usr/share/doc/tool/README"), b"docs")
        return ["/usr/bin/tool", "/usr/share/doc/tool/README"]

    monkeypatch.setattr(package_helper, "extract_deb", fake_extract)
    libs = RecordingResolver()
    paths = add_package(pkg, tree, libs, str(tmp_path))
    assert paths == ["/usr/bin/tool", "/usr/share/doc/tool/README"]
    assert libs.resolved == [tree.staged_path("/usr/bin/tool")]


def test_add_package_unsupported_format(tree, tmp_path):
    pkg = write_file(tmp_path / "tool.tar.gz")
    with pytest.raises(PackageError, match="unsupported package format"):
        add_package(pkg, tree, RecordingResolver(), str(tmp_path))
