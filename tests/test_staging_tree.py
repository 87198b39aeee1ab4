"""StagingTree path mapping, copies and device node handling."""
from __future__ import annotations

import os
import stat

import pytest

from conftest import write_file
from staging_tree import DeviceNode, Outcome, StagingError, StagingTree, parse_node_spec


def test_staged_path_mirrors_host_path(tree):
    assert tree.staged_path("/usr/lib/libc.so.6") == os.path.join(tree.root, "usr/lib/libc.so.6")
    assert tree.staged_path("/") == tree.root
    assert tree.target_path(tree.staged_path("/etc/.hidden")) == "/etc/.hidden"
    assert tree.target_path(tree.root) == "/"


def test_staged_path_is_injective_after_normalization(tree):
    assert tree.staged_path("/usr//lib/./x") == tree.staged_path("/usr/lib/x")
    assert tree.staged_path("/usr/lib/x") != tree.staged_path("/usr/lib64/x")


def test_staged_path_rejects_relative_and_escaping(tree):
    with pytest.raises(StagingError):
        tree.staged_path("relative/path")
    # normpath collapses leading "..", the result must still be inside root
    assert tree.staged_path("/../../etc/passwd") == os.path.join(tree.root, "etc/passwd")


def test_copy_preserves_mode_and_symlinks(tree, host):
    exe = write_file(host / "bin" / "tool", b"#!/bin/sh\n", 0o750)
    link = host / "bin" / "alias"
    os.symlink("tool", link)

    staged = tree.copy(exe)
    assert stat.S_IMODE(os.stat(staged).st_mode) == 0o750
    staged_link = tree.copy(str(link))
    assert os.path.islink(staged_link)
    assert os.readlink(staged_link) == "tool"


def test_staged_symlink_cannot_redirect_writes(tree, tmp_path):
    outside = tmp_path / "outside"
    write_file(outside / "passwd", b"root:x:0:0\n")
    tree.symlink(str(outside), "/etc")
    with pytest.raises(StagingError, match="through a symlink"):
        tree.write_file("/etc/hostname", "vm\n")
    with pytest.raises(StagingError):
        tree.makedirs("/etc/ssl")

    tree.symlink(str(outside / "passwd"), "/init")
    tree.write_file("/init", "#!/bin/sh\n", mode=0o755)
    assert not os.path.islink(tree.staged_path("/init"))
    assert sorted(os.listdir(outside)) == ["passwd"]
    with open(outside / "passwd") as f:
        assert f.read() == "root:x:0:0\n"


def test_copy_host_dir_symlink_onto_staged_directory(tree, host):
    write_file(host / "usr" / "lib64" / "ld-linux-x86-64.so.2")
    os.symlink("usr/lib64", host / "lib64")
    tree.makedirs(str(host / "lib64"))
    tree.write_file(str(host / "lib64" / "libc.so.6"), b"libc")

    staged = tree.copy(str(host / "lib64"))
    assert os.path.isdir(staged) and not os.path.islink(staged)
    assert tree.exists(str(host / "lib64" / "libc.so.6"))


def test_copy_tree_mirrors_directory(tree, host):
    write_file(host / "etc" / "ssl" / "certs" / "ca.pem", b"cert")
    os.symlink("certs/ca.pem", host / "etc" / "ssl" / "cert.pem")
    tree.copy_tree(str(host / "etc" / "ssl"))
    assert tree.exists(str(host / "etc" / "ssl" / "certs" / "ca.pem"))
    assert os.path.islink(tree.staged_path(str(host / "etc" / "ssl" / "cert.pem")))


def test_symlink_replaces_different_target(tree):
    tree.symlink("/usr/bin/dash", "/bin/sh")
    tree.symlink("/usr/bin/bash", "/bin/sh")
    assert os.readlink(tree.staged_path("/bin/sh")) == "/usr/bin/bash"


def test_write_and_append(tree):
    tree.write_file("/init", "#!/bin/sh\n", mode=0o755)
    assert os.access(tree.staged_path("/init"), os.X_OK)
    tree.append_line("/etc/ld.so.conf", "/lib")
    tree.append_line("/etc/ld.so.conf", "/usr/lib\n")
    with open(tree.staged_path("/etc/ld.so.conf")) as f:
        assert f.read() == "/lib\n/usr/lib\n"


def test_mknod_unprivileged_records_virtual_node(tree):
    tree._privileged = False
    node = DeviceNode("console", "c", 5, 1)
    assert tree.mknod(node) is True
    assert tree.virtual_nodes["/dev/console"] == node
    assert tree.exists("/dev/console")
    assert tree.mknod(node) is False


def test_parse_node_spec():
    node = parse_node_spec("kvm c 10 232")
    assert node == DeviceNode("kvm", "c", 10, 232)
    assert node.file_type == stat.S_IFCHR
    assert parse_node_spec("vda b 254 0").kind == "b"
    for bad in ("kvm c 10", "kvm x 10 232", "kvm c ten 232"):
        with pytest.raises(StagingError):
            parse_node_spec(bad)


def test_parse_node_spec_bare_name_needs_host_node(tmp_path):
    with pytest.raises(StagingError):
        parse_node_spec("nosuchnode", dev_root=str(tmp_path))
    write_file(tmp_path / "regular")
    with pytest.raises(StagingError):
        parse_node_spec("regular", dev_root=str(tmp_path))


@pytest.mark.skipif(not os.path.exists("/dev/null"), reason="no /dev/null")
def test_parse_node_spec_clones_host_node():
    node = parse_node_spec("null")
    assert (node.kind, node.major, node.minor) == ("c", 1, 3)


def test_context_manager_removes_scratch_root():
    with StagingTree() as t:
        root = t.root
        t.write_file("/x", "y")
    assert not os.path.exists(root)


def test_keep_dir_survives(tmp_path):
    with StagingTree(str(tmp_path / "keep"), keep=True) as t:
        t.write_file("/x", "y")
    assert (tmp_path / "keep" / "x").exists()


def test_outcome_skipped():
    assert Outcome.NOT_FOUND.skipped and Outcome.CHECK_FAILED.skipped
    assert not any(o.skipped for o in (Outcome.COPIED, Outcome.ALREADY_PRESENT, Outcome.BUILTIN))
