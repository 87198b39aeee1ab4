"""Scratch directory holding the future image root filesystem.

All helpers that populate an image go through a StagingTree: it maps host
paths onto mirrored paths below its root, copies objects with their
attributes, and records device nodes.  Device nodes can only be created by
root; for unprivileged runs they are kept as records and emitted into the
archive by cpio_archive, so the image content does not depend on who built
it.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

NODE_TYPES = {"c": stat.S_IFCHR, "b": stat.S_IFBLK}


class BuildError(Exception):
    """Base class for fatal errors that abort the whole run."""


class StagingError(BuildError):
    """Invalid write into the staging tree."""


class Outcome(Enum):
    """Result of a single resolver step.

    Resolvers never raise for the skip-and-continue cases; they return
    NOT_FOUND or CHECK_FAILED and leave the decision to the caller.
    """

    COPIED = "copied"
    ALREADY_PRESENT = "already-present"
    BUILTIN = "builtin"
    NOT_FOUND = "not-found"
    CHECK_FAILED = "check-failed"

    @property
    def skipped(self):
        return self in (Outcome.NOT_FOUND, Outcome.CHECK_FAILED)


@dataclass(frozen=True)
class DeviceNode:
    """A character or block device node, relative to /dev."""

    name: str
    kind: str
    major: int
    minor: int
    mode: int = 0o600

    @property
    def file_type(self):
        return NODE_TYPES[self.kind]


def parse_node_spec(spec, dev_root="/dev"):
    """Parse ``"name [c|b major minor]"`` into a DeviceNode.

    A bare name clones the host node of the same name, which must exist.
    """
    fields = spec.split()
    if len(fields) == 1:
        return clone_host_node(fields[0], dev_root)
    if len(fields) != 4:
        raise StagingError(f"malformed device node spec: {spec!r}")
    name, kind, major, minor = fields
    if kind not in NODE_TYPES:
        raise StagingError(f"device node {name}: type must be 'c' or 'b', got {kind!r}")
    try:
        return DeviceNode(name, kind, int(major), int(minor))
    except ValueError:
        raise StagingError(f"device node {name}: bad major/minor in {spec!r}") from None


def clone_host_node(name, dev_root="/dev"):
    """Build a DeviceNode matching the host's /dev/<name>."""
    host = os.path.join(dev_root, name)
    try:
        st = os.stat(host)
    except FileNotFoundError:
        raise StagingError(f"device node {host} does not exist on the host") from None
    if stat.S_ISCHR(st.st_mode):
        kind = "c"
    elif stat.S_ISBLK(st.st_mode):
        kind = "b"
    else:
        raise StagingError(f"{host} is not a device node")
    return DeviceNode(name, kind, os.major(st.st_rdev), os.minor(st.st_rdev),
                      stat.S_IMODE(st.st_mode))


class StagingTree:
    """Image root under a private scratch directory.

    Use as a context manager: the scratch directory is removed on exit,
    whether the build succeeded or not, unless it was supplied by the
    caller with keep=True.
    """

    def __init__(self, root=None, keep=False):
        if root is None:
            self.root = tempfile.mkdtemp(prefix="vmramfs.")
        else:
            self.root = os.path.abspath(root)
            os.makedirs(self.root, exist_ok=True)
        self.keep = keep
        self._real_root = os.path.realpath(self.root)
        # target path ("/dev/kvm") -> DeviceNode, for nodes we could not mknod
        self.virtual_nodes = {}
        self._privileged = os.geteuid() == 0
        self._can_mknod = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()
        return False

    def cleanup(self):
        if not self.keep and os.path.isdir(self.root):
            shutil.rmtree(self.root)

    # -- path mapping ------------------------------------------------------

    def staged_path(self, path):
        """Map an absolute host (or target) path to its mirror under root."""
        if not os.path.isabs(path):
            raise StagingError(f"path must be absolute: {path!r}")
        rel = os.path.normpath(path).lstrip("/")
        staged = os.path.join(self.root, rel) if rel else self.root
        if os.path.commonpath([self.root, staged]) != self.root:
            raise StagingError(f"path escapes staging tree: {path!r}")
        if staged != self.root:
            # symlinks already staged resolve against the host, not the image
            parent = os.path.realpath(os.path.dirname(staged))
            if os.path.commonpath([self._real_root, parent]) != self._real_root:
                raise StagingError(f"path escapes staging tree through a symlink: {path!r}")
        return staged

    def target_path(self, staged):
        """Inverse of staged_path()."""
        rel = os.path.relpath(staged, self.root)
        return "/" if rel == "." else "/" + rel

    def exists(self, path):
        if path in self.virtual_nodes:
            return True
        return os.path.lexists(self.staged_path(path))

    # -- writers -----------------------------------------------------------

    def makedirs(self, path, mode=0o755):
        staged = self.staged_path(path)
        os.makedirs(staged, mode=mode, exist_ok=True)
        return staged

    def copy(self, host_path, dest=None):
        """Copy *host_path* to its mirrored location (or *dest*).

        Symlinks are copied as symlinks; directories are created (not
        recursed into).  Permissions and timestamps are preserved, and
        ownership too when running privileged.
        """
        staged = self.staged_path(dest or host_path)
        os.makedirs(os.path.dirname(staged), exist_ok=True)
        if os.path.islink(host_path):
            if os.path.isdir(staged) and not os.path.islink(staged):
                # merged-usr hosts: the directory is already staged with content
                logger.debug("keeping directory %s over host symlink", staged)
                return staged
            if os.path.lexists(staged):
                os.unlink(staged)
            os.symlink(os.readlink(host_path), staged)
        elif os.path.isdir(host_path):
            if os.path.islink(staged):
                os.unlink(staged)
            os.makedirs(staged, exist_ok=True)
            shutil.copystat(host_path, staged)
        else:
            if os.path.islink(staged):
                os.unlink(staged)
            shutil.copy2(host_path, staged)
        if self._privileged:
            st = os.lstat(host_path)
            os.lchown(staged, st.st_uid, st.st_gid)
        return staged

    def copy_tree(self, host_dir):
        """Recursively mirror a host directory, symlinks preserved."""
        self.copy(host_dir)
        for dirpath, dirnames, filenames in os.walk(host_dir):
            dirnames.sort()
            for name in sorted(dirnames + filenames):
                self.copy(os.path.join(dirpath, name))

    def symlink(self, target, link_path):
        staged = self.staged_path(link_path)
        os.makedirs(os.path.dirname(staged), exist_ok=True)
        if os.path.lexists(staged):
            if os.path.islink(staged) and os.readlink(staged) == target:
                return staged
            os.unlink(staged)
        os.symlink(target, staged)
        return staged

    def write_file(self, path, content, mode=0o644):
        staged = self.staged_path(path)
        os.makedirs(os.path.dirname(staged), exist_ok=True)
        if os.path.islink(staged):
            os.unlink(staged)
        data = content.encode() if isinstance(content, str) else content
        with open(staged, "wb") as f:
            f.write(data)
        os.chmod(staged, mode)
        return staged

    def append_line(self, path, line):
        staged = self.staged_path(path)
        os.makedirs(os.path.dirname(staged), exist_ok=True)
        if os.path.islink(staged):
            raise StagingError(f"refusing to append through symlink: {path!r}")
        with open(staged, "a") as f:
            f.write(line.rstrip("\n") + "\n")
        return staged

    def mknod(self, node, target=None):
        """Create device node *node* (default: /dev/<name>) unless present.

        Returns False if the node was already present.
        """
        target = target or "/dev/" + node.name.lstrip("/")
        if self.exists(target):
            return False
        staged = self.staged_path(target)
        os.makedirs(os.path.dirname(staged), exist_ok=True)
        if self._privileged and self._can_mknod:
            try:
                os.mknod(staged, node.file_type | node.mode,
                         os.makedev(node.major, node.minor))
                return True
            except PermissionError:
                # root without CAP_MKNOD, e.g. in a container
                self._can_mknod = False
        logger.debug("recording %s as %s %d:%d", target, node.kind,
                     node.major, node.minor)
        self.virtual_nodes[target] = node
        return True

    def size(self):
        """Total size in bytes of regular files in the tree."""
        total = 0
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for name in filenames:
                path = os.path.join(dirpath, name)
                if not os.path.islink(path):
                    total += os.path.getsize(path)
        return total
