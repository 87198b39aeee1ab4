"""Kernel module closure for the target kernel, staged into an image.

modprobe --show-depends is asked about each requested module against the
target kernel release and module root.  Modules built into the kernel
need no file; loadable ones are copied along with everything modprobe
lists for them.  Nodes a module creates on demand (modules.devname) are
synthesized in the staged /dev, and depmod is finally run against the
staged tree so the guest resolves modules exactly as the host did.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional

from _env import clean_env, which
from staging_tree import DeviceNode, Outcome, StagingError

logger = logging.getLogger(__name__)

MODULE_SUFFIXES = (".ko", ".ko.gz", ".ko.xz", ".ko.zst")

# Metadata copied verbatim into the staged module directory before depmod.
METADATA_FILES = ("modules.order", "modules.builtin", "modules.builtin.modinfo")


def module_name(path):
    """'.../kernel/net/virtio_net.ko.xz' -> 'virtio_net'."""
    base = os.path.basename(path)
    for suffix in MODULE_SUFFIXES:
        if base.endswith(suffix):
            return base[:-len(suffix)]
    return base


def _canonical(name):
    return name.replace("-", "_")


class ShowDepends(NamedTuple):
    builtin: bool
    paths: List[str]


def parse_show_depends(output):
    """Parse modprobe --show-depends output.

    "builtin NAME" marks a module compiled into the kernel; otherwise each
    "insmod PATH [params]" line is one module file, dependencies first.
    """
    builtin = False
    paths = []
    for line in output.splitlines():
        fields = line.split()
        if not fields:
            continue
        if fields[0] == "builtin":
            builtin = True
        elif fields[0] == "insmod" and len(fields) > 1:
            if fields[1] not in paths:
                paths.append(fields[1])
    return ShowDepends(builtin and not paths, paths)


def parse_devname(text):
    """Parse modules.devname into {module: DeviceNode}.

    Lines look like "fuse fuse c10:229"; comments and malformed lines are
    ignored.
    """
    nodes = {}
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        fields = line.split()
        if len(fields) != 3:
            continue
        module, node_name, spec = fields
        kind = spec[:1]
        major, sep, minor = spec[1:].partition(":")
        if kind not in ("c", "b") or not sep:
            continue
        try:
            nodes[_canonical(module)] = DeviceNode(node_name, kind, int(major), int(minor))
        except ValueError:
            continue
    return nodes


def modprobe_show_depends(name, kver, modules_root, quiet=False):
    """Return modprobe --show-depends output for *name*, or None on failure."""
    modprobe = which("modprobe")
    if modprobe is None:
        raise StagingError("modprobe not found on host")
    cmd = [modprobe, "--show-depends", "-S", kver, "-d", modules_root]
    if quiet:
        cmd.append("-q")
    cmd.append(name)
    result = subprocess.run(cmd, capture_output=True, text=True, env=clean_env())
    if result.returncode != 0:
        logger.debug("modprobe %s: %s", name, result.stderr.strip())
        return None
    return result.stdout


def run_depmod(tree, kver):
    depmod = which("depmod")
    if depmod is None:
        logger.warning("warning: depmod not found, skipping module dependency generation")
        return
    result = subprocess.run(
        [depmod, "-a", "-b", tree.root, kver],
        capture_output=True, text=True, env=clean_env(),
    )
    if result.returncode != 0:
        logger.warning("warning: depmod failed: %s", result.stderr.strip())


@dataclass
class ModuleEntry:
    name: str
    builtin: bool
    host_path: Optional[str] = None
    target_path: Optional[str] = None
    depends: List[str] = field(default_factory=list)


class ModuleResolver:
    """Stages kernel modules for release *kver* from *modules_root*.

    *query(name, quiet)* and *depmod(tree, kver)* default to the host
    tools and can be replaced for testing.
    """

    def __init__(self, tree, kver, modules_root="/", query=None, depmod=run_depmod):
        self.tree = tree
        self.kver = kver
        self.modules_root = os.path.abspath(modules_root)
        self.host_module_dir = os.path.join(self.modules_root, "lib", "modules", kver)
        self.target_module_dir = "/lib/modules/" + kver
        self.query = query or self._modprobe
        self.depmod = depmod
        self.entries = {}
        self.copied = []
        self._devnames = None

    def _modprobe(self, name, quiet=False):
        return modprobe_show_depends(name, self.kver, self.modules_root, quiet)

    def target_for(self, host_path):
        """Mirror of a host module path, relative to the module root."""
        rel = os.path.relpath(os.path.abspath(host_path), self.modules_root)
        if rel.startswith(".."):
            raise StagingError(f"module {host_path} is outside {self.modules_root}")
        return "/" + rel

    def resolve_and_copy_module(self, name):
        output = self.query(name, False)
        if output is None:
            logger.debug("module %s not found for %s, skipping", name, self.kver)
            return Outcome.NOT_FOUND

        deps = parse_show_depends(output)
        if deps.builtin:
            logger.debug("module %s is built in", name)
            self.entries[name] = ModuleEntry(name, True)
            self.create_nodes(name)
            return Outcome.BUILTIN

        outcome = Outcome.ALREADY_PRESENT
        for path in deps.paths:
            dep = module_name(path)
            target = self.target_for(path)
            if self.tree.exists(target):
                continue
            if self.query(dep, True) is None:
                # stale modules.dep entries: best effort, skip this one
                logger.debug("module %s failed dependency check, skipping", dep)
                if _canonical(dep) == _canonical(name):
                    outcome = Outcome.CHECK_FAILED
                continue
            self.tree.copy(path, target)
            self.copied.append(target)
            entry = ModuleEntry(dep, False, path, target)
            if _canonical(dep) == _canonical(name):
                entry.depends = [module_name(p) for p in deps.paths if p != path]
            if outcome is Outcome.ALREADY_PRESENT:
                outcome = Outcome.COPIED
            self.entries[dep] = entry
            logger.debug("staged module %s", target)

        self.create_nodes(name)
        return outcome

    def _load_devnames(self):
        if self._devnames is None:
            path = os.path.join(self.host_module_dir, "modules.devname")
            try:
                with open(path) as f:
                    self._devnames = parse_devname(f.read())
            except FileNotFoundError:
                self._devnames = {}
        return self._devnames

    def create_nodes(self, name):
        """Create the node *name* is documented to create; False if none."""
        node = self._load_devnames().get(_canonical(name))
        if node is None:
            return False
        return self.tree.mknod(node)

    def finalize(self):
        """Copy module metadata and regenerate modules.dep in the image."""
        self.tree.makedirs(self.target_module_dir)
        for meta in METADATA_FILES:
            src = os.path.join(self.host_module_dir, meta)
            if os.path.isfile(src):
                dst = self.tree.staged_path(f"{self.target_module_dir}/{meta}")
                shutil.copy2(src, dst)
        self.depmod(self.tree, self.kver)
