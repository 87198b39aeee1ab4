"""Shared-library closure of programs, staged into an image.

The host dynamic linker is the authority on what a binary needs: we run
ldd on each object, copy every resolved dependency to its host-mirrored
path, and recurse.  Libraries that are only ever dlopen()ed never show up
in ldd output, so a table of (trigger basename -> extra library) hints
pulls those in as well.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional

from _env import clean_env, search_path, which
from staging_tree import BuildError, Outcome, StagingTree

logger = logging.getLogger(__name__)

LD_SO_CONF = "/etc/ld.so.conf"

# libfoo.so.1 => /lib/libfoo.so.1 (0x00007f...)
# libbar.so.2 => not found
_ARROW_RE = re.compile(r"^\s*(\S+)\s+=>\s*(.*?)\s*(?:\(0x[0-9a-fA-F]+\))?\s*$")
# /lib64/ld-linux-x86-64.so.2 (0x00007f...)   or   linux-vdso.so.1 (0x...)
_PLAIN_RE = re.compile(r"^\s*(\S+)\s+\(0x[0-9a-fA-F]+\)\s*$")


class ProgramNotFound(BuildError):
    """None of a program's name alternatives exist on the host."""


class LddEntry(NamedTuple):
    name: str
    path: Optional[str]
    interpreter: bool = False


def parse_ldd(output):
    """Parse ldd output into LddEntry tuples.

    Entries ldd could not resolve have path None.  The dynamic loader is the
    one entry listed by absolute path without "=>".  Virtual objects such as
    the vDSO have no file and are dropped.
    """
    entries = []
    for line in output.splitlines():
        m = _ARROW_RE.match(line)
        if m:
            name, target = m.group(1), m.group(2)
            if not target or target == "not found":
                entries.append(LddEntry(name, None))
            elif os.path.isabs(target):
                entries.append(LddEntry(name, os.path.normpath(target)))
            continue
        m = _PLAIN_RE.match(line)
        if m and os.path.isabs(m.group(1)):
            path = os.path.normpath(m.group(1))
            entries.append(LddEntry(os.path.basename(path), path, True))
    return entries


def ldd_dependencies(host_path):
    """Ask the host dynamic linker for the direct dependencies of host_path."""
    ldd = which("ldd")
    if ldd is None:
        raise ProgramNotFound("ldd not found on host")
    result = subprocess.run(
        [ldd, host_path],
        capture_output=True, text=True, env=clean_env(),
    )
    if result.returncode != 0:
        # "not a dynamic executable": static binaries, scripts, data files
        logger.debug("ldd %s: %s", host_path, result.stderr.strip() or "no dependencies")
        return []
    return parse_ldd(result.stdout)


def run_ldconfig(tree):
    """Rebuild the staged ld.so.cache from the staged ld.so.conf."""
    ldconfig = which("ldconfig")
    if ldconfig is None:
        logger.warning("warning: ldconfig not found, image will rely on ld.so.conf")
        return
    result = subprocess.run(
        [ldconfig, "-r", tree.root],
        capture_output=True, text=True, env=clean_env(),
    )
    if result.returncode != 0:
        logger.warning("warning: ldconfig failed: %s", result.stderr.strip())


def find_program(spec, path=None):
    """Resolve "ash,dash,bash"-style alternatives to a host path.

    The first alternative that exists wins.  Absolute alternatives are
    checked as given, others are looked up on *path* (default: $PATH plus
    the sbin directories).
    """
    path = path if path is not None else search_path()
    for name in (n.strip() for n in spec.split(",")):
        if not name:
            continue
        if os.path.isabs(name):
            if os.path.isfile(name) and os.access(name, os.X_OK):
                return os.path.normpath(name)
            continue
        found = shutil.which(name, path=path)
        if found:
            return os.path.abspath(found)
    raise ProgramNotFound(f"program not found: {spec}")


class LibraryResolver:
    """Stages programs and their library closure into a StagingTree.

    State that must be shared across every object of a run lives here:
    the set of host paths already copied and the registered library search
    directories.
    """

    def __init__(
        self,
        tree: StagingTree,
        dlopen_hints: Optional[Dict[str, Iterable[str]]] = None,
        query: Callable[[str], List[LddEntry]] = ldd_dependencies,
        reindex: Callable[[StagingTree], None] = run_ldconfig,
        program_path: Optional[str] = None,
    ):
        self.tree = tree
        self.hints = {k: list(v) for k, v in (dlopen_hints or {}).items()}
        self.query = query
        self.reindex = reindex
        self.program_path = program_path
        self.copied = set()
        self.search_paths = []

    def register_search_path(self, directory):
        """Add *directory* to the staged linker config; True if it was new."""
        directory = os.path.normpath(directory)
        if directory in self.search_paths:
            return False
        self.search_paths.append(directory)
        self.tree.append_line(LD_SO_CONF, directory)
        self.reindex(self.tree)
        return True

    def _stage(self, host_path):
        """Copy one host object, following symlinks so they resolve in the image."""
        if host_path in self.copied:
            return Outcome.ALREADY_PRESENT
        if not os.path.lexists(host_path):
            logger.debug("skipping %s: no such file", host_path)
            return Outcome.NOT_FOUND
        self.copied.add(host_path)
        self.tree.copy(host_path)
        if os.path.islink(host_path):
            target = os.readlink(host_path)
            if not os.path.isabs(target):
                target = os.path.join(os.path.dirname(host_path), target)
            self._stage(os.path.normpath(target))
        return Outcome.COPIED

    def resolve_and_copy(self, host_path):
        """Stage *host_path* and, recursively, everything it links against."""
        host_path = os.path.normpath(os.path.abspath(host_path))
        outcome = self._stage(host_path)
        if outcome is not Outcome.COPIED:
            return outcome
        logger.debug("staged %s", host_path)
        self._resolve_deps(host_path)
        return Outcome.COPIED

    def resolve_dependencies(self, path):
        """Stage the library closure of *path* without copying *path* itself.

        Used for objects that already sit in the image under another name,
        such as files extracted from packages or a custom init program.
        """
        path = os.path.normpath(os.path.abspath(path))
        if path in self.copied:
            return Outcome.ALREADY_PRESENT
        self.copied.add(path)
        self._resolve_deps(path)
        return Outcome.COPIED

    def _resolve_deps(self, host_path):
        for entry in self.query(host_path):
            if entry.path is None:
                logger.debug("%s: %s not found by ldd, skipping", host_path, entry.name)
                continue
            if entry.interpreter:
                self._copy_interpreter(entry.path)
                continue
            if entry.path in self.copied:
                continue
            self.register_search_path(os.path.dirname(entry.path))
            self.resolve_and_copy(entry.path)
        self._apply_hints(host_path)

    def _copy_interpreter(self, path):
        if path in self.copied:
            return
        self.register_search_path(os.path.dirname(path))
        self._stage(path)
        logger.debug("staged dynamic loader %s", path)

    def _apply_hints(self, host_path):
        for extra in self.hints.get(os.path.basename(host_path), ()):
            if not os.path.isabs(extra):
                extra = os.path.join(os.path.dirname(host_path), extra)
            extra = os.path.normpath(extra)
            if extra in self.copied:
                continue
            if not os.path.lexists(extra):
                logger.debug("dlopen hint %s for %s not present, skipping", extra, host_path)
                continue
            self.register_search_path(os.path.dirname(extra))
            self.resolve_and_copy(extra)

    def add_program(self, spec):
        """Find a program by its alternatives and stage it; return host path."""
        host_path = find_program(spec, self.program_path)
        self.resolve_and_copy(host_path)
        return host_path

    def add_link(self, spec, link_path):
        """Stage a program and point *link_path* in the image at it."""
        host_path = self.add_program(spec)
        if os.path.normpath(link_path) != host_path:
            self.tree.symlink(host_path, link_path)
        return host_path
