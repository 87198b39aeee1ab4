#!/usr/bin/env python3
"""Build a minimal initramfs for booting a VM from host programs.

Programs are staged with their shared-library closure, kernel modules with
their module closure (stripped in parallel), device nodes, links and plain
copies are added, the profile's fix-up script becomes /init, and the tree
is written out as a cpio newc archive under the fastest-to-decompress
codec the target kernel supports.

Prints the image path on stdout so the result can be captured with $(...).
"""

import argparse
import logging
import os
import re
import sys
import tempfile

from _env import kernel_release
from archive_assembler import assemble, unpack_image
from compress_helper import CHOICES, kernel_config_path
from kmod_closure import ModuleResolver
from lib_closure import LibraryResolver
from package_helper import add_package
from profiles import load_profile
from staging_tree import BuildError, StagingError, StagingTree, parse_node_spec
from strip_helper import is_elf, strip_paths

logger = logging.getLogger(__name__)

CUSTOM_INIT = "/sbin/init.custom"
MODULES_LIST = "/etc/modules"

_DEFAULT_INIT = """\
#!/bin/sh
mount -t proc proc /proc
mount -t sysfs sysfs /sys
mount -t devtmpfs devtmpfs /dev 2>/dev/null || true
exec /bin/sh
"""

# "exec PROGRAM", not a redirection such as "exec 2>&1"
_HANDOFF = re.compile(r"^\s*exec\s+[^\s<>&0-9]")


def _stage_copy(path, tree, libs):
    """Copy a host file or directory verbatim; ELF files bring their libraries."""
    path = os.path.abspath(path)
    if not os.path.lexists(path):
        raise StagingError(f"copy source not found: {path}")
    if os.path.isdir(path) and not os.path.islink(path):
        tree.copy_tree(path)
    elif os.path.isfile(path) and is_elf(path):
        libs.resolve_and_copy(path)
    else:
        tree.copy(path)


def _add_modules(names, tree, kver, modules_root, threads):
    resolver = ModuleResolver(tree, kver, modules_root)
    loaded = []
    for name in names:
        outcome = resolver.resolve_and_copy_module(name)
        if outcome.skipped:
            logger.info("module %s: %s, skipping", name, outcome.value)
            continue
        loaded.append(name)
    strip_paths([tree.staged_path(t) for t in resolver.copied], threads)
    resolver.finalize()
    if loaded:
        tree.write_file(MODULES_LIST, "".join(n + "\n" for n in loaded))
    return resolver


def _install_init(tree, libs, fixup, script=None):
    """Write /init from the fix-up script, optionally handing off to *script*."""
    init = fixup or _DEFAULT_INIT
    if script:
        if not os.path.isfile(script):
            raise StagingError(f"init script not found: {script}")
        tree.copy(os.path.abspath(script), CUSTOM_INIT)
        os.chmod(tree.staged_path(CUSTOM_INIT), 0o755)
        libs.resolve_dependencies(tree.staged_path(CUSTOM_INIT))
        lines = init.rstrip("\n").split("\n")
        # the custom program takes over the fix-up script's own handoff
        if _HANDOFF.match(lines[-1]):
            lines.pop()
        init = "\n".join(lines + [f"exec {CUSTOM_INIT}"]) + "\n"
    tree.write_file("/init", init, mode=0o755)


def build(args):
    """Run one image build; returns the path of the image written."""
    profile = load_profile(args.profile)
    programs = profile.programs + args.program
    modules = profile.modules + args.module
    copies = profile.copies + args.copy
    kver = args.kernel or kernel_release()
    kernel_config = args.kernel_config or kernel_config_path(kver)

    if args.output:
        output = os.path.abspath(args.output)
    else:
        fd, output = tempfile.mkstemp(prefix="vmramfs-", suffix=".img")
        os.close(fd)

    with StagingTree(args.keep_dir, keep=bool(args.keep_dir)) as tree:
        logger.debug("staging in %s", tree.root)
        if args.extend:
            unpack_image(args.extend, tree)

        for d in profile.dirs:
            tree.makedirs(d)

        libs = LibraryResolver(tree, profile.dlopen)
        for spec in programs:
            host_path = libs.add_program(spec)
            logger.debug("program %s -> %s", spec, host_path)
        for spec, link_path in profile.links:
            libs.add_link(spec, link_path)
        for path in copies:
            _stage_copy(path, tree, libs)
        for spec in profile.nodes:
            tree.mknod(parse_node_spec(spec))

        if args.package:
            with tempfile.TemporaryDirectory(prefix="vmramfs-pkg-") as workdir:
                for source in args.package:
                    add_package(source, tree, libs, workdir)

        if modules:
            _add_modules(modules, tree, kver, args.modules_root, args.jobs)

        _install_init(tree, libs, profile.fixup, args.script)

        size = tree.size()
        codec = assemble(tree, output, args.compression, kernel_config)

    if args.verbose:
        print(f"Created initramfs: {output} ({size} bytes staged, "
              f"{os.path.getsize(output)} bytes {codec or 'uncompressed'})",
              file=sys.stderr)
    template = args.output_template or profile.output
    if template:
        print(template.format(image=output, kernel=kver), file=sys.stderr)
    return output


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Build a minimal initramfs for a virtual machine")
    parser.add_argument("-p", "--profile", default="base",
                        help="Built-in profile name or profile file (default: base)")
    parser.add_argument("-c", "--compression", default="auto", choices=CHOICES,
                        help="Compression codec, 'auto' benchmarks decompression speed")
    parser.add_argument("-f", "--output", default=None,
                        help="Image path (default: a new temporary file)")
    parser.add_argument("-k", "--kernel", default=None,
                        help="Target kernel release (default: running kernel)")
    parser.add_argument("-m", "--modules-root", default="/",
                        help="Root holding lib/modules/<kernel> (default: /)")
    parser.add_argument("--kernel-config", default=None,
                        help="Target kernel .config (default: /boot/config-<kernel>)")
    parser.add_argument("-d", "--keep-dir", default=None,
                        help="Stage in this directory and keep it afterwards")
    parser.add_argument("-s", "--script", default=None,
                        help="Program run at the end of /init")
    parser.add_argument("-x", "--extend", default=None, metavar="IMAGE",
                        help="Start from the contents of an existing image")
    parser.add_argument("--program", action="append", default=[],
                        help="Program to add, alternatives separated by commas")
    parser.add_argument("--module", action="append", default=[],
                        help="Kernel module to add")
    parser.add_argument("--copy", action="append", default=[],
                        help="Host file or directory to copy verbatim")
    parser.add_argument("--package", action="append", default=[],
                        help=".deb or .rpm file or URL to unpack into the image")
    parser.add_argument("-j", "--jobs", type=int, default=0,
                        help="Parallel strip jobs (default: CPU count)")
    parser.add_argument("--output-template", default=None,
                        help="Text printed after the build; {image} and {kernel} are substituted")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None):
    args = _parse_args(argv)
    logging.basicConfig(format="%(message)s",
                        level=logging.DEBUG if args.verbose else logging.WARNING)
    try:
        output = build(args)
    except BuildError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    print(output)


if __name__ == "__main__":
    main()
