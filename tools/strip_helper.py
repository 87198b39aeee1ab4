#!/usr/bin/env python3
"""Strip debug info from staged kernel modules and binaries.

strip_module() is the work function the image builder hands to the worker
pool; it can also be run standalone over a staged directory.
"""

import argparse
import logging
import os
import subprocess
import sys

from _env import clean_env, which
from worker_pool import default_threads, run_parallel

logger = logging.getLogger(__name__)

_ELF_MAGIC = b"\x7fELF"


def is_elf(path):
    """Check if a file is an ELF binary by reading its magic bytes."""
    try:
        with open(path, "rb") as f:
            return f.read(4) == _ELF_MAGIC
    except (OSError, IOError):
        return False


def strip_module(path, strip_bin="strip"):
    """Remove debug sections from one uncompressed ELF module in place.

    Compressed modules (.ko.xz and friends) and non-ELF files are left
    alone.  Raises CalledProcessError if strip fails.
    """
    if os.path.islink(path) or not os.path.isfile(path) or not is_elf(path):
        return False
    subprocess.run(
        [strip_bin, "--strip-debug", path],
        capture_output=True, text=True, check=True, env=clean_env(),
    )
    return True


def strip_paths(paths, threads=None):
    """Strip every path in *paths* on the worker pool; returns how many were stripped."""
    strip_bin = which("strip")
    if strip_bin is None:
        logger.warning("warning: strip not found, leaving modules unstripped")
        return 0
    stripped = []

    def work(path):
        if strip_module(path, strip_bin):
            stripped.append(path)

    run_parallel(work, paths, threads or default_threads())
    return len(stripped)


def main():
    parser = argparse.ArgumentParser(description="Strip debug info from ELF files")
    parser.add_argument("--dir", required=True, help="Directory to process")
    parser.add_argument("-j", "--jobs", type=int, default=0,
                        help="Parallel strip jobs (default: CPU count)")
    args = parser.parse_args()

    if not os.path.isdir(args.dir):
        print(f"error: directory not found: {args.dir}", file=sys.stderr)
        sys.exit(1)

    paths = []
    for dirpath, _dirnames, filenames in os.walk(args.dir):
        for filename in sorted(filenames):
            filepath = os.path.join(dirpath, filename)
            if not os.path.islink(filepath) and is_elf(filepath):
                paths.append(filepath)

    count = strip_paths(paths, args.jobs or None)
    print(f"stripped {count} of {len(paths)} ELF files")


if __name__ == "__main__":
    main()
