"""Shared environment handling for the image helpers.

Every host tool whose output we parse (ldd, modprobe, dpkg-deb, cpio) is
run from a whitelisted environment with the locale pinned, so messages such
as "not found" or "builtin" come out untranslated regardless of the
caller's settings.
"""

import os
import shutil

# Vars passed through from the host environment when present.
_PASSTHROUGH = frozenset({
    "HOME", "USER", "LOGNAME",
    "PATH",
    "TMPDIR", "TEMP", "TMP",
    "TERM",
    "LD_LIBRARY_PATH",
    "LD_PRELOAD",
    "FAKEROOTKEY",
})

# Vars pinned to fixed values for parseable tool output.
_DETERMINISM_PINS = {
    "LC_ALL": "C",
    "LANG": "C",
}

# Directories searched for programs in addition to $PATH.  Plenty of tools
# we want in an image (modprobe, ip, mkfs.*) live in sbin, which is often
# missing from an unprivileged user's PATH.
SBIN_DIRS = ("/sbin", "/usr/sbin", "/usr/local/sbin")


def clean_env():
    """Return a clean env dict for subprocess env= parameter.

    Copies only whitelisted vars from the host, then applies
    determinism pins.  Callers layer helper-specific vars on top.
    """
    env = {}
    for key in _PASSTHROUGH:
        val = os.environ.get(key)
        if val is not None:
            env[key] = val
    env.update(_DETERMINISM_PINS)
    return env


def search_path(extra=SBIN_DIRS):
    """Return the host program search path: $PATH followed by *extra*."""
    dirs = [d for d in os.environ.get("PATH", "").split(":") if d]
    for d in extra:
        if d not in dirs:
            dirs.append(d)
    return ":".join(dirs)


def which(tool):
    """Locate a host tool on the extended search path, or None."""
    return shutil.which(tool, path=search_path())


def kernel_release():
    """Release string of the running kernel (default target kernel)."""
    return os.uname().release
