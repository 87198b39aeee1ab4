"""Image profiles: what goes into an image.

A profile names the programs, kernel modules, device nodes, links,
directories and plain copies an image needs, plus dlopen hints, the
fix-up script installed as /init and an optional output template.  A few
profiles are built in; others are INI files read with configparser:

    [profile]
    extends = base
    programs = ip ping
    modules = virtio_net
    nodes = kvm c 10 232
    links = ash,dash,bash /bin/sh
    dirs = /proc /sys
    copies = /etc/hostname
    output = qemu-system-x86_64 -kernel /boot/vmlinuz-{kernel} -initrd {image}

    [dlopen]
    libc.so.6 = libnss_files.so.2 libnss_dns.so.2

    [fixup]
    file = fixup.sh
"""

from __future__ import annotations

import configparser
import copy
import os
from dataclasses import dataclass, field, replace
from typing import Dict, List, Tuple

from staging_tree import BuildError

PROFILE_DIR_ENV = "VMRAMFS_PROFILE_DIR"

BASE_FIXUP = """\
#!/bin/sh
mount -t proc proc /proc
mount -t sysfs sysfs /sys
mount -t devtmpfs devtmpfs /dev 2>/dev/null
mkdir -p /dev/pts /dev/shm
mount -t devpts devpts /dev/pts 2>/dev/null
mount -t tmpfs tmpfs /tmp
[ -f /etc/modules ] && while read -r m; do modprobe "$m"; done < /etc/modules
echo "vmramfs: $(uname -r) up"
"""

SHELL_FIXUP = BASE_FIXUP + "exec /bin/sh\n"

NET_FIXUP = BASE_FIXUP + """\
ip link set lo up
for dev in /sys/class/net/*; do
	[ "${dev##*/}" = lo ] || ip link set "${dev##*/}" up
done
exec /bin/sh
"""

QEMU_TEMPLATE = ("qemu-system-x86_64 -kernel /boot/vmlinuz-{kernel} -initrd {image} "
                 "-nodefaults -nographic -append console=ttyS0 -serial stdio")


class ProfileError(BuildError):
    """Unknown profile or malformed profile file."""


@dataclass
class Profile:
    name: str
    programs: List[str] = field(default_factory=list)
    modules: List[str] = field(default_factory=list)
    nodes: List[str] = field(default_factory=list)
    links: List[Tuple[str, str]] = field(default_factory=list)
    dirs: List[str] = field(default_factory=list)
    copies: List[str] = field(default_factory=list)
    dlopen: Dict[str, List[str]] = field(default_factory=dict)
    fixup: str = ""
    output: str = ""

    def merged(self, other: "Profile") -> "Profile":
        """*other* layered on top of this profile (lists appended, texts replaced)."""
        def extend(a, b):
            return a + [x for x in b if x not in a]

        dlopen = {k: list(v) for k, v in self.dlopen.items()}
        for trigger, libs in other.dlopen.items():
            dlopen[trigger] = extend(dlopen.get(trigger, []), libs)
        return replace(
            self,
            name=other.name,
            programs=extend(self.programs, other.programs),
            modules=extend(self.modules, other.modules),
            nodes=extend(self.nodes, other.nodes),
            links=extend(self.links, other.links),
            dirs=extend(self.dirs, other.dirs),
            copies=extend(self.copies, other.copies),
            dlopen=dlopen,
            fixup=other.fixup or self.fixup,
            output=other.output or self.output,
        )


BUILTIN = {
    "base": Profile(
        name="base",
        programs=["ash,dash,bash", "mount", "mkdir", "cat", "ls", "ln", "modprobe"],
        nodes=["console c 5 1", "null c 1 3", "zero c 1 5", "ttyS0 c 4 64"],
        links=[("ash,dash,bash", "/bin/sh")],
        dirs=["/proc", "/sys", "/dev", "/tmp", "/run", "/root", "/etc"],
        fixup=SHELL_FIXUP,
        output=QEMU_TEMPLATE,
    ),
}
BUILTIN["net"] = BUILTIN["base"].merged(Profile(
    name="net",
    programs=["ip"],
    modules=["virtio_pci", "virtio_net", "af_packet"],
    nodes=["net/tun c 10 200"],
    dlopen={"libc.so.6": ["libnss_files.so.2", "libnss_dns.so.2", "libresolv.so.2"]},
    fixup=NET_FIXUP,
))


def _words(value):
    return value.split()


def _lines(value):
    return [line.strip() for line in value.splitlines() if line.strip()]


def _parse_links(value):
    links = []
    for line in _lines(value):
        fields = line.split()
        if len(fields) != 2:
            raise ProfileError(f"malformed link {line!r}, expected 'PROGRAMS PATH'")
        links.append((fields[0], fields[1]))
    return links


def parse_profile_file(path, _chain=()):
    """Read an INI profile; 'extends' pulls in another profile first."""
    key = os.path.realpath(path)
    if key in _chain:
        raise ProfileError(f"profile {path} extends itself")
    config = configparser.ConfigParser(interpolation=None)
    config.optionxform = str  # library names are case sensitive
    try:
        with open(path) as f:
            config.read_file(f)
    except (OSError, configparser.Error) as e:
        raise ProfileError(f"cannot read profile {path}: {e}") from e

    name = os.path.splitext(os.path.basename(path))[0]
    section = config["profile"] if config.has_section("profile") else {}
    profile = Profile(
        name=name,
        programs=_words(section.get("programs", "")),
        modules=_words(section.get("modules", "")),
        nodes=_lines(section.get("nodes", "")),
        links=_parse_links(section.get("links", "")),
        dirs=_words(section.get("dirs", "")),
        copies=_words(section.get("copies", "")),
        output=section.get("output", "").strip(),
    )
    if config.has_section("dlopen"):
        profile.dlopen = {k: _words(v) for k, v in config["dlopen"].items()}
    if config.has_section("fixup"):
        fixup = config["fixup"]
        if "file" in fixup:
            script = os.path.join(os.path.dirname(os.path.abspath(path)), fixup["file"])
            try:
                with open(script) as f:
                    profile.fixup = f.read()
            except OSError as e:
                raise ProfileError(f"cannot read fix-up script {script}: {e}") from e
        elif "script" in fixup:
            profile.fixup = fixup["script"].strip() + "\n"

    parent = section.get("extends", "").strip()
    if parent:
        return load_profile(parent, _chain + (key,)).merged(profile)
    return profile


def load_profile(name, _chain=()):
    """Resolve *name*: a profile file path, a built-in, or <name>.ini in $VMRAMFS_PROFILE_DIR."""
    if os.path.isfile(name):
        return parse_profile_file(name, _chain)
    if name in BUILTIN:
        return copy.deepcopy(BUILTIN[name])
    profile_dir = os.environ.get(PROFILE_DIR_ENV)
    if profile_dir:
        candidate = os.path.join(profile_dir, name + ".ini")
        if os.path.isfile(candidate):
            return parse_profile_file(candidate, _chain)
    raise ProfileError(f"unknown profile: {name} (built in: {', '.join(sorted(BUILTIN))})")
