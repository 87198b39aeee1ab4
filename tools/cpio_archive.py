"""cpio "newc" archives: the on-disk format of a Linux initramfs.

write_tree() serializes a StagingTree in a fixed walk order (parents
before children, names sorted) with sequential inode numbers, so a given
tree always produces the same bytes.  Device nodes the tree could only
record, not create, are emitted from the record.  read_entries() and
extract_into() read an image back, which is used to extend an existing
image and to verify output.
"""

from __future__ import annotations

import logging
import os
import stat
from typing import BinaryIO, Iterator, NamedTuple

from staging_tree import BuildError, DeviceNode

logger = logging.getLogger(__name__)

NEWC_MAGIC = b"070701"
NEWC_CRC_MAGIC = b"070702"
TRAILER = "TRAILER!!!"
HEADER_LEN = 110
BLOCK_SIZE = 512


class ArchiveError(BuildError):
    """Archive is unreadable or corrupt."""


class CpioEntry(NamedTuple):
    name: str
    mode: int
    uid: int
    gid: int
    mtime: int
    data: bytes = b""
    rdevmajor: int = 0
    rdevminor: int = 0

    @property
    def file_type(self):
        return stat.S_IFMT(self.mode)


def _pad(length):
    return b"\0" * ((-length) % 4)


def _header(ino, mode, uid, gid, nlink, mtime, filesize, rdevmajor, rdevminor, namesize):
    fields = (ino, mode, uid, gid, nlink, mtime, filesize,
              0, 0, rdevmajor, rdevminor, namesize, 0)
    return NEWC_MAGIC + b"".join(b"%08x" % (v & 0xFFFFFFFF) for v in fields)


class CpioWriter:
    """Streams newc records to a binary file object."""

    def __init__(self, fileobj: BinaryIO):
        self.f = fileobj
        self.ino = 0
        self.written = 0

    def _write(self, data):
        self.f.write(data)
        self.written += len(data)

    def add(self, name, mode, uid=0, gid=0, mtime=0, data=b"", source=None,
            size=None, rdev=(0, 0)):
        """Append one record; file content from *data* or the path *source*."""
        self.ino += 1
        encoded = os.fsencode(name) + b"\0"
        if source is not None and size is None:
            size = os.path.getsize(source)
        filesize = size if source is not None else len(data)
        nlink = 2 if stat.S_ISDIR(mode) else 1
        self._write(_header(self.ino, mode, uid, gid, nlink, mtime, filesize,
                            rdev[0], rdev[1], len(encoded)))
        self._write(encoded + _pad(HEADER_LEN + len(encoded)))
        if source is not None:
            with open(source, "rb") as src:
                copied = 0
                for chunk in iter(lambda: src.read(1 << 16), b""):
                    self._write(chunk)
                    copied += len(chunk)
            if copied != filesize:
                raise ArchiveError(f"{source} changed size while archiving")
        else:
            self._write(data)
        self._write(_pad(filesize))

    def close(self):
        encoded = TRAILER.encode() + b"\0"
        self._write(_header(0, 0, 0, 0, 1, 0, 0, 0, 0, len(encoded)))
        self._write(encoded + _pad(HEADER_LEN + len(encoded)))
        self._write(b"\0" * ((-self.written) % BLOCK_SIZE))


def _sort_key(rel):
    return rel.split("/")


def _walk(root):
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            yield os.path.relpath(os.path.join(dirpath, name), root)


def _clamp(mtime):
    epoch = os.environ.get("SOURCE_DATE_EPOCH")
    if epoch and epoch.isdigit():
        return min(int(mtime), int(epoch))
    return int(mtime)


def write_tree(tree, fileobj):
    """Serialize *tree* (a StagingTree) into *fileobj* as newc."""
    virtual = {path.lstrip("/"): node for path, node in tree.virtual_nodes.items()}
    names = sorted(set(_walk(tree.root)) | set(virtual), key=_sort_key)
    writer = CpioWriter(fileobj)
    for rel in names:
        node = virtual.get(rel)
        if node is not None:
            writer.add(rel, node.file_type | node.mode, mtime=_clamp(0),
                       rdev=(node.major, node.minor))
            continue
        path = os.path.join(tree.root, rel)
        st = os.lstat(path)
        mtime = _clamp(st.st_mtime)
        if stat.S_ISLNK(st.st_mode):
            writer.add(rel, st.st_mode, st.st_uid, st.st_gid, mtime,
                       data=os.fsencode(os.readlink(path)))
        elif stat.S_ISREG(st.st_mode):
            writer.add(rel, st.st_mode, st.st_uid, st.st_gid, mtime,
                       source=path, size=st.st_size)
        elif stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode):
            writer.add(rel, st.st_mode, st.st_uid, st.st_gid, mtime,
                       rdev=(os.major(st.st_rdev), os.minor(st.st_rdev)))
        else:
            # directories, fifos, sockets: header only
            writer.add(rel, st.st_mode, st.st_uid, st.st_gid, mtime)
    writer.close()
    return len(names)


def _read_exact(fileobj, size, what):
    data = fileobj.read(size)
    if len(data) != size:
        raise ArchiveError(f"truncated archive while reading {what}")
    return data


def read_entries(fileobj: BinaryIO) -> Iterator[CpioEntry]:
    """Yield every entry of a (possibly concatenated) newc stream."""
    seen_any = False
    while True:
        magic = fileobj.read(6)
        # zero padding between concatenated archives
        while magic and magic.strip(b"\0") == b"":
            magic = fileobj.read(6)
        if not magic:
            if not seen_any:
                raise ArchiveError("empty archive")
            return
        magic = magic.lstrip(b"\0")
        magic += _read_exact(fileobj, 6 - len(magic), "magic")
        if magic not in (NEWC_MAGIC, NEWC_CRC_MAGIC):
            raise ArchiveError(f"bad cpio magic {magic!r} (only newc is supported)")
        raw = _read_exact(fileobj, HEADER_LEN - 6, "header")
        try:
            fields = [int(raw[i:i + 8], 16) for i in range(0, 104, 8)]
        except ValueError:
            raise ArchiveError("corrupt cpio header") from None
        (_ino, mode, uid, gid, _nlink, mtime, filesize,
         _dmaj, _dmin, rdevmajor, rdevminor, namesize, _check) = fields
        name = os.fsdecode(_read_exact(fileobj, namesize, "name")[:-1])
        _read_exact(fileobj, len(_pad(HEADER_LEN + namesize)), "padding")
        data = _read_exact(fileobj, filesize, name)
        _read_exact(fileobj, len(_pad(filesize)), "padding")
        seen_any = True
        if name == TRAILER:
            continue
        yield CpioEntry(name, mode, uid, gid, mtime, data, rdevmajor, rdevminor)


def extract_into(entries, tree):
    """Unpack newc entries into a StagingTree; returns the target paths."""
    extracted = []
    dirs = []
    for entry in entries:
        name = entry.name
        while name.startswith("./"):
            name = name[2:]
        name = os.path.normpath(name.lstrip("/") or ".")
        if name == ".":
            continue
        target = "/" + name
        staged = tree.staged_path(target)
        os.makedirs(os.path.dirname(staged), exist_ok=True)
        ftype = entry.file_type
        perms = stat.S_IMODE(entry.mode)
        if ftype == stat.S_IFDIR:
            os.makedirs(staged, exist_ok=True)
            dirs.append((staged, perms, entry.mtime))
        elif ftype == stat.S_IFLNK:
            if os.path.lexists(staged):
                os.unlink(staged)
            os.symlink(os.fsdecode(entry.data), staged)
        elif ftype == stat.S_IFREG:
            if os.path.lexists(staged):
                os.unlink(staged)
            with open(staged, "wb") as f:
                f.write(entry.data)
            os.chmod(staged, perms)
            os.utime(staged, (entry.mtime, entry.mtime))
        elif ftype in (stat.S_IFCHR, stat.S_IFBLK):
            kind = "c" if ftype == stat.S_IFCHR else "b"
            node = DeviceNode(os.path.basename(name), kind, entry.rdevmajor,
                              entry.rdevminor, perms)
            tree.mknod(node, target)
        else:
            logger.debug("skipping %s: unsupported file type %o", name, ftype)
            continue
        extracted.append(target)
    # directory modes and times last, writing children would reset them
    for staged, perms, mtime in reversed(dirs):
        if os.path.islink(staged):
            continue
        os.chmod(staged, perms)
        os.utime(staged, (mtime, mtime))
    return extracted


def unpack_file(path, tree):
    """Extract an uncompressed newc file into *tree*."""
    try:
        with open(path, "rb") as f:
            return extract_into(read_entries(f), tree)
    except OSError as e:
        raise ArchiveError(f"cannot read {path}: {e}") from e
