"""Add the contents of .deb / .rpm packages to an image.

Packages are unpacked straight into the staging tree by the distribution
tools (dpkg-deb for .deb, rpm2cpio for .rpm).  The extracted file list is
then scanned for executables and shared objects, whose library closure is
pulled in from the host like any other program.  A package source that is
not a local file is downloaded first.
"""

import logging
import os
import subprocess
import sys
from urllib.parse import urlparse

import httpx
from tqdm import tqdm

from _env import clean_env, which
from cpio_archive import ArchiveError, unpack_file
from staging_tree import BuildError
from strip_helper import is_elf

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 30


class PackageError(BuildError):
    """Package cannot be fetched or extracted."""


def package_format(path):
    """Return "deb" or "rpm" from the file name, or None."""
    name = os.path.basename(path).lower()
    for fmt in ("deb", "rpm"):
        if name.endswith("." + fmt):
            return fmt
    return None


def download(url, dest_dir, client: httpx.Client = None):
    """Fetch *url* into *dest_dir*, with a progress bar on a terminal."""
    name = os.path.basename(urlparse(url).path) or "package"
    path = os.path.join(dest_dir, name)
    own_client = client is None
    if own_client:
        client = httpx.Client(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
    try:
        with client.stream("GET", url) as response:
            response.raise_for_status()
            total = int(response.headers.get("content-length", 0)) or None
            with open(path, "wb") as f, tqdm(
                total=total, unit="B", unit_scale=True, desc=name,
                disable=not sys.stderr.isatty(),
            ) as bar:
                for chunk in response.iter_bytes():
                    f.write(chunk)
                    bar.update(len(chunk))
    except httpx.HTTPError as e:
        raise PackageError(f"cannot download {url}: {e}") from e
    finally:
        if own_client:
            client.close()
    return path


def fetch(source, dest_dir, client: httpx.Client = None):
    """Local path for *source*: the file itself, or a download of the URL."""
    if os.path.isfile(source):
        return os.path.abspath(source)
    if urlparse(source).scheme in ("http", "https"):
        return download(source, dest_dir, client)
    raise PackageError(f"package not found: {source}")


def _listed_paths(lines):
    paths = []
    for line in lines:
        line = line.strip()
        if line.startswith("./"):
            line = line[1:]
        if line.startswith("/") and line != "/":
            paths.append(os.path.normpath(line))
    return paths


def extract_deb(path, tree):
    """dpkg-deb -X into the tree; returns the extracted target paths."""
    dpkg_deb = which("dpkg-deb")
    if dpkg_deb is None:
        raise PackageError("dpkg-deb not found on host, cannot extract .deb packages")
    result = subprocess.run(
        [dpkg_deb, "-X", path, tree.root],
        capture_output=True, text=True, env=clean_env(),
    )
    if result.returncode != 0:
        raise PackageError(f"dpkg-deb failed on {path}: {result.stderr.strip()}")
    return _listed_paths(result.stdout.splitlines())


def extract_rpm(path, tree, workdir):
    """rpm2cpio into the tree; returns the extracted target paths."""
    rpm2cpio = which("rpm2cpio")
    if rpm2cpio is None:
        raise PackageError("rpm2cpio not found on host, cannot extract .rpm packages")
    payload = os.path.join(workdir, os.path.basename(path) + ".cpio")
    with open(payload, "wb") as out:
        result = subprocess.run([rpm2cpio, path], stdout=out,
                                stderr=subprocess.PIPE, env=clean_env())
    if result.returncode != 0:
        raise PackageError(
            f"rpm2cpio failed on {path}: {result.stderr.decode(errors='replace').strip()}")
    try:
        return unpack_file(payload, tree)
    except ArchiveError as e:
        raise PackageError(f"{path}: {e}") from e
    finally:
        os.unlink(payload)


def scan_objects(paths, tree):
    """Target paths among *paths* that are executables or shared objects."""
    found = []
    for target in paths:
        staged = tree.staged_path(target)
        if os.path.islink(staged) or not os.path.isfile(staged):
            continue
        if not is_elf(staged):
            continue
        if os.access(staged, os.X_OK) or ".so" in os.path.basename(staged):
            found.append(target)
    return found


def add_package(source, tree, libs, workdir, client=None):
    """Extract one package into *tree* and resolve its objects' libraries."""
    path = fetch(source, workdir, client)
    fmt = package_format(path)
    if fmt == "deb":
        paths = extract_deb(path, tree)
    elif fmt == "rpm":
        paths = extract_rpm(path, tree, workdir)
    else:
        raise PackageError(f"unsupported package format: {path}")

    objects = scan_objects(paths, tree)
    logger.info("%s: %d files, %d objects", os.path.basename(path), len(paths), len(objects))
    for target in objects:
        libs.resolve_dependencies(tree.staged_path(target))
    return paths
