"""Compression codecs for initramfs images.

Each codec is driven through its command-line tool at maximum level, with
the framing the kernel's built-in decompressor expects: lz4 must use the
legacy frame format and xz must use CRC32 checks.

With compression "auto" the codec is chosen empirically: every codec that
is both installed on the host and enabled in the target kernel
(CONFIG_RD_<CODEC>=y) compresses the image once, its output is
decompressed BENCH_TRIALS times, and the fastest to decompress wins.
Boot latency is the only criterion; sizes are logged but never used.
"""

from __future__ import annotations

import gzip
import logging
import lzma
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from _env import clean_env, which
from staging_tree import BuildError

logger = logging.getLogger(__name__)

BENCH_TRIALS = 3
DEFAULT_CODEC = "gzip"
CPIO_MAGICS = (b"070701", b"070702")


class CompressionError(BuildError):
    """A compressor or decompressor could not be run."""


@dataclass(frozen=True)
class Codec:
    name: str
    tool: str
    kconfig: str
    compress_args: Tuple[str, ...]
    magic: bytes

    @property
    def config_symbol(self):
        return f"CONFIG_RD_{self.kconfig}"


# Table order is the tie-break order for auto selection.
CODECS: Dict[str, Codec] = {c.name: c for c in (
    Codec("gzip", "gzip", "GZIP", ("-9", "-n", "-c"), b"\x1f\x8b"),
    Codec("lz4", "lz4", "LZ4", ("-l", "-9", "-c"), b"\x02\x21\x4c\x18"),
    Codec("lzma", "lzma", "LZMA", ("-9", "-c"), b"\x5d\x00\x00"),
    Codec("lzo", "lzop", "LZO", ("-9", "-c"), b"\x89LZO"),
    Codec("xz", "xz", "XZ", ("--check=crc32", "-9", "-c"), b"\xfd7zXZ\x00"),
    Codec("zstd", "zstd", "ZSTD", ("-19", "-c"), b"\x28\xb5\x2f\xfd"),
)}

CHOICES = ("auto", "none") + tuple(CODECS)


class Candidate(NamedTuple):
    codec: str
    elapsed: float
    size: int
    path: str


def kernel_config_path(kver):
    return f"/boot/config-{kver}"


def read_kernel_config(path):
    """Parse a kernel .config into {symbol: value}; None if unreadable."""
    if not path or not os.path.isfile(path):
        return None
    config = {}
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line.startswith("CONFIG_"):
                continue
            key, sep, value = line.partition("=")
            if sep:
                config[key] = value.strip('"')
    return config


def kernel_supports(config, codec):
    return config.get(codec.config_symbol) == "y"


def is_installed(codec):
    return which(codec.tool) is not None


def _tool(codec):
    path = which(codec.tool)
    if path is None:
        raise CompressionError(f"{codec.tool} not found on host (needed for {codec.name})")
    return path


def compress_file(src, dst, codec):
    """Compress *src* into *dst* with *codec*."""
    cmd = [_tool(codec), *codec.compress_args]
    with open(src, "rb") as fin, open(dst, "wb") as fout:
        result = subprocess.run(cmd, stdin=fin, stdout=fout,
                                stderr=subprocess.PIPE, env=clean_env())
    if result.returncode != 0:
        raise CompressionError(
            f"{codec.tool} exited with code {result.returncode}: "
            f"{result.stderr.decode(errors='replace').strip()}")


def time_decompression(path, codec, trials=BENCH_TRIALS):
    """Wall time to decompress *path* *trials* times, output discarded."""
    cmd = [_tool(codec), "-d", "-c", path]
    start = time.monotonic()
    for _ in range(trials):
        result = subprocess.run(cmd, stdout=subprocess.DEVNULL,
                                stderr=subprocess.PIPE, env=clean_env())
        if result.returncode != 0:
            raise CompressionError(f"{codec.tool} could not decompress {path}")
    return time.monotonic() - start


def choose(candidates: Sequence[Candidate]) -> Optional[Candidate]:
    """Lowest decompression time wins; on ties the earliest candidate."""
    best = None
    for cand in candidates:
        if best is None or cand.elapsed < best.elapsed:
            best = cand
    return best


def eligible_codecs(config, installed: Callable[[Codec], bool] = is_installed) -> List[Codec]:
    return [c for c in CODECS.values() if kernel_supports(config, c) and installed(c)]


def benchmark(src, codecs, workdir, compress=compress_file, measure=time_decompression):
    """Compress *src* with each codec into *workdir* and time decompression."""
    candidates = []
    for codec in codecs:
        dst = os.path.join(workdir, f"image.{codec.name}")
        compress(src, dst, codec)
        elapsed = measure(dst, codec)
        size = os.path.getsize(dst)
        logger.info("%s: %.3fs to decompress, %d bytes", codec.name, elapsed, size)
        candidates.append(Candidate(codec.name, elapsed, size, dst))
    return candidates


def compress_image(src, output, choice, kernel_config=None,
                   installed=is_installed, compress=compress_file,
                   measure=time_decompression):
    """Produce *output* from the uncompressed image *src*.

    Returns the name of the codec used, or None if left uncompressed.
    *src* is consumed.
    """
    if choice == "none":
        shutil.move(src, output)
        return None

    if choice != "auto":
        codec = CODECS.get(choice)
        if codec is None:
            raise CompressionError(f"unknown compression {choice!r}")
        if not installed(codec):
            raise CompressionError(f"{codec.tool} not found on host (needed for {choice})")
        compress(src, output, codec)
        os.unlink(src)
        return codec.name

    config = read_kernel_config(kernel_config)
    if config is None:
        codec = CODECS[DEFAULT_CODEC]
        logger.info("kernel config %s not available, using %s", kernel_config, codec.name)
        if not installed(codec):
            logger.warning("warning: %s not installed, leaving image uncompressed", codec.tool)
            shutil.move(src, output)
            return None
        compress(src, output, codec)
        os.unlink(src)
        return codec.name

    codecs = eligible_codecs(config, installed)
    if not codecs:
        logger.info("no codec both installed and supported by the kernel, not compressing")
        shutil.move(src, output)
        return None

    workdir = os.path.dirname(os.path.abspath(output))
    bench_dir = os.path.join(workdir, f".{os.path.basename(output)}.bench")
    os.makedirs(bench_dir, exist_ok=True)
    try:
        winner = choose(benchmark(src, codecs, bench_dir, compress, measure))
        logger.info("selected %s", winner.codec)
        os.replace(winner.path, output)
    finally:
        shutil.rmtree(bench_dir, ignore_errors=True)
    os.unlink(src)
    return winner.codec


def detect_codec(path):
    """Identify the compression of an image by magic: codec name, "none", or None."""
    with open(path, "rb") as f:
        head = f.read(8)
    if head.startswith(CPIO_MAGICS):
        return "none"
    for codec in CODECS.values():
        if head.startswith(codec.magic):
            return codec.name
    return None


def decompress_file(src, dst, codec_name):
    """Decompress *src* into *dst*; Python-native for gzip and the lzma family."""
    if codec_name == "none":
        shutil.copyfile(src, dst)
        return
    try:
        if codec_name == "gzip":
            with gzip.open(src, "rb") as fin, open(dst, "wb") as fout:
                shutil.copyfileobj(fin, fout)
            return
        if codec_name in ("xz", "lzma"):
            fmt = lzma.FORMAT_XZ if codec_name == "xz" else lzma.FORMAT_ALONE
            with lzma.open(src, "rb", format=fmt) as fin, open(dst, "wb") as fout:
                shutil.copyfileobj(fin, fout)
            return
    except (OSError, EOFError, lzma.LZMAError) as e:
        raise CompressionError(f"cannot decompress {src}: {e}") from e

    codec = CODECS[codec_name]
    with open(dst, "wb") as fout:
        result = subprocess.run([_tool(codec), "-d", "-c", src], stdout=fout,
                                stderr=subprocess.PIPE, env=clean_env())
    if result.returncode != 0:
        raise CompressionError(
            f"{codec.tool} could not decompress {src}: "
            f"{result.stderr.decode(errors='replace').strip()}")
