"""Turn a populated StagingTree into the final image file, and back.

assemble() writes the tree as a newc stream into a scratch file next to
the output, then hands it to compress_helper for the configured (or
benchmarked) codec.  unpack_image() is the reverse, used when an existing
image is extended.
"""

import logging
import os
import tempfile

from compress_helper import CompressionError, compress_image, decompress_file, detect_codec
from cpio_archive import ArchiveError, unpack_file, write_tree

logger = logging.getLogger(__name__)


def assemble(tree, output, compression="auto", kernel_config=None, **codec_hooks):
    """Serialize *tree* to *output*; returns the codec used or None.

    *codec_hooks* (installed, compress, measure) are passed through to
    compress_image().
    """
    output = os.path.abspath(output)
    os.makedirs(os.path.dirname(output), exist_ok=True)
    with tempfile.TemporaryDirectory(dir=os.path.dirname(output), prefix=".vmramfs-") as tmp:
        raw = os.path.join(tmp, "image.cpio")
        with open(raw, "wb") as f:
            count = write_tree(tree, f)
        logger.info("archived %d entries (%d bytes uncompressed)", count, os.path.getsize(raw))
        return compress_image(raw, output, compression, kernel_config, **codec_hooks)


def unpack_image(path, tree):
    """Extract an existing (possibly compressed) image into *tree*."""
    if not os.path.isfile(path):
        raise ArchiveError(f"image not found: {path}")
    codec = detect_codec(path)
    if codec is None:
        raise ArchiveError(f"{path}: unknown image format")
    with tempfile.TemporaryDirectory(prefix="vmramfs-extend-") as tmp:
        raw = os.path.join(tmp, "image.cpio")
        try:
            decompress_file(path, raw, codec)
        except CompressionError as e:
            raise ArchiveError(str(e)) from e
        extracted = unpack_file(raw, tree)
    logger.info("extended %s: %d entries (%s)", path, len(extracted), codec)
    return extracted
