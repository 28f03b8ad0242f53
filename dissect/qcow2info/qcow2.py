# References:
# - https://github.com/qemu/qemu/blob/master/block/qcow2.c
# - https://github.com/qemu/qemu/blob/master/docs/interop/qcow2.txt
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import BinaryIO, Union

from dissect.util.stream import RangeStream

from dissect.qcow2info.c_qcow2 import (
    QCOW2_EXTENSION_HEADER_SIZE,
    QCOW2_EXTENSION_NAMES,
    QCOW2_MAGIC_BYTES,
    QCOW2_V2_HEADER_SIZE,
    QCOW2_V3_HEADER_SIZE,
    AutoclearFeatures,
    CompatibleFeatures,
    CryptMethod,
    IncompatibleFeatures,
    align8,
    c_qcow2,
)
from dissect.qcow2info.exceptions import (
    InvalidHeaderError,
    InvalidSignature,
    MissingTerminatorError,
    ShortInputError,
    TruncatedExtensionError,
    UnsupportedVersionError,
)

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_QCOW2", "CRITICAL"))


@dataclass(frozen=True)
class HeaderExtension:
    """A single record from the header extension area.

    ``data`` is a copy of the payload, padding excluded.
    """

    type: int
    size: int
    data: bytes

    @property
    def name(self) -> str | None:
        return QCOW2_EXTENSION_NAMES.get(self.type)

    def __repr__(self) -> str:
        return f"<HeaderExtension type={self.type:#010x} name={self.name} size={self.size}>"


@dataclass(frozen=True)
class QCow2Header:
    """Fields shared by all supported qcow2 header versions."""

    version: int
    backing_file_offset: int
    backing_file_size: int
    cluster_bits: int
    size: int
    crypt_method: CryptMethod
    l1_size: int
    l1_table_offset: int
    refcount_table_offset: int
    refcount_table_clusters: int
    nb_snapshots: int
    snapshots_offset: int
    extensions: tuple[HeaderExtension, ...]

    @property
    def cluster_size(self) -> int:
        return 1 << self.cluster_bits

    @property
    def has_backing_file(self) -> bool:
        return self.backing_file_offset != 0

    @property
    def is_encrypted(self) -> bool:
        return self.crypt_method != CryptMethod.NONE


@dataclass(frozen=True)
class HeaderV2(QCow2Header):
    @property
    def header_length(self) -> int:
        # Version 2 images always have a 72 byte header
        return QCOW2_V2_HEADER_SIZE


@dataclass(frozen=True)
class HeaderV3(QCow2Header):
    incompatible_features: int
    compatible_features: int
    autoclear_features: int
    refcount_order: int
    header_length: int
    compression_type: int = c_qcow2.QCOW2_COMPRESSION_TYPE_ZLIB

    @property
    def incompatible(self) -> IncompatibleFeatures:
        return IncompatibleFeatures(self.incompatible_features)

    @property
    def compatible(self) -> CompatibleFeatures:
        return CompatibleFeatures(self.compatible_features)

    @property
    def autoclear(self) -> AutoclearFeatures:
        return AutoclearFeatures(self.autoclear_features)

    @property
    def refcount_bits(self) -> int:
        return 1 << self.refcount_order


Header = Union[HeaderV2, HeaderV3]


def decode_header(buf: bytes) -> Header:
    """Decode the fixed qcow2 header from the start of ``buf``.

    Only the fixed fields are read: the first 72 bytes for version 2 images and the first 104 bytes
    for version 3 images. The returned header has no extensions, use :func:`parse` for that.

    Args:
        buf: Bytes starting at offset 0 of the image.

    Raises:
        ShortInputError: If ``buf`` is too short for the fixed fields of the image version.
        InvalidSignature: If the magic signature doesn't match.
        UnsupportedVersionError: If the version is not 2 or 3.
        InvalidHeaderError: If the cluster size is out of range, or a version 3 header declares a header
                            length below 104.
    """
    view = memoryview(buf)

    if len(view) < QCOW2_V2_HEADER_SIZE:
        raise ShortInputError(f"Need at least {QCOW2_V2_HEADER_SIZE} bytes for a qcow2 header, got {len(view)}")

    if view[:4].tobytes() != QCOW2_MAGIC_BYTES:
        raise InvalidSignature(f"Invalid qcow2 header magic: {view[:4].hex()}")

    hdr = c_qcow2.QCowHeaderV2(view[:QCOW2_V2_HEADER_SIZE].tobytes())
    if hdr.version not in (2, 3):
        raise UnsupportedVersionError(f"Unsupported qcow2 version: {hdr.version}")

    if hdr.cluster_bits < c_qcow2.MIN_CLUSTER_BITS or hdr.cluster_bits > c_qcow2.MAX_CLUSTER_BITS:
        raise InvalidHeaderError(f"Unsupported cluster size: 2**{hdr.cluster_bits}")

    fields = {
        "version": hdr.version,
        "backing_file_offset": hdr.backing_file_offset,
        "backing_file_size": hdr.backing_file_size,
        "cluster_bits": hdr.cluster_bits,
        "size": hdr.size,
        "crypt_method": CryptMethod(hdr.crypt_method),
        "l1_size": hdr.l1_size,
        "l1_table_offset": hdr.l1_table_offset,
        "refcount_table_offset": hdr.refcount_table_offset,
        "refcount_table_clusters": hdr.refcount_table_clusters,
        "nb_snapshots": hdr.nb_snapshots,
        "snapshots_offset": hdr.snapshots_offset,
        "extensions": (),
    }

    if hdr.version == 2:
        return HeaderV2(**fields)

    if len(view) < QCOW2_V3_HEADER_SIZE:
        raise ShortInputError(f"Need at least {QCOW2_V3_HEADER_SIZE} bytes for a qcow2 v3 header, got {len(view)}")

    hdr_v3 = c_qcow2.QCowHeaderV3(view[QCOW2_V2_HEADER_SIZE:QCOW2_V3_HEADER_SIZE].tobytes())
    if hdr_v3.header_length < QCOW2_V3_HEADER_SIZE:
        raise InvalidHeaderError(f"Invalid qcow2 v3 header length: {hdr_v3.header_length}")

    return HeaderV3(
        **fields,
        incompatible_features=hdr_v3.incompatible_features,
        compatible_features=hdr_v3.compatible_features,
        autoclear_features=hdr_v3.autoclear_features,
        refcount_order=hdr_v3.refcount_order,
        header_length=hdr_v3.header_length,
    )


def walk_extensions(buf: bytes) -> list[HeaderExtension]:
    """Walk the header extension records in ``buf`` up to the end-of-area marker.

    Every record is an 8 byte type/length header followed by the payload, padded to the next
    multiple of 8. The end-of-area marker (type 0) is not part of the result.

    Args:
        buf: The extension area, starting at the first record header.

    Raises:
        TruncatedExtensionError: If a record payload runs past the end of ``buf``.
        MissingTerminatorError: If ``buf`` ends before an end-of-area marker is found.
    """
    view = memoryview(buf)
    extensions = []

    offset = 0
    while True:
        if len(view) - offset < QCOW2_EXTENSION_HEADER_SIZE:
            raise MissingTerminatorError(f"Extension area ends at {offset:#x} without an end-of-area marker")

        ext = c_qcow2.QCowExtension(view[offset : offset + QCOW2_EXTENSION_HEADER_SIZE].tobytes())
        offset += QCOW2_EXTENSION_HEADER_SIZE

        if ext.magic == c_qcow2.QCOW2_EXT_MAGIC_END:
            break

        if ext.len > len(view) - offset:
            raise TruncatedExtensionError(
                f"Extension {ext.magic:#010x} at {offset - QCOW2_EXTENSION_HEADER_SIZE:#x} has size {ext.len}, "
                f"only {len(view) - offset} bytes remaining"
            )

        extension = HeaderExtension(ext.magic, ext.len, view[offset : offset + ext.len].tobytes())
        log.debug("Read %r at offset %#x", extension, offset - QCOW2_EXTENSION_HEADER_SIZE)
        extensions.append(extension)

        # Align to nearest 8 byte boundary
        offset += align8(ext.len)

    return extensions


def extension_area(header: Header) -> tuple[int, int]:
    """Return the ``(start, end)`` byte range of the header extension area.

    The extension area directly follows the header and must fit in the first cluster, before the
    backing file name if there is one.
    """
    start = header.header_length
    end = min(header.backing_file_offset or header.cluster_size, header.cluster_size)
    return start, max(start, end)


def parse(buf: bytes) -> Header:
    """Decode the header and header extensions of a qcow2 image.

    Args:
        buf: Bytes starting at offset 0 of the image, up to at least the end-of-area marker.
    """
    view = memoryview(buf)
    header = decode_header(view)

    if len(view) < header.header_length:
        raise ShortInputError(f"Need {header.header_length} bytes for the qcow2 header, got {len(view)}")

    changes = {}
    if isinstance(header, HeaderV3) and header.header_length > QCOW2_V3_HEADER_SIZE:
        # Older versions may not have all the additional fields, pad them to fit our struct
        additional = view[QCOW2_V3_HEADER_SIZE : header.header_length].tobytes()
        additional = c_qcow2.QCowHeaderAdditional(additional.ljust(len(c_qcow2.QCowHeaderAdditional), b"\x00"))
        changes["compression_type"] = additional.compression_type

    start, end = extension_area(header)
    changes["extensions"] = tuple(walk_extensions(view[start:end]))

    return replace(header, **changes)


class QCow2Info:
    """Header information of a qcow2 image.

    Reads the header and header extension area from the start of a file-like object.
    Nothing beyond the first cluster of the image is read.

    Args:
        fh: File-like object of the qcow2 image.
    """

    def __init__(self, fh: BinaryIO):
        self.fh = fh

        self.fh.seek(0)
        header = decode_header(self.fh.read(QCOW2_V3_HEADER_SIZE))

        _, end = extension_area(header)
        self.header = parse(RangeStream(self.fh, 0, end).read())

    def __repr__(self) -> str:
        return f"<QCow2Info version={self.version} size={self.header.size} extensions={len(self.extensions)}>"

    @property
    def version(self) -> int:
        return self.header.version

    @property
    def extensions(self) -> tuple[HeaderExtension, ...]:
        return self.header.extensions

    def extension(self, type: int) -> HeaderExtension | None:
        """Return the first extension of the given type, if present."""
        for ext in self.extensions:
            if ext.type == type:
                return ext
        return None

    @property
    def backing_format(self) -> str | None:
        if ext := self.extension(c_qcow2.QCOW2_EXT_MAGIC_BACKING_FORMAT):
            return ext.data.decode()
        return None

    @property
    def data_file(self) -> str | None:
        if ext := self.extension(c_qcow2.QCOW2_EXT_MAGIC_DATA_FILE):
            return ext.data.decode()
        return None

    @property
    def feature_table(self) -> bytes | None:
        if ext := self.extension(c_qcow2.QCOW2_EXT_MAGIC_FEATURE_TABLE):
            return ext.data
        return None
