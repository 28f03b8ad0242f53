from __future__ import annotations

import io
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

import pytest

from dissect.qcow2info.c_qcow2 import QCOW2_MAGIC, QCOW2_V3_HEADER_SIZE, CryptMethod, align8, c_qcow2
from dissect.qcow2info.qcow2 import Header, HeaderExtension, HeaderV2, HeaderV3

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


def encode_extensions(extensions: Iterable[HeaderExtension], terminate: bool = True) -> bytes:
    buf = b""
    for ext in extensions:
        buf += c_qcow2.QCowExtension(magic=ext.type, len=ext.size).dumps()
        buf += ext.data.ljust(align8(ext.size), b"\x00")

    if terminate:
        buf += c_qcow2.QCowExtension(magic=c_qcow2.QCOW2_EXT_MAGIC_END, len=0).dumps()

    return buf


def encode_header(header: Header) -> bytes:
    """Encode a header and its extensions the way they are laid out at the start of an image."""
    buf = c_qcow2.QCowHeaderV2(
        magic=QCOW2_MAGIC,
        version=header.version,
        backing_file_offset=header.backing_file_offset,
        backing_file_size=header.backing_file_size,
        cluster_bits=header.cluster_bits,
        size=header.size,
        crypt_method=int(header.crypt_method),
        l1_size=header.l1_size,
        l1_table_offset=header.l1_table_offset,
        refcount_table_offset=header.refcount_table_offset,
        refcount_table_clusters=header.refcount_table_clusters,
        nb_snapshots=header.nb_snapshots,
        snapshots_offset=header.snapshots_offset,
    ).dumps()

    if isinstance(header, HeaderV3):
        buf += c_qcow2.QCowHeaderV3(
            incompatible_features=header.incompatible_features,
            compatible_features=header.compatible_features,
            autoclear_features=header.autoclear_features,
            refcount_order=header.refcount_order,
            header_length=header.header_length,
        ).dumps()

        if header.header_length > QCOW2_V3_HEADER_SIZE:
            buf += c_qcow2.QCowHeaderAdditional(compression_type=header.compression_type).dumps()
            buf = buf[: header.header_length].ljust(header.header_length, b"\x00")

    return buf + encode_extensions(header.extensions)


def make_header_v2(**kwargs) -> HeaderV2:
    fields = {
        "version": 2,
        "backing_file_offset": 0,
        "backing_file_size": 0,
        "cluster_bits": 16,
        "size": 0x20000000,
        "crypt_method": CryptMethod.NONE,
        "l1_size": 1,
        "l1_table_offset": 0x30000,
        "refcount_table_offset": 0x10000,
        "refcount_table_clusters": 1,
        "nb_snapshots": 0,
        "snapshots_offset": 0,
        "extensions": (),
    }
    fields.update(kwargs)
    return HeaderV2(**fields)


def make_header_v3(**kwargs) -> HeaderV3:
    fields = make_header_v2().__dict__.copy()
    fields.update(
        {
            "version": 3,
            "incompatible_features": 0,
            "compatible_features": 1,
            "autoclear_features": 0,
            "refcount_order": 4,
            "header_length": 112,
        }
    )
    fields.update(kwargs)
    return HeaderV3(**fields)


@pytest.fixture
def header_v2() -> HeaderV2:
    return make_header_v2()


@pytest.fixture
def header_v3() -> HeaderV3:
    return make_header_v3(
        extensions=(
            HeaderExtension(c_qcow2.QCOW2_EXT_MAGIC_BACKING_FORMAT, 5, b"qcow2"),
            HeaderExtension(c_qcow2.QCOW2_EXT_MAGIC_FEATURE_TABLE, 48, bytes(range(48))),
        ),
    )


@pytest.fixture
def image_v3(header_v3: HeaderV3) -> Iterator[BinaryIO]:
    buf = encode_header(header_v3)
    # Pad to a full cluster like a real image would be
    yield io.BytesIO(buf.ljust(header_v3.cluster_size, b"\x00"))


@pytest.fixture
def image_v3_path(tmp_path: Path, header_v3: HeaderV3) -> Path:
    path = tmp_path.joinpath("image.qcow2")
    path.write_bytes(encode_header(header_v3).ljust(header_v3.cluster_size, b"\x00"))
    return path
