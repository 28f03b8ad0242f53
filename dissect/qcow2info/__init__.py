from dissect.qcow2info.exceptions import (
    Error,
    InvalidExtensionError,
    InvalidHeaderError,
    InvalidSignature,
    MissingTerminatorError,
    ShortInputError,
    TruncatedExtensionError,
    UnsupportedVersionError,
)
from dissect.qcow2info.qcow2 import (
    Header,
    HeaderExtension,
    HeaderV2,
    HeaderV3,
    QCow2Info,
    decode_header,
    extension_area,
    parse,
    walk_extensions,
)

__all__ = [
    "Error",
    "Header",
    "HeaderExtension",
    "HeaderV2",
    "HeaderV3",
    "InvalidExtensionError",
    "InvalidHeaderError",
    "InvalidSignature",
    "MissingTerminatorError",
    "QCow2Info",
    "ShortInputError",
    "TruncatedExtensionError",
    "UnsupportedVersionError",
    "decode_header",
    "extension_area",
    "parse",
    "walk_extensions",
]
