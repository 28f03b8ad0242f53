from __future__ import annotations

from dissect.cstruct import cstruct

# References:
# - https://github.com/qemu/qemu/blob/master/block/qcow2.h
# - https://github.com/qemu/qemu/blob/master/docs/interop/qcow2.txt
qcow2_def = """
#define MIN_CLUSTER_BITS 9
#define MAX_CLUSTER_BITS 21

#define QCOW2_COMPRESSION_TYPE_ZLIB     0
#define QCOW2_COMPRESSION_TYPE_ZSTD     1

#define QCOW2_EXT_MAGIC_END             0
#define QCOW2_EXT_MAGIC_BACKING_FORMAT  0xe2792aca
#define QCOW2_EXT_MAGIC_FEATURE_TABLE   0x6803f857
#define QCOW2_EXT_MAGIC_CRYPTO_HEADER   0x0537be77
#define QCOW2_EXT_MAGIC_BITMAPS         0x23852875
#define QCOW2_EXT_MAGIC_DATA_FILE       0x44415441

enum CryptMethod : uint32 {
    NONE    = 0,
    AES     = 1,
    LUKS    = 2
};

flag IncompatibleFeatures : uint64 {
    DIRTY       = 0x01,
    CORRUPT     = 0x02,
    DATA_FILE   = 0x04,
    COMPRESSION = 0x08,
    EXTL2       = 0x10
};

flag CompatibleFeatures : uint64 {
    LAZY_REFCOUNTS  = 0x01
};

flag AutoclearFeatures : uint64 {
    BITMAPS         = 0x01,
    DATA_FILE_RAW   = 0x02
};

/* Fields shared by version 2 and 3 */
typedef struct {
    uint32_t magic;
    uint32_t version;
    uint64_t backing_file_offset;
    uint32_t backing_file_size;
    uint32_t cluster_bits;
    uint64_t size; /* in bytes */
    uint32_t crypt_method;
    uint32_t l1_size;
    uint64_t l1_table_offset;
    uint64_t refcount_table_offset;
    uint32_t refcount_table_clusters;
    uint32_t nb_snapshots;
    uint64_t snapshots_offset;
} QCowHeaderV2;

/* Directly follows the version 2 fields, only valid for version >= 3 */
typedef struct {
    uint64_t incompatible_features;
    uint64_t compatible_features;
    uint64_t autoclear_features;

    uint32_t refcount_order;
    uint32_t header_length;
} QCowHeaderV3;

/* Present if header_length > 104 */
typedef struct {
    uint8_t compression_type;

    /* header must be a multiple of 8 */
    uint8_t padding[7];
} QCowHeaderAdditional;

typedef struct {
    uint32_t magic;
    uint32_t len;
} QCowExtension;
"""

c_qcow2 = cstruct(endian=">").load(qcow2_def)

QCOW2_MAGIC = 0x514649FB
QCOW2_MAGIC_BYTES = c_qcow2.uint32.dumps(QCOW2_MAGIC)

QCOW2_V2_HEADER_SIZE = len(c_qcow2.QCowHeaderV2)
QCOW2_V3_HEADER_SIZE = QCOW2_V2_HEADER_SIZE + len(c_qcow2.QCowHeaderV3)

QCOW2_EXTENSION_HEADER_SIZE = len(c_qcow2.QCowExtension)

QCOW2_EXTENSION_NAMES = {
    c_qcow2.QCOW2_EXT_MAGIC_BACKING_FORMAT: "backing_format",
    c_qcow2.QCOW2_EXT_MAGIC_FEATURE_TABLE: "feature_table",
    c_qcow2.QCOW2_EXT_MAGIC_CRYPTO_HEADER: "crypto_header",
    c_qcow2.QCOW2_EXT_MAGIC_BITMAPS: "bitmaps",
    c_qcow2.QCOW2_EXT_MAGIC_DATA_FILE: "data_file",
}

CryptMethod = c_qcow2.CryptMethod
IncompatibleFeatures = c_qcow2.IncompatibleFeatures
CompatibleFeatures = c_qcow2.CompatibleFeatures
AutoclearFeatures = c_qcow2.AutoclearFeatures


def align8(size: int) -> int:
    """Round a size up to the next multiple of 8."""
    return (size + 7) & ~7
