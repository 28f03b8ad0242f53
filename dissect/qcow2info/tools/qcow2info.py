from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from dissect.qcow2info.c_qcow2 import AutoclearFeatures, CompatibleFeatures, IncompatibleFeatures
from dissect.qcow2info.exceptions import Error
from dissect.qcow2info.qcow2 import Header, HeaderV3, QCow2Info

log = logging.getLogger(__name__)


def setup_logging(logger: logging.Logger, verbosity: int) -> None:
    if verbosity == 1:
        level = logging.ERROR
    elif verbosity == 2:
        level = logging.WARNING
    elif verbosity == 3:
        level = logging.INFO
    elif verbosity >= 4:
        level = logging.DEBUG
    else:
        level = logging.CRITICAL

    handler = RichHandler(console=Console(stderr=True))
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(level)
    logger.addHandler(handler)
    logger.setLevel(level)


def _flag_names(flag_type: type, value: int) -> str:
    names = [member.name for member in flag_type if value & member.value]
    return ", ".join(names) if names else "-"


def format_header(header: Header) -> list[str]:
    crypt_method = header.crypt_method.name or str(header.crypt_method.value)

    lines = [
        f"version:                  {header.version}",
        f"header_length:            {header.header_length}",
        f"backing_file_offset:      {header.backing_file_offset:#x}",
        f"backing_file_size:        {header.backing_file_size}",
        f"cluster_bits:             {header.cluster_bits} ({header.cluster_size} bytes)",
        f"size:                     {header.size}",
        f"crypt_method:             {crypt_method}",
        f"l1_size:                  {header.l1_size}",
        f"l1_table_offset:          {header.l1_table_offset:#x}",
        f"refcount_table_offset:    {header.refcount_table_offset:#x}",
        f"refcount_table_clusters:  {header.refcount_table_clusters}",
        f"nb_snapshots:             {header.nb_snapshots}",
        f"snapshots_offset:         {header.snapshots_offset:#x}",
    ]

    if isinstance(header, HeaderV3):
        lines += [
            f"incompatible_features:    {header.incompatible_features:b} "
            f"({_flag_names(IncompatibleFeatures, header.incompatible_features)})",
            f"compatible_features:      {header.compatible_features:b} "
            f"({_flag_names(CompatibleFeatures, header.compatible_features)})",
            f"autoclear_features:       {header.autoclear_features:b} "
            f"({_flag_names(AutoclearFeatures, header.autoclear_features)})",
            f"refcount_order:           {header.refcount_order} ({header.refcount_bits} bits)",
            f"compression_type:         {header.compression_type}",
        ]

    return lines


def format_extensions(header: Header) -> list[str]:
    lines = []
    for ext in header.extensions:
        lines.append(f"extension {ext.type:#010x} {ext.name or 'unknown'} ({ext.size} bytes)")
    return lines


def main() -> int:
    parser = argparse.ArgumentParser(description="QCOW2 header inspector")
    parser.add_argument("input", type=Path, nargs="+", help="path to qcow2 image")
    parser.add_argument("-e", "--extensions", action="store_true", help="list the header extensions")
    parser.add_argument("-v", "--verbose", action="count", default=3, help="increase output verbosity")
    args = parser.parse_args()

    setup_logging(log, args.verbose)

    failed = False
    for path in args.input:
        in_file = path.resolve()
        if not in_file.exists():
            log.error("Input file does not exist: %s", in_file)
            failed = True
            continue

        try:
            with in_file.open("rb") as fh:
                info = QCow2Info(fh)
        except (Error, OSError) as e:
            log.error("%s: %s", in_file, e)
            log.debug("", exc_info=e)
            failed = True
            continue

        print(in_file)
        for line in format_header(info.header):
            print(f"  {line}")

        if args.extensions:
            for line in format_extensions(info.header):
                print(f"  {line}")

    return 1 if failed else 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        pass
