# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import io
import struct
import zipfile

from typing import Callable, Dict, Tuple

import apksigtool
import pytest

FOREIGN_ID = 0x12345678
FOREIGN_VALUE = b"foreign pair \x00\x01\x02"


def make_zip(entries: Dict[str, bytes]) -> bytes:
    out = io.BytesIO()
    with zipfile.ZipFile(out, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return out.getvalue()


def make_block(*pairs: Tuple[int, bytes]) -> bytes:
    blk = apksigtool.APKSigningBlock(tuple(
        apksigtool.Pair(len(value) + 4, pair_id, apksigtool.UnknownBlock(value))
        for pair_id, value in pairs))
    return blk.dump()


def splice_block(data: bytes, block: bytes) -> bytes:
    """Insert block before the central directory of a ZIP without one."""
    eocd = data.rfind(b"PK\x05\x06")
    cd_offset, = struct.unpack("<L", data[eocd + 16:eocd + 20])
    out = bytearray(data[:cd_offset] + block + data[cd_offset:])
    struct.pack_into("<L", out, eocd + len(block) + 16, cd_offset + len(block))
    return bytes(out)


ENTRIES = {
    "AndroidManifest.xml": b"<manifest package=\"com.example.app\"/>",
    "classes.dex": b"dex\n035\x00" + bytes(100),
    "resources.arsc": b"\x02\x00\x0c\x00" + bytes(60),
    "META-INF/channel": b"walle",
}


@pytest.fixture
def unsigned_zip() -> bytes:
    return make_zip(ENTRIES)


@pytest.fixture
def signed_zip(unsigned_zip: bytes) -> bytes:
    return splice_block(unsigned_zip, make_block((FOREIGN_ID, FOREIGN_VALUE)))


@pytest.fixture
def write_file(tmp_path) -> Callable[[str, bytes], str]:
    def write(name: str, data: bytes) -> str:
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)
    return write


@pytest.fixture
def signed_apk(write_file, signed_zip: bytes) -> str:
    return write_file("app.apk", signed_zip)


@pytest.fixture
def unsigned_apk(write_file, unsigned_zip: bytes) -> str:
    return write_file("unsigned.apk", unsigned_zip)
