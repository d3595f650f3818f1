#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

r"""
embed/read distribution channel records in android apk signing blocks

apkchannel is a tool for multi-channel packaging of android APKs: it writes a
small JSON channel record into the APK Signing Block (as an ID-value pair, like
Walle) without touching the APK Signature Scheme v2/v3 Blocks, which means the
existing signature remains valid.  No re-signing is needed.

NB: only ZIP files without an archive comment are supported.


CLI
===

$ apkchannel check [--verbose] APK...
$ apkchannel info [--json] APK
$ apkchannel put [--extra JSON] [--no-validate] APK CHANNEL
$ apkchannel get [--json] APK
$ apkchannel remove APK
$ apkchannel batch [--channels-file FILE] [--channel NAME] APK OUTPUT_DIR

The following environment variables can be set to override the default
behaviour:

* set APKCHANNEL_VERSION_TAG to change the version stored in channel records
* set APKCHANNEL_OUTPUT_NAME_FORMAT to change the file names used by batch


API
===

>> from apkchannel.channel import check_support, put_channel, get_channel
>> from apkchannel.batch import batch_generate, parse_channel_file
>> put_channel(apk, "beta", extra=dict(campaign="spring"))
>> get_channel(apk).channel
'beta'
>> batch_generate(apk, parse_channel_file("channels.txt"), output_dir)


APK Signing Block
-----------------

>>> pairs = (Pair(1, b"foo"), Pair(2, b""))
>>> block = dump_signing_block(pairs)
>>> len(block), block[-16:]
(59, b'APK Sig Block 42')
>>> empty = b"PK\x05\x06" + bytes(18)           # empty ZIP archive
>>> apk = replace_signing_block(empty, block)
>>> find_eocd(apk)
EOCD(offset=59, cd_offset=59, cd_size=0)
>>> sb = find_signing_block(apk, 59)
>>> sb.offset, sb.size, sb.pairs() == pairs
(0, 51, True)
>>> replace_signing_block(apk, block) == apk
True

"""

from __future__ import annotations

import logging
import os
import shutil
import struct
import tempfile

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Tuple

import apksigtool

__version__ = "0.1.0"
NAME = "apkchannel"

APK_SIG_BLOCK_MAGIC = b"APK Sig Block 42"
APK_SIG_BLOCK_MIN_SIZE = 32     # size + (no pairs) + size + magic

# https://source.android.com/docs/security/features/apksigning/v2#apk-signing-block-format
SB_SIZE_LEN = 8
SB_FOOTER_LEN = SB_SIZE_LEN + len(APK_SIG_BLOCK_MAGIC)
PAIR_HEADER_LEN = 12            # uint64 length + uint32 id

EOCD_SIGNATURE = b"\x50\x4b\x05\x06"
EOCD_MIN_SIZE = 22
EOCD_CD_SIZE_OFFSET = 12
EOCD_CD_OFFSET_OFFSET = 16
ZIP_MAX_COMMENT_SIZE = 0xffff

UINT32_MAX = 0xffffffff

logger = logging.getLogger(__name__)


class APKChannelError(Exception):
    """Base class for errors."""


class TrailerNotFound(APKChannelError):
    """Missing or unsupported ZIP end of central directory record (EOCD)."""


class SigningBlockMalformed(APKChannelError):
    """APK Signing Block magic present but sizes or offsets invalid."""


class ChannelRecordError(APKChannelError):
    """Channel record present but not decodable."""


class InvalidChannelName(APKChannelError):
    """Channel name not allowed."""


@dataclass(frozen=True)
class EOCD:
    """ZIP end of central directory record: its offset and the central directory's."""
    offset: int
    cd_offset: int
    cd_size: int


@dataclass(frozen=True)
class Pair:
    """ID-value pair."""
    id: int
    value: bytes

    def __post_init__(self) -> None:
        if not 0 <= self.id <= UINT32_MAX:
            raise ValueError(f"Pair ID out of range: {self.id!r}")

    @property
    def length(self) -> int:
        """Length as stored in the APK Signing Block (ID + value)."""
        return len(self.value) + 4

    def to_apksigtool(self) -> apksigtool.Pair:
        """Convert to an apksigtool Pair (with an UnknownBlock as .value)."""
        if self.length > UINT32_MAX:
            raise APKChannelError("Pair too large")
        return apksigtool.Pair(self.length, self.id, apksigtool.UnknownBlock(self.value))


@dataclass(frozen=True)
class SigningBlock:
    """
    APK Signing Block found in an APK.

    The payload excludes the leading and trailing size fields and the magic;
    .end is the offset right after the magic (i.e. the central directory
    offset) and .span the number of bytes the block occupies in the file.
    """
    offset: int
    size: int
    payload: bytes

    @property
    def end(self) -> int:
        return self.offset + SB_SIZE_LEN + self.size

    @property
    def span(self) -> int:
        return SB_SIZE_LEN + self.size

    def pairs(self) -> Tuple[Pair, ...]:
        return parse_pairs(self.payload)


def find_eocd(data: bytes) -> EOCD:
    r"""
    Find the ZIP end of central directory record (EOCD).

    Scans backwards for the EOCD signature and uses the match closest to the
    end; raises TrailerNotFound when there is none, or when the match is not
    exactly at the end of the data (i.e. the ZIP has a comment, which is not
    supported).

    >>> empty = b"PK\x05\x06" + bytes(18)
    >>> find_eocd(b"foo" + empty)
    EOCD(offset=3, cd_offset=0, cd_size=0)
    >>> try:
    ...     find_eocd(empty + b"comment")
    ... except TrailerNotFound as e:
    ...     print(e)
    ZIP archive comments are not supported

    """
    if len(data) < EOCD_MIN_SIZE:
        raise TrailerNotFound("Expected end of central directory record (EOCD)")
    start = max(0, len(data) - EOCD_MIN_SIZE - ZIP_MAX_COMMENT_SIZE)
    pos = data.rfind(EOCD_SIGNATURE, start, len(data) - EOCD_MIN_SIZE + len(EOCD_SIGNATURE))
    if pos == -1:
        raise TrailerNotFound("Expected end of central directory record (EOCD)")
    if pos + EOCD_MIN_SIZE != len(data):
        raise TrailerNotFound("ZIP archive comments are not supported")
    cd_size, cd_offset = struct.unpack_from("<LL", data, pos + EOCD_CD_SIZE_OFFSET)
    if cd_offset > pos:
        raise TrailerNotFound("Central directory offset > EOCD offset")
    logger.debug("EOCD at %d, central directory at %d (%d bytes)", pos, cd_offset, cd_size)
    return EOCD(pos, cd_offset, cd_size)


def find_signing_block(data: bytes, cd_offset: int) -> Optional[SigningBlock]:
    """
    Find the APK Signing Block that immediately precedes the central directory.

    Returns None when there is no APK Signing Block (e.g. unsigned or v1-only
    APK); raises SigningBlockMalformed when the magic is present but the size
    fields are inconsistent.
    """
    if cd_offset < APK_SIG_BLOCK_MIN_SIZE:
        return None
    if data[cd_offset - len(APK_SIG_BLOCK_MAGIC):cd_offset] != APK_SIG_BLOCK_MAGIC:
        return None
    sb_size2 = int.from_bytes(data[cd_offset - SB_FOOTER_LEN:cd_offset - 16], "little")
    if sb_size2 < SB_FOOTER_LEN:
        raise SigningBlockMalformed("APK Signing Block size too small")
    sb_offset = cd_offset - sb_size2 - SB_SIZE_LEN
    if sb_offset < 0:
        raise SigningBlockMalformed("APK Signing Block offset < 0")
    sb_size1 = int.from_bytes(data[sb_offset:sb_offset + SB_SIZE_LEN], "little")
    if sb_size1 != sb_size2:
        raise SigningBlockMalformed("APK Signing Block sizes not equal")
    logger.debug("APK Signing Block at %d (%d bytes)", sb_offset, sb_size2 + SB_SIZE_LEN)
    payload = bytes(data[sb_offset + SB_SIZE_LEN:cd_offset - SB_FOOTER_LEN])
    return SigningBlock(sb_offset, sb_size2, payload)


def extract_signing_block(data: bytes) -> Optional[SigningBlock]:
    """Find EOCD, then the APK Signing Block (or None)."""
    return find_signing_block(data, find_eocd(data).cd_offset)


def parse_pairs(payload: bytes) -> Tuple[Pair, ...]:
    r"""
    Parse APK Signing Block payload (a sequence of pairs).

    Parsing stops (without raising) at the first pair that is too large (>= 4
    GiB) or truncated; the pairs before it are returned.

    >>> payload = dump_pairs((Pair(1, b"foo"), Pair(2, b"")))
    >>> payload.hex()
    '070000000000000001000000666f6f040000000000000002000000'
    >>> parse_pairs(payload)
    (Pair(id=1, value=b'foo'), Pair(id=2, value=b''))
    >>> parse_pairs(payload[:-1])
    (Pair(id=1, value=b'foo'),)
    >>> parse_pairs(payload + b"\xff" * 12) == parse_pairs(payload)
    True

    """
    return tuple(_parse_pairs(payload))


def _parse_pairs(payload: bytes) -> Iterator[Pair]:
    offset = 0
    while len(payload) - offset >= PAIR_HEADER_LEN:
        pair_len, = struct.unpack_from("<Q", payload, offset)
        if pair_len >> 32:
            logger.warning("Ignoring pairs from offset %d: pair too large (%d bytes)",
                           offset, pair_len)
            return
        if pair_len < 4 or offset + 8 + pair_len > len(payload):
            logger.warning("Ignoring pairs from offset %d: truncated pair (%d of %d bytes)",
                           offset, len(payload) - offset - 8, pair_len)
            return
        pair_id, = struct.unpack_from("<L", payload, offset + 8)
        yield Pair(pair_id, bytes(payload[offset + PAIR_HEADER_LEN:offset + 8 + pair_len]))
        offset += 8 + pair_len
    if offset != len(payload):
        logger.debug("Ignoring %d trailing bytes", len(payload) - offset)


def dump_pairs(pairs: Iterable[Pair]) -> bytes:
    """Serialise pairs (in order) as an APK Signing Block payload."""
    return b"".join(apksigtool.dump_pair(p.to_apksigtool()) for p in pairs)


def dump_signing_block(pairs: Iterable[Pair]) -> bytes:
    """Build an APK Signing Block containing pairs using apksigtool."""
    blk = apksigtool.APKSigningBlock(tuple(p.to_apksigtool() for p in pairs))
    return blk.dump()


def replace_signing_block(data: bytes, new_sig_block: bytes) -> bytes:
    """
    Replace the APK Signing Block of the APK (or insert one if there is none).

    Copies the ZIP entries, the new APK Signing Block, the central directory
    and the EOCD (with the central directory offset updated) to a new buffer.

    Returns the new APK (bytes).
    """
    if new_sig_block[-len(APK_SIG_BLOCK_MAGIC):] != APK_SIG_BLOCK_MAGIC:
        raise SigningBlockMalformed("Expected APK Signing Block magic")
    eocd = find_eocd(data)
    old = find_signing_block(data, eocd.cd_offset)
    if old is not None:
        entries_end, offset = old.offset, len(new_sig_block) - old.span
    else:
        entries_end, offset = eocd.cd_offset, len(new_sig_block)
    cd_offset = eocd.cd_offset + offset
    if cd_offset > UINT32_MAX:
        raise APKChannelError("Central directory offset too large for ZIP (>= 4 GiB)")
    out = bytearray(data[:entries_end])
    out += new_sig_block
    out += data[eocd.cd_offset:eocd.offset]
    eocd_offset = len(out)
    out += data[eocd.offset:]
    struct.pack_into("<L", out, eocd_offset + EOCD_CD_OFFSET_OFFSET, cd_offset)
    logger.debug("Central directory moved from %d to %d", eocd.cd_offset, cd_offset)
    return bytes(out)


def replace_pairs(data: bytes, pairs: Iterable[Pair]) -> bytes:
    """Replace the APK Signing Block of the APK with one containing pairs."""
    return replace_signing_block(data, dump_signing_block(pairs))


def read_apk(apkfile: str) -> bytes:
    """Read entire APK."""
    with open(apkfile, "rb") as fh:
        return fh.read()


def write_apk(apkfile: str, data: bytes) -> None:
    """
    Write entire APK (atomically): writes to a temporary file in the same
    directory, then replaces apkfile.
    """
    dirname = os.path.dirname(os.path.abspath(apkfile))
    fd, tmpfile = tempfile.mkstemp(dir=dirname, prefix=".apkchannel-", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        if os.path.exists(apkfile):
            shutil.copymode(apkfile, tmpfile)
        os.replace(tmpfile, apkfile)
    except BaseException:
        os.unlink(tmpfile)
        raise


# vim: set tw=80 sw=4 sts=4 et fdm=marker :
