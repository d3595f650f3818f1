#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
channel records: a JSON object stored as the value of an ID-value pair with ID
CHANNEL_BLOCK_ID in the APK Signing Block

>>> pair = encode_channel("beta", timestamp=1700000000000)
>>> hex(pair.id)
'0x71777777'
>>> pair.value
b'{"channel":"beta","timestamp":1700000000000,"version":"1.0.0"}'
>>> decode_channel((Pair(0x7109871a, b"sig"), pair))
ChannelInfo(channel='beta', timestamp=1700000000000, version='1.0.0', extra=None)
>>> pairs = upsert_channel((pair, Pair(0x7109871a, b"sig")), "gamma", timestamp=1)
>>> [hex(p.id) for p in pairs]
['0x7109871a', '0x71777777']
>>> decode_channel(pairs).channel
'gamma'

"""

from __future__ import annotations

import json
import logging
import time

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

import apksigtool

from . import ChannelRecordError, Pair, extract_signing_block, read_apk, replace_pairs, write_apk

# same ID as Walle
CHANNEL_BLOCK_ID = 0x71777777
CHANNEL_DATA_VERSION = "1.0.0"  # overridden in main() if $APKCHANNEL_VERSION_TAG is set

PAIR_NAMES = {
    apksigtool.APK_SIGNATURE_SCHEME_V2_BLOCK_ID: "APK SIGNATURE SCHEME v2 BLOCK",
    apksigtool.APK_SIGNATURE_SCHEME_V3_BLOCK_ID: "APK SIGNATURE SCHEME v3 BLOCK",
    apksigtool.APK_SIGNATURE_SCHEME_V31_BLOCK_ID: "APK SIGNATURE SCHEME v3.1 BLOCK",
    apksigtool.VERITY_PADDING_BLOCK_ID: "VERITY PADDING BLOCK",
    apksigtool.DEPENDENCY_INFO_BLOCK_ID: "DEPENDENCY INFO BLOCK",
    apksigtool.GOOGLE_PLAY_FROSTING_BLOCK_ID: "GOOGLE PLAY FROSTING BLOCK",
    apksigtool.SOURCE_STAMP_V1_BLOCK_ID: "SOURCE STAMP V1 BLOCK",
    apksigtool.SOURCE_STAMP_V2_BLOCK_ID: "SOURCE STAMP V2 BLOCK",
    CHANNEL_BLOCK_ID: "CHANNEL BLOCK",
}

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelInfo:
    """
    Channel record.

    Records written by other tools may lack a timestamp and version; their
    other keys (if any) end up in .extra.
    """
    channel: str
    timestamp: Optional[int]
    version: Optional[str]
    extra: Any = None

    def for_json(self) -> Dict[str, Any]:
        """Convert to JSON (omitting extra when None)."""
        d = dict(channel=self.channel, timestamp=self.timestamp, version=self.version)
        if self.extra is not None:
            d["extra"] = self.extra
        return d


def describe_pair_id(pair_id: int) -> str:
    """
    Human-readable name for a pair ID.

    >>> describe_pair_id(0x7109871a)
    'APK SIGNATURE SCHEME v2 BLOCK'
    >>> describe_pair_id(0x6dff800d)
    'SOURCE STAMP V2 BLOCK'
    >>> describe_pair_id(0x12345678)
    'UNKNOWN BLOCK'

    """
    return PAIR_NAMES.get(pair_id, "UNKNOWN BLOCK")


def encode_channel(channel: str, extra: Any = None, *, timestamp: Optional[int] = None,
                   version: Optional[str] = None) -> Pair:
    """Create channel Pair; timestamp defaults to now (in milliseconds)."""
    if timestamp is None:
        timestamp = int(time.time() * 1000)
    info = ChannelInfo(channel, timestamp, version or CHANNEL_DATA_VERSION, extra)
    data = json.dumps(info.for_json(), ensure_ascii=False, separators=(",", ":"))
    return Pair(CHANNEL_BLOCK_ID, data.encode())


def parse_channel_value(value: bytes) -> ChannelInfo:
    """
    Parse channel Pair value.

    >>> parse_channel_value(b'{"channel":"walle","campaign":"x"}')
    ChannelInfo(channel='walle', timestamp=None, version=None, extra={'campaign': 'x'})
    >>> try:
    ...     parse_channel_value(b"walle")
    ... except ChannelRecordError as e:
    ...     print(e)
    Invalid channel record: not JSON

    """
    try:
        data = json.loads(value.decode())
    except (UnicodeDecodeError, ValueError) as e:
        raise ChannelRecordError("Invalid channel record: not JSON") from e
    if not isinstance(data, dict) or not isinstance(data.get("channel"), str):
        raise ChannelRecordError("Invalid channel record: expected object with channel")
    channel = data.pop("channel")
    timestamp = data.pop("timestamp", None)
    version = data.pop("version", None)
    extra = data.pop("extra", None)
    if extra is None and data:
        extra = data                # e.g. Walle stores extra info as top-level keys
    return ChannelInfo(channel, timestamp, version, extra)


def decode_channel(pairs: Iterable[Pair]) -> Optional[ChannelInfo]:
    """Decode the last channel Pair (or return None if there is none)."""
    last = None
    for pair in pairs:
        if pair.id == CHANNEL_BLOCK_ID:
            last = pair
    if last is None:
        return None
    return parse_channel_value(last.value)


def remove_channel_pairs(pairs: Iterable[Pair]) -> Tuple[Pair, ...]:
    """Remove all channel Pairs."""
    return tuple(p for p in pairs if p.id != CHANNEL_BLOCK_ID)


def upsert_channel(pairs: Iterable[Pair], channel: str, extra: Any = None, *,
                   timestamp: Optional[int] = None) -> Tuple[Pair, ...]:
    """Remove all channel Pairs, then append a new one."""
    return remove_channel_pairs(pairs) + (encode_channel(channel, extra, timestamp=timestamp),)


def get_pairs(data: bytes) -> Tuple[Pair, ...]:
    """Pairs in the APK Signing Block of the APK (empty if there is no block)."""
    block = extract_signing_block(data)
    return block.pairs() if block is not None else ()


def put_channel_data(data: bytes, channel: str, extra: Any = None, *,
                     timestamp: Optional[int] = None) -> bytes:
    """Add or replace channel record in APK (bytes); returns the new APK."""
    pairs = upsert_channel(get_pairs(data), channel, extra, timestamp=timestamp)
    return replace_pairs(data, pairs)


def get_channel_data(data: bytes) -> Optional[ChannelInfo]:
    """Read channel record from APK (bytes)."""
    return decode_channel(get_pairs(data))


def check_support(apkfile: str) -> bool:
    """
    Check whether the APK has a (well-formed) APK Signing Block.

    Never raises: errors result in False.
    """
    try:
        return extract_signing_block(read_apk(apkfile)) is not None
    except Exception as e:      # pylint: disable=W0703
        logger.debug("%r: %s", apkfile, e)
        return False


# NB: modifies the APK file!
def put_channel(apkfile: str, channel: str, extra: Any = None, *,
                timestamp: Optional[int] = None) -> None:
    """Add or replace channel record in APK file."""
    data = put_channel_data(read_apk(apkfile), channel, extra, timestamp=timestamp)
    write_apk(apkfile, data)
    logger.info("%s: wrote channel %r", apkfile, channel)


def get_channel(apkfile: str) -> Optional[ChannelInfo]:
    """
    Read channel record from APK file.

    A channel record that can't be decoded is logged and treated as missing;
    a missing or malformed ZIP/APK Signing Block raises.
    """
    try:
        return get_channel_data(read_apk(apkfile))
    except ChannelRecordError as e:
        logger.warning("%s: %s", apkfile, e)
        return None


# NB: modifies the APK file!
def remove_channel(apkfile: str) -> bool:
    """
    Remove channel record(s) from APK file.

    Returns True when the APK was modified, False otherwise.
    """
    data = read_apk(apkfile)
    pairs = get_pairs(data)
    kept = remove_channel_pairs(pairs)
    if kept == pairs:
        return False
    write_apk(apkfile, replace_pairs(data, kept))
    return True


# vim: set tw=80 sw=4 sts=4 et fdm=marker :
