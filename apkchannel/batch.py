#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
multi-channel packaging: channel lists, per-channel output APKs, APK info

>>> parse_channel_lines(["# comment", "", "huawei", " xiaomi = promo "])
[ChannelEntry(name='huawei', extra=None), ChannelEntry(name='xiaomi', extra='promo')]
>>> validate_channel_name("google_play-2"), validate_channel_name("app store")
(True, False)
>>> format_size(0), format_size(1536), format_size(3 * 1024 ** 2)
('0 Bytes', '1.5 KB', '3 MB')

"""

from __future__ import annotations

import datetime
import logging
import os
import re
import zipfile

from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

import apksigcopier

from . import APKChannelError, ChannelRecordError, InvalidChannelName, read_apk, write_apk
from .channel import (ChannelInfo, check_support, describe_pair_id, get_channel_data,
                      get_pairs, put_channel_data)

OUTPUT_NAME_FORMAT = "{stem}_{channel}.apk"    # overridden in main() if set in env
CHANNEL_NAME = re.compile(r"\A[a-zA-Z0-9_-]+\Z")
SIZE_UNITS = ("Bytes", "KB", "MB", "GB")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelEntry:
    """Channel list entry: name (and optional extra info)."""
    name: str
    extra: Optional[str] = None


@dataclass(frozen=True)
class Progress:
    """Batch progress (passed to the progress callback before each channel)."""
    current: int
    total: int
    percent: int
    channel: str
    message: str


@dataclass(frozen=True)
class BatchResult:
    """Result for one channel."""
    channel: str
    path: Optional[str]
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ApkInfo:
    """APK file info."""
    path: str
    name: str
    size: int
    size_formatted: str
    mtime: datetime.datetime
    entry_count: int
    sha256: str
    supported: bool
    channel: Optional[ChannelInfo]
    pairs: Tuple[Tuple[int, str, int], ...]     # (id, name, length)


def validate_channel_name(channel: Any) -> bool:
    """Channel names may only contain letters, digits, underscores, and hyphens."""
    if not isinstance(channel, str):
        return False
    return CHANNEL_NAME.match(channel.strip()) is not None


def parse_channel_lines(lines: Iterable[str]) -> List[ChannelEntry]:
    """
    Parse channel list: one channel per line, either NAME or NAME=EXTRA; blank
    lines and lines starting with # are ignored.
    """
    entries = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        name, sep, extra = line.partition("=")
        if name := name.strip():
            entries.append(ChannelEntry(name, extra.strip() if sep else None))
    return entries


def parse_channel_file(path: str) -> List[ChannelEntry]:
    """Parse channel list file (UTF-8)."""
    with open(path, encoding="utf-8") as fh:
        return parse_channel_lines(fh)


def output_path(apkfile: str, channel: str, output_dir: str) -> str:
    """Path of the output APK for channel."""
    stem = os.path.splitext(os.path.basename(apkfile))[0]
    try:
        name = OUTPUT_NAME_FORMAT.format(stem=stem, channel=channel)
    except (KeyError, IndexError, ValueError) as e:
        raise APKChannelError(f"Invalid output name format: {OUTPUT_NAME_FORMAT!r}") from e
    return os.path.join(output_dir, name)


def generate_channel_apk(apkfile: str, channel: str, output_dir: str, extra: Any = None, *,
                         data: Optional[bytes] = None) -> str:
    """
    Write a copy of apkfile with channel record to output_dir.

    The source APK (or data, if not None) is not modified.

    Returns the path of the output APK.
    """
    if not validate_channel_name(channel):
        raise InvalidChannelName(f"Invalid channel name: {channel!r}")
    if data is None:
        data = read_apk(apkfile)
    output_apk = output_path(apkfile, channel.strip(), output_dir)
    os.makedirs(os.path.dirname(output_apk) or ".", exist_ok=True)
    write_apk(output_apk, put_channel_data(data, channel.strip(), extra))
    return output_apk


def batch_generate(apkfile: str, channels: Iterable[Union[str, ChannelEntry]],
                   output_dir: str, progress: Optional[Callable[[Progress], None]] = None) \
        -> List[BatchResult]:
    """
    Generate one APK per channel (see generate_channel_apk()).

    Failures are recorded per channel (and don't stop the remaining channels);
    failing to read apkfile raises.

    Returns list of BatchResult.
    """
    data = read_apk(apkfile)
    entries = [ChannelEntry(c) if isinstance(c, str) else c for c in channels]
    results = []
    for i, entry in enumerate(entries, 1):
        name = entry.name.strip()
        if progress is not None:
            percent = round(100 * i / len(entries))
            progress(Progress(i, len(entries), percent, name, f"Processing channel: {name}"))
        try:
            path = generate_channel_apk(apkfile, name, output_dir, entry.extra, data=data)
        except (APKChannelError, OSError) as e:
            logger.warning("%s: channel %r failed: %s", apkfile, name, e)
            results.append(BatchResult(name, None, False, str(e)))
        else:
            results.append(BatchResult(name, path, True))
    return results


def format_size(size: int) -> str:
    """Human-readable file size."""
    value, i = float(size), 0
    while value >= 1024 and i < len(SIZE_UNITS) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {SIZE_UNITS[i]}"


def apk_info(apkfile: str) -> ApkInfo:
    """APK file info (size, entries, hash, APK Signing Block pairs, channel)."""
    stat = os.stat(apkfile)
    with zipfile.ZipFile(apkfile) as zf:
        entry_count = len(zf.infolist())
    data = read_apk(apkfile)
    supported = check_support(apkfile)
    channel, pairs = None, ()
    if supported:
        pairs = get_pairs(data)
        try:
            channel = get_channel_data(data)
        except ChannelRecordError as e:
            logger.warning("%s: %s", apkfile, e)
    return ApkInfo(
        path=apkfile,
        name=os.path.basename(apkfile),
        size=stat.st_size,
        size_formatted=format_size(stat.st_size),
        mtime=datetime.datetime.fromtimestamp(stat.st_mtime),
        entry_count=entry_count,
        sha256=apksigcopier.sha256_file(apkfile),
        supported=supported,
        channel=channel,
        pairs=tuple((p.id, describe_pair_id(p.id), p.length) for p in pairs),
    )


# vim: set tw=80 sw=4 sts=4 et fdm=marker :
