#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import argparse
import json
import logging
import os
import sys
import zipfile

from typing import Any, List, Optional

from . import NAME, APKChannelError, InvalidChannelName, __version__
from . import batch, channel
from .batch import apk_info, batch_generate, parse_channel_file, validate_channel_name
from .channel import check_support, get_channel, put_channel, remove_channel


def check_apks(*apks: str, verbose: bool) -> bool:
    ok = True
    for apk in apks:
        if verbose:
            print(f"Checking {apk!r} ...")
        if check_support(apk):
            if verbose:
                print("  OK")
        else:
            ok = False
            if verbose:
                print("  Error: no (valid) APK Signing Block", file=sys.stderr)
            else:
                print(f"{apk!r}: no (valid) APK Signing Block", file=sys.stderr)
    return ok


def show_info(apk: str, *, as_json: bool) -> bool:
    info = apk_info(apk)
    if as_json:
        d = dict(info.__dict__, mtime=info.mtime.isoformat(),
                 channel=info.channel.for_json() if info.channel else None,
                 pairs=[dict(id=pair_id, name=name, length=length)
                        for pair_id, name, length in info.pairs])
        print(json.dumps(d, indent=2, sort_keys=True))
        return True
    print(f"NAME: {info.name}")
    print(f"SIZE: {info.size_formatted} ({info.size} bytes)")
    print(f"MODIFIED: {info.mtime.isoformat(sep=' ', timespec='seconds')}")
    print(f"ENTRIES: {info.entry_count}")
    print(f"SHA256: {info.sha256}")
    print(f"APK SIGNING BLOCK: {'yes' if info.supported else 'no'}")
    for pair_id, name, length in info.pairs:
        print(f"  PAIR ID: 0x{pair_id:08x} ({length} bytes)")
        print(f"    {name}")
    print(f"CHANNEL: {info.channel.channel if info.channel else '-'}")
    return True


def show_channel(apk: str, *, as_json: bool) -> bool:
    info = get_channel(apk)
    if info is None:
        print(f"{apk!r}: no channel", file=sys.stderr)
        return False
    if as_json:
        print(json.dumps(info.for_json(), indent=2))
    else:
        print(info.channel)
    return True


def do_put(apk: str, name: str, *, extra: Any, no_validate: bool) -> bool:
    if not (no_validate or validate_channel_name(name)):
        raise InvalidChannelName(f"Invalid channel name: {name!r}")
    put_channel(apk, name, extra)
    return True


def do_remove(apk: str) -> bool:
    print("removed" if remove_channel(apk) else "nothing to remove")
    return True


def do_batch(apk: str, output_dir: str, *, channels_file: Optional[str],
             channels: List[str], verbose: bool) -> bool:
    entries: List[Any] = parse_channel_file(channels_file) if channels_file else []
    entries.extend(channels)
    if not entries:
        raise APKChannelError("No channels specified")

    def progress(p: batch.Progress) -> None:
        if verbose:
            print(f"[{p.percent:3d}%] {p.message}")

    results = batch_generate(apk, entries, output_dir, progress)
    for r in results:
        if r.success:
            print(f"{r.channel}: {r.path}")
        else:
            print(f"{r.channel}: Error: {r.error}", file=sys.stderr)
    n_ok = sum(1 for r in results if r.success)
    if verbose:
        print(f"{n_ok} succeeded, {len(results) - n_ok} failed")
    return n_ok == len(results)


def _json_value(s: str) -> Any:
    try:
        return json.loads(s)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}")     # pylint: disable=W0707


def main(argv: Optional[List[str]] = None) -> None:
    if version_tag := os.environ.get("APKCHANNEL_VERSION_TAG"):
        channel.CHANNEL_DATA_VERSION = version_tag
    if name_format := os.environ.get("APKCHANNEL_OUTPUT_NAME_FORMAT"):
        batch.OUTPUT_NAME_FORMAT = name_format

    parser = argparse.ArgumentParser(
        prog=NAME, description="Embed/read distribution channels in APK Signing Blocks.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("check", help="Check APKs for a (valid) APK Signing Block.")
    p.add_argument("apks", metavar="APK", nargs="+", help="APK file(s) to check")
    p.set_defaults(func=lambda a: check_apks(*a.apks, verbose=a.verbose))

    p = sub.add_parser("info", help="Show APK info.")
    p.add_argument("--json", action="store_true", help="JSON output.")
    p.add_argument("apk", metavar="APK")
    p.set_defaults(func=lambda a: show_info(a.apk, as_json=a.json))

    p = sub.add_parser("put", help="Add or replace channel (modifies APK in place!).")
    p.add_argument("--extra", metavar="JSON", type=_json_value, help="Extra info (JSON).")
    p.add_argument("--no-validate", action="store_true", help="Don't validate channel name.")
    p.add_argument("apk", metavar="APK")
    p.add_argument("name", metavar="CHANNEL")
    p.set_defaults(func=lambda a: do_put(a.apk, a.name, extra=a.extra,
                                         no_validate=a.no_validate))

    p = sub.add_parser("get", help="Show channel.")
    p.add_argument("--json", action="store_true", help="JSON output.")
    p.add_argument("apk", metavar="APK")
    p.set_defaults(func=lambda a: show_channel(a.apk, as_json=a.json))

    p = sub.add_parser("remove", help="Remove channel (modifies APK in place!).")
    p.add_argument("apk", metavar="APK")
    p.set_defaults(func=lambda a: do_remove(a.apk))

    p = sub.add_parser("batch", help="Write one APK per channel to OUTPUT_DIR.")
    p.add_argument("-f", "--channels-file", metavar="FILE",
                   help="Channel list (one NAME or NAME=EXTRA per line).")
    p.add_argument("-c", "--channel", dest="channels", metavar="NAME", action="append",
                   default=[], help="Channel (can be used multiple times).")
    p.add_argument("apk", metavar="APK")
    p.add_argument("output_dir", metavar="OUTPUT_DIR")
    p.set_defaults(func=lambda a: do_batch(a.apk, a.output_dir, channels_file=a.channels_file,
                                           channels=a.channels, verbose=a.verbose))

    args = parser.parse_args(argv)
    logging.basicConfig(format="%(name)s: %(levelname)s: %(message)s")
    logging.getLogger(NAME).setLevel(logging.DEBUG if args.verbose else logging.WARNING)
    try:
        ok = args.func(args)
    except (APKChannelError, OSError, zipfile.BadZipFile) as e:
        print(f"Error: {e}.", file=sys.stderr)
        sys.exit(1)
    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
