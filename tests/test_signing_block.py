# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import io
import logging
import struct
import zipfile

import apksigcopier
import apksigtool
import pytest

from apkchannel import (APK_SIG_BLOCK_MAGIC, EOCD, Pair, SigningBlock, SigningBlockMalformed,
                        TrailerNotFound, dump_pairs, dump_signing_block, extract_signing_block,
                        find_eocd, find_signing_block, parse_pairs, replace_pairs,
                        replace_signing_block)

from conftest import FOREIGN_ID, FOREIGN_VALUE, make_block, splice_block


def synthetic_apk(cd_offset: int, cd: bytes = b"C" * 20) -> bytes:
    eocd = struct.pack("<4s4H2LH", b"PK\x05\x06", 0, 0, 1, 1, len(cd), cd_offset, 0)
    return b"\x00" * cd_offset + cd + eocd


class TestFindEOCD:
    def test_zip(self, unsigned_zip):
        eocd = find_eocd(unsigned_zip)
        assert eocd.offset == len(unsigned_zip) - 22
        with zipfile.ZipFile(io.BytesIO(unsigned_zip)) as zf:
            assert eocd.cd_offset == zf.start_dir
        assert eocd.cd_offset + eocd.cd_size == eocd.offset

    def test_synthetic(self):
        assert find_eocd(synthetic_apk(1000)) == EOCD(1020, 1000, 20)

    def test_signature_in_data(self):
        data = b"PK\x05\x06" + synthetic_apk(1000)[4:]
        assert find_eocd(data).offset == 1020

    @pytest.mark.parametrize("data", [b"", b"PK\x05\x06", b"\x00" * 100])
    def test_not_found(self, data):
        with pytest.raises(TrailerNotFound, match="Expected end of central directory"):
            find_eocd(data)

    def test_comment(self):
        out = io.BytesIO()
        with zipfile.ZipFile(out, "w") as zf:
            zf.writestr("foo", b"bar")
            zf.comment = b"a comment"
        with pytest.raises(TrailerNotFound, match="comments are not supported"):
            find_eocd(out.getvalue())

    def test_cd_offset_out_of_range(self):
        data = bytearray(synthetic_apk(1000))
        struct.pack_into("<L", data, 1020 + 16, 5000)
        with pytest.raises(TrailerNotFound, match="Central directory offset"):
            find_eocd(bytes(data))


class TestFindSigningBlock:
    def test_absent(self, unsigned_zip):
        assert extract_signing_block(unsigned_zip) is None

    def test_absent_cd_offset_too_small(self):
        data = APK_SIG_BLOCK_MAGIC * 2
        assert find_signing_block(data, 16) is None

    def test_found(self, signed_zip, unsigned_zip):
        block = make_block((FOREIGN_ID, FOREIGN_VALUE))
        cd_offset = find_eocd(unsigned_zip).cd_offset
        sb = extract_signing_block(signed_zip)
        assert sb == SigningBlock(cd_offset, len(block) - 8, block[8:-24])
        assert sb.end == find_eocd(signed_zip).cd_offset
        assert sb.span == len(block)
        assert sb.pairs() == (Pair(FOREIGN_ID, FOREIGN_VALUE),)

    def test_sizes_not_equal(self, signed_zip):
        data = bytearray(signed_zip)
        sb = extract_signing_block(signed_zip)
        data[sb.offset] ^= 0x01
        with pytest.raises(SigningBlockMalformed, match="sizes not equal"):
            extract_signing_block(bytes(data))

    def test_offset_underflow(self):
        data = struct.pack("<Q", 1000) + APK_SIG_BLOCK_MAGIC
        data = b"\x00" * 8 + data
        with pytest.raises(SigningBlockMalformed, match="offset < 0"):
            find_signing_block(data, len(data))

    def test_size_too_small(self):
        data = b"\x00" * 16 + struct.pack("<Q", 8) + APK_SIG_BLOCK_MAGIC
        with pytest.raises(SigningBlockMalformed, match="too small"):
            find_signing_block(data, len(data))

    def test_empty_block(self):
        data = dump_signing_block(())
        assert len(data) == 32
        assert find_signing_block(data, 32) == SigningBlock(0, 24, b"")


class TestPairs:
    def test_order(self):
        pairs = (Pair(3, b"c"), Pair(1, b"a"), Pair(3, b"cc"))
        assert parse_pairs(dump_pairs(pairs)) == pairs

    def test_layout(self):
        assert dump_pairs([Pair(0x71777777, b"xy")]) == \
            b"\x06" + b"\x00" * 7 + b"\x77\x77\x77\x71" + b"xy"

    def test_truncated(self, caplog):
        pairs = (Pair(1, b"one"), Pair(2, b"two"))
        data = dump_pairs(pairs) + struct.pack("<QL", 100, 3) + b"short"
        with caplog.at_level(logging.WARNING, logger="apkchannel"):
            assert parse_pairs(data) == pairs
        assert "truncated pair" in caplog.text

    def test_too_short_length(self):
        data = dump_pairs([Pair(1, b"one")]) + struct.pack("<QL", 3, 3)
        assert parse_pairs(data) == (Pair(1, b"one"),)

    def test_oversized(self, caplog):
        data = dump_pairs([Pair(1, b"one")]) + struct.pack("<QL", 1 << 32 | 4, 3)
        with caplog.at_level(logging.WARNING, logger="apkchannel"):
            assert parse_pairs(data) == (Pair(1, b"one"),)
        assert "too large" in caplog.text

    def test_trailing_bytes(self):
        assert parse_pairs(dump_pairs([Pair(1, b"")]) + b"\x00" * 11) == (Pair(1, b""),)

    def test_empty(self):
        assert parse_pairs(b"") == ()

    def test_invalid_id(self):
        with pytest.raises(ValueError):
            Pair(1 << 32, b"")


class TestDumpSigningBlock:
    def test_layout(self):
        pairs = (Pair(FOREIGN_ID, FOREIGN_VALUE),)
        block = dump_signing_block(pairs)
        size = len(dump_pairs(pairs)) + 24
        assert len(block) == 8 + size
        assert block[:8] == block[-24:-16] == struct.pack("<Q", size)
        assert block[-16:] == b"APK Sig Block 42"

    def test_same_as_apksigtool(self):
        block = dump_signing_block([Pair(FOREIGN_ID, FOREIGN_VALUE), Pair(1, b"x")])
        assert block == make_block((FOREIGN_ID, FOREIGN_VALUE), (1, b"x"))
        parsed = apksigtool.parse_apk_signing_block(block)
        assert [p.id for p in parsed.pairs] == [FOREIGN_ID, 1]
        assert parsed.pairs[0].value.raw_data == FOREIGN_VALUE

    def test_to_apksigtool(self):
        pair = Pair(FOREIGN_ID, FOREIGN_VALUE).to_apksigtool()
        assert (pair.length, pair.id) == (len(FOREIGN_VALUE) + 4, FOREIGN_ID)
        assert pair.value.raw_data == FOREIGN_VALUE
        assert pair.dump() == dump_pairs([Pair(FOREIGN_ID, FOREIGN_VALUE)])


class TestReplaceSigningBlock:
    def test_noop(self, signed_zip):
        sb = extract_signing_block(signed_zip)
        assert replace_pairs(signed_zip, sb.pairs()) == signed_zip

    def test_insert(self, unsigned_zip):
        block = dump_signing_block([Pair(FOREIGN_ID, FOREIGN_VALUE)])
        out = replace_signing_block(unsigned_zip, block)
        assert out == splice_block(unsigned_zip, block)
        assert find_eocd(out).cd_offset == find_eocd(unsigned_zip).cd_offset + len(block)

    def test_replace(self, signed_zip, tmp_path):
        old = extract_signing_block(signed_zip)
        block = dump_signing_block([Pair(1, b"x" * 1000), Pair(FOREIGN_ID, FOREIGN_VALUE)])
        out = replace_signing_block(signed_zip, block)
        eocd_old, eocd_new = find_eocd(signed_zip), find_eocd(out)
        assert eocd_new.cd_offset == eocd_old.cd_offset + len(block) - old.span
        assert eocd_new.cd_size == eocd_old.cd_size
        assert out[:old.offset] == signed_zip[:old.offset]
        assert out[eocd_new.cd_offset:] == signed_zip[eocd_old.cd_offset:eocd_old.offset] + \
            signed_zip[eocd_old.offset:eocd_old.offset + 16] + \
            struct.pack("<L", eocd_new.cd_offset) + signed_zip[eocd_old.offset + 20:]
        apk = tmp_path / "out.apk"
        apk.write_bytes(out)
        assert apksigcopier.extract_v2_sig(str(apk)) == (old.offset, block)
        assert apksigcopier.zip_data(str(apk)).cd_offset == eocd_new.cd_offset
        with zipfile.ZipFile(str(apk)) as zf:
            assert zf.testzip() is None
            assert zf.read("META-INF/channel") == b"walle"

    def test_shrink(self, signed_zip):
        out = replace_signing_block(signed_zip, dump_signing_block(()))
        old = extract_signing_block(signed_zip)
        assert len(out) == len(signed_zip) - old.span + 32
        assert extract_signing_block(out).pairs() == ()

    def test_scenario(self):
        data = synthetic_apk(1000)
        block = dump_signing_block([Pair(0x71777777, b'{"channel":"beta"}')])
        out = replace_signing_block(data, block)
        assert find_eocd(out).cd_offset == 1000 + len(block)
        assert find_eocd(out).cd_offset == 1000 + 8 + 24 + 12 + len(b'{"channel":"beta"}')

    def test_no_magic(self, signed_zip):
        with pytest.raises(SigningBlockMalformed):
            replace_signing_block(signed_zip, b"\x00" * 32)

    def test_not_zip(self):
        with pytest.raises(TrailerNotFound):
            replace_signing_block(b"not a zip file at all", dump_signing_block(()))
