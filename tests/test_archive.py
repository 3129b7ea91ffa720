"""
Tests for archive parsing
"""
import io
import zipfile

import pytest

from archive import parse_archive, build_archive, classify_entry
from exceptions import ArchiveException, EmptyArchiveException


class TestClassify:
    @pytest.mark.parametrize('name,kind', [
        ('730.lua', 'script'),
        ('730.script', 'script'),
        ('7301_1.manifest', 'manifest'),
        ('DepotKeys.json', 'key_table'),
        ('extra/appaccesstokens.json', 'key_table'),
        ('readme.txt', 'ignored'),
    ])
    def test_classify(self, name, kind):
        assert classify_entry(name) == kind


class TestParseArchive:
    def test_splits_entries(self, make_zip):
        raw_manifest = bytes(range(256))
        data = make_zip({
            '730.lua': 'addappid(730)',
            'manifests/7301_1111111111.manifest': raw_manifest,
            'depotkeys.json': '{"7301": "ABC"}',
            'notes.txt': 'hello',
        })
        contents = parse_archive(data)

        assert [e.name for e in contents.scripts] == ['730.lua']
        assert [e.basename for e in contents.manifests] == ['7301_1111111111.manifest']
        assert [e.basename for e in contents.key_tables] == ['depotkeys.json']
        assert contents.ignored == ['notes.txt']

    def test_manifest_bytes_are_untouched(self, make_zip):
        raw_manifest = b'\xff\xfe\x00binary\r\n\x00'
        contents = parse_archive(make_zip({'7301_1.manifest': raw_manifest}))
        assert contents.manifests[0].data == raw_manifest

    def test_empty_archive(self, make_zip):
        with pytest.raises(EmptyArchiveException) as exc:
            parse_archive(make_zip({'readme.txt': 'nothing here', 'depotkeys.json': '{}'}))
        assert exc.value.code == 'EMPTY_ARCHIVE'

    def test_directories_are_skipped(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, 'w') as zf:
            zf.writestr('bundle/', b'')
            zf.writestr('bundle/730.lua', b'addappid(730)')
        contents = parse_archive(buffer.getvalue())
        assert len(contents.scripts) == 1

    def test_not_a_zip(self):
        with pytest.raises(ArchiveException):
            parse_archive(b'this is not a zip')


def test_build_archive_contains_files():
    data = build_archive({'730.lua': b'addappid(730)', '7301_1.manifest': b'\x00'})
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert sorted(zf.namelist()) == ['730.lua', '7301_1.manifest']
        assert zf.read('7301_1.manifest') == b'\x00'
