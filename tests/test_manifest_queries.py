"""Unit tests for manifest queries, locales, path patterns and ids."""

import pytest

from common.exceptions import ChunkNotFoundError, FormatError
from rman.ids import bundle_path, format_id, manifest_path, parse_id, parse_manifest_id
from rman.locale import InvalidLocaleError, Locale, normalize_locale
from rman.manifest import Manifest
from rman.patterns import PathPattern
from rman.types import Bundle, Chunk, File


def _chunk(chunk_id, bundle_id, offset, compressed, uncompressed):
    return Chunk(chunk_id, bundle_id, offset, compressed, uncompressed)


@pytest.fixture
def manifest():
    """
    Manifest built from records: two bundles, four chunks, four files.
    Chunk 0xC2 is shared by two files.
    """
    bundles = [
        Bundle(0xB1, (0xC1, 0xC2), 30),
        Bundle(0xB2, (0xC3, 0xC4), 25),
    ]
    chunks = [
        _chunk(0xC1, 0xB1, 0, 10, 100),
        _chunk(0xC2, 0xB1, 10, 20, 200),
        _chunk(0xC3, 0xB2, 0, 5, 50),
        _chunk(0xC4, 0xB2, 5, 20, 80),
    ]
    files = [
        File(1, 'data/a.bin', 'a.bin', 1, 300, (0xC1, 0xC2)),
        File(2, 'data/loc/b.bin', 'b.bin', 2, 250, (0xC2, 0xC3), locales=frozenset({'fr_FR'})),
        File(3, 'c.txt', 'c.txt', None, 80, (0xC4,), locales=frozenset({'en_US', 'de_DE'})),
        File(4, 'data/empty', 'empty', 1, 0, ()),
    ]
    return Manifest(0xABCDEF, bundles, chunks, files)


class TestManifestQueries:
    """Test file enumeration and chunk lookups."""

    def test_iter_files_in_manifest_order(self, manifest):
        assert [f.path for f in manifest.iter_files()] == [
            'data/a.bin', 'data/loc/b.bin', 'c.txt', 'data/empty',
        ]

    def test_iter_files_by_prefix(self, manifest):
        paths = [f.path for f in manifest.iter_files(prefix='data/loc')]
        assert paths == ['data/loc/b.bin']

    def test_iter_files_by_locale_keeps_unlocalized(self, manifest):
        paths = [f.path for f in manifest.iter_files(locale='fr_fr')]
        assert paths == ['data/a.bin', 'data/loc/b.bin', 'data/empty']

    def test_iter_files_by_pattern(self, manifest):
        paths = [f.path for f in manifest.iter_files(patterns=['*.bin'])]
        assert paths == ['data/a.bin', 'data/loc/b.bin']

    def test_iter_files_invalid_locale(self, manifest):
        with pytest.raises(InvalidLocaleError):
            list(manifest.iter_files(locale='french'))

    def test_get_file(self, manifest):
        assert manifest.get_file('c.txt').file_id == 3
        assert manifest.get_file('missing') is None

    def test_file_chunks_in_order(self, manifest):
        file = manifest.get_file('data/loc/b.bin')
        assert [c.chunk_id for c in manifest.file_chunks(file)] == [0xC2, 0xC3]

    def test_chunk_location(self, manifest):
        assert manifest.chunk_location(0xC2) == (0xB1, 10, 20)

    def test_unknown_chunk(self, manifest):
        with pytest.raises(ChunkNotFoundError):
            manifest.get_chunk(0x999)

    def test_file_size_is_sum_of_chunks(self, manifest):
        for file in manifest.files:
            assert manifest.file_size(file) == file.size

    def test_required_chunks_are_distinct(self, manifest):
        files = [manifest.get_file('data/a.bin'), manifest.get_file('data/loc/b.bin')]
        assert list(manifest.required_chunks(files)) == [0xC1, 0xC2, 0xC3]
        assert manifest.download_size(files) == 10 + 20 + 5

    def test_bundle_ranges(self, manifest):
        ranges = manifest.bundle_ranges(manifest.get_file('data/loc/b.bin'))

        assert set(ranges) == {0xB1, 0xB2}
        assert ranges[0xB1][0].bundle == (10, 30)
        assert ranges[0xB1][0].target == (0, 200)
        assert ranges[0xB2][0].bundle == (0, 5)
        assert ranges[0xB2][0].target == (200, 250)

    def test_bundle_chunks(self, manifest):
        assert [c.chunk_id for c in manifest.bundle_chunks(0xB2)] == [0xC3, 0xC4]

    def test_tree(self, manifest):
        tree = manifest.tree()

        assert sorted(tree.directories) == ['data']
        assert tree.find('data/loc/b.bin').file_id == 2
        assert tree.find('data/loc').path == 'data/loc'
        assert tree.find('nope') is None
        assert tree.total_size() == 300 + 250 + 80
        assert [f.path for f in tree.iter_files()] == [
            'c.txt', 'data/a.bin', 'data/empty', 'data/loc/b.bin',
        ]


class TestManifestValidation:
    """Test consistency checks on manifests built from records."""

    def test_chunk_in_unknown_bundle(self):
        with pytest.raises(FormatError, match="unknown bundle"):
            Manifest(1, [], [_chunk(0xC1, 0xB1, 0, 10, 10)], [])

    def test_chunk_past_bundle_end(self):
        with pytest.raises(FormatError, match="exceeds bundle"):
            Manifest(1, [Bundle(0xB1, (0xC1,), 5)], [_chunk(0xC1, 0xB1, 0, 10, 10)], [])

    def test_same_chunk_in_two_bundles_keeps_first_location(self):
        manifest = Manifest(
            1,
            [Bundle(0xB1, (0xC1,), 10), Bundle(0xB2, (0xC1,), 10)],
            [_chunk(0xC1, 0xB1, 0, 10, 40), _chunk(0xC1, 0xB2, 0, 10, 40)],
            [],
        )
        assert manifest.chunks[0xC1].bundle_id == 0xB1

    def test_same_chunk_with_different_sizes(self):
        with pytest.raises(FormatError, match="different sizes"):
            Manifest(
                1,
                [Bundle(0xB1, (0xC1,), 10), Bundle(0xB2, (0xC1,), 10)],
                [_chunk(0xC1, 0xB1, 0, 10, 40), _chunk(0xC1, 0xB2, 0, 10, 41)],
                [],
            )

    def test_link_size_is_not_checked(self):
        link = File(1, 'link', 'link', None, 12, (), link='target')
        manifest = Manifest(1, [], [], [link])
        assert manifest.get_file('link').is_link


class TestLocale:
    """Test locale codes."""

    def test_normalizes_territory(self):
        assert normalize_locale('en_us') == 'en_US'

    def test_language_and_territory(self):
        locale = Locale('pt_BR')
        assert locale.language == 'pt'
        assert locale.territory == 'BR'

    @pytest.mark.parametrize('code', ['EN_US', 'en-US', 'en_USA', '', 'e_US'])
    def test_rejects_invalid_codes(self, code):
        with pytest.raises(InvalidLocaleError):
            Locale(code)

    def test_from_bytes(self):
        assert Locale.from_bytes(b'ko_KR') == Locale('ko_kr')
        with pytest.raises(InvalidLocaleError):
            Locale.from_bytes(b'\xff\xfe_KR')

    def test_ordering(self):
        assert sorted([Locale('fr_FR'), Locale('de_DE')]) == [Locale('de_DE'), Locale('fr_FR')]


class TestPathPattern:
    """Test `*` wildcard patterns."""

    @pytest.mark.parametrize('pattern,path,expected', [
        ('data/a.bin', 'data/a.bin', True),
        ('data/a.bin', 'data/a.bin2', False),
        ('*.bin', 'data/loc/b.bin', True),
        ('data/*', 'data/loc/b.bin', True),
        ('data/*/b.*', 'data/loc/b.bin', True),
        ('data/*/b.*', 'data/b.bin', False),
        ('*a*a*', 'xay', False),
        ('*a*a*', 'xaya', True),
        ('*', '', True),
    ])
    def test_is_match(self, pattern, path, expected):
        assert PathPattern(pattern).is_match(path) is expected

    def test_empty_pattern_rejected(self):
        with pytest.raises(ValueError):
            PathPattern('')


class TestIds:
    """Test formatting and parsing of 64-bit ids."""

    def test_format_id(self):
        assert format_id(0xB7) == '00000000000000B7'

    def test_parse_id(self):
        assert parse_id('00000000000000b7') == 0xB7

    @pytest.mark.parametrize('text', ['B7', '0x00000000000000B7', '00000000000000G7', ' 0000000000000B7'])
    def test_parse_id_rejects(self, text):
        with pytest.raises(ValueError):
            parse_id(text)

    def test_cdn_paths(self):
        assert bundle_path(0xB7) == 'channels/public/bundles/00000000000000B7.bundle'
        assert manifest_path(0xABC) == 'channels/public/releases/0000000000000ABC.manifest'

    def test_parse_manifest_id_from_url(self):
        url = 'https://lol.dyn.riotcdn.net/channels/public/releases/0123456789ABCDEF.manifest?x=1'
        assert parse_manifest_id(url) == 0x0123456789ABCDEF

    def test_parse_manifest_id_rejects_bad_names(self):
        with pytest.raises(ValueError):
            parse_manifest_id('releases/latest.manifest')
