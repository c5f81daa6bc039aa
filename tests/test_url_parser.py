"""
Tests for media URL recognition, resource keys and Range parsing.
Run with: pytest tests/
"""
import pytest
from m3w_offline.utils.url_parser import (
    MediaVariant,
    RangeNotSatisfiable,
    api_path,
    guest_path,
    is_media_url,
    parse_media_url,
    parse_range,
    parse_resource_key,
    resource_key,
)


class TestParseMediaUrl:
    def test_api_stream(self):
        resource = parse_media_url("/api/songs/abc123/stream")
        assert resource.song_id == "abc123"
        assert resource.variant is MediaVariant.STREAM
        assert resource.guest is False

    def test_guest_cover(self):
        resource = parse_media_url("/guest/songs/abc123/cover")
        assert resource.variant is MediaVariant.COVER
        assert resource.guest is True

    def test_absolute_url_with_query(self):
        resource = parse_media_url("http://localhost:3000/api/songs/s1/stream?token=x")
        assert resource.song_id == "s1"

    def test_dev_and_prod_origins_share_key(self):
        dev = parse_media_url("http://localhost:4000/api/songs/s1/stream")
        prod = parse_media_url("https://m3w.example.com/api/songs/s1/stream")
        assert dev.key == prod.key == "song:s1:stream"

    def test_trailing_slash(self):
        assert is_media_url("/api/songs/s1/cover/")

    def test_non_media_paths(self):
        assert parse_media_url("/api/songs/s1") is None
        assert parse_media_url("/api/libraries") is None
        assert parse_media_url("/api/songs/s1/lyrics") is None
        assert parse_media_url("not a url") is None


class TestResourceKey:
    def test_key_format(self):
        assert resource_key("s1", MediaVariant.COVER) == "song:s1:cover"

    def test_parse_key(self):
        assert parse_resource_key("song:s1:stream") == ("s1", MediaVariant.STREAM)

    def test_parse_foreign_key(self):
        assert parse_resource_key("https://example.com/app.js") is None

    def test_paths(self):
        assert api_path("s1", MediaVariant.STREAM) == "/api/songs/s1/stream"
        assert guest_path("s1", MediaVariant.COVER) == "/guest/songs/s1/cover"


class TestParseRange:
    def test_closed_range(self):
        assert parse_range("bytes=0-99", 1000) == (0, 99)

    def test_open_range(self):
        assert parse_range("bytes=500-", 1000) == (500, 999)

    def test_last_byte(self):
        assert parse_range("bytes=999-999", 1000) == (999, 999)

    @pytest.mark.parametrize(
        "header",
        ["bytes=1000-", "bytes=0-1000", "bytes=10-5", "items=0-1", "bytes=-100", ""],
    )
    def test_unsatisfiable(self, header):
        with pytest.raises(RangeNotSatisfiable):
            parse_range(header, 1000)
