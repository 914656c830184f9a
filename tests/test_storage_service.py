"""Tests for the local storage backend and gs:// parsing."""

from urllib.parse import parse_qs, urlparse

import pytest

from reelrender.services.storage_service import LocalStorageService, create_storage_service, parse_gs_uri


class TestParseGsUri:
    @pytest.mark.parametrize(
        "uri, expected",
        [
            ("gs://bucket/p1/narration.mp3", ("bucket", "p1/narration.mp3")),
            ("gs://bucket/", None),
            ("p1/narration.mp3", None),
            ("https://example.com/a.mp3", None),
        ],
    )
    def test_parse(self, uri, expected):
        assert parse_gs_uri(uri) == expected


class TestLocalStorageService:
    def test_upload_download_and_checksum(self, input_storage, tmp_path):
        input_storage.upload_bytes("p1/narration.mp3", b"audio")
        assert input_storage.exists("p1/narration.mp3")
        checksum = input_storage.get_checksum("p1/narration.mp3")
        assert checksum == input_storage.get_checksum("p1/narration.mp3")

        dest = tmp_path / "copy.mp3"
        input_storage.download_file("p1/narration.mp3", str(dest))
        assert dest.read_bytes() == b"audio"

    def test_checksum_tracks_content(self, input_storage):
        input_storage.upload_bytes("p1/a.png", b"one")
        first = input_storage.get_checksum("p1/a.png")
        input_storage.upload_bytes("p1/a.png", b"two")
        assert input_storage.get_checksum("p1/a.png") != first
        assert input_storage.get_checksum("p1/missing.png") is None

    def test_download_missing_raises(self, input_storage, tmp_path):
        with pytest.raises(FileNotFoundError):
            input_storage.download_file("p1/missing.mp3", str(tmp_path / "x"))

    def test_list_objects_by_prefix(self, input_storage):
        for key in ["p1/scene-0-a.png", "p1/scene-1-a.png", "p1/narration.mp3", "p2/scene-0-a.png"]:
            input_storage.upload_bytes(key, b"x")
        keys = [o.key for o in input_storage.list_objects("p1/scene-")]
        assert keys == ["p1/scene-0-a.png", "p1/scene-1-a.png"]

    def test_copy_within_and_across_buckets(self, input_storage, output_storage):
        output_storage.upload_bytes("cache/render/abc.mp4", b"movie")
        output_storage.copy("cache/render/abc.mp4", "p1/movie.mp4")
        assert output_storage.get_checksum("p1/movie.mp4") == output_storage.get_checksum("cache/render/abc.mp4")

        output_storage.copy("p1/movie.mp4", "p1/imported.mp4", dest=input_storage)
        assert input_storage.exists("p1/imported.mp4")

    def test_delete(self, output_storage):
        output_storage.upload_bytes("p1/movie.mp4", b"m")
        assert output_storage.delete_file("p1/movie.mp4") is True
        assert output_storage.delete_file("p1/movie.mp4") is False

    def test_public_and_signed_urls(self, output_storage):
        output_storage.upload_bytes("p1/movie.mp4", b"m")
        public = output_storage.get_public_url("p1/movie.mp4")
        assert public.endswith(f"/{output_storage.bucket_name}/p1/movie.mp4")

        signed = output_storage.generate_signed_url("p1/movie.mp4", expires_minutes=10)
        query = parse_qs(urlparse(signed).query)
        assert "X-Expires" in query and "X-Signature" in query
        assert signed.startswith(public)

        assert not output_storage.is_public("p1/movie.mp4")
        output_storage.make_public("p1/movie.mp4")
        assert output_storage.is_public("p1/movie.mp4")


def test_factory_uses_local_storage_in_tests(test_settings):
    storage = create_storage_service("factory-bucket")
    assert isinstance(storage, LocalStorageService)
    assert storage.bucket_name == "factory-bucket"
