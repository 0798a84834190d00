from audiotree.classify import Kind, classify
from audiotree.ffmpeg import INPUT_EXTENSIONS


def test_directory_wins():
    assert classify("album.flac", True, INPUT_EXTENSIONS) is Kind.DIRECTORY


def test_trash_before_media():
    assert classify("album/._01.flac", False, INPUT_EXTENSIONS) is Kind.TRASH
    assert classify(".DS_Store", False, INPUT_EXTENSIONS) is Kind.TRASH


def test_media_extensions():
    for ext in INPUT_EXTENSIONS:
        assert classify(f"a/b/song{ext}", False, INPUT_EXTENSIONS) is Kind.MEDIA


def test_other():
    assert classify("cover.jpg", False, INPUT_EXTENSIONS) is Kind.OTHER
    assert classify("song.FLAC", False, INPUT_EXTENSIONS) is Kind.OTHER
    assert classify("noext", False, INPUT_EXTENSIONS) is Kind.OTHER


def test_custom_extension_set():
    assert classify("x.ogg", False, (".ogg",)) is Kind.MEDIA
    assert classify("x.flac", False, (".ogg",)) is Kind.OTHER
