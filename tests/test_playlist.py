"""Playlist rendering and atomic replacement."""

import threading

from ipcamstream.playlist import (
    PlaylistEntry,
    parse_media_sequence,
    parse_segment_names,
    render_playlist,
    write_playlist,
)


def test_empty_playlist():
    text = render_playlist([], 2.0)
    assert text == (
        "#EXTM3U\n"
        "#EXT-X-VERSION:3\n"
        "#EXT-X-TARGETDURATION:2\n"
        "#EXT-X-MEDIA-SEQUENCE:0\n"
    )


def test_entries_and_sequence():
    entries = [
        PlaylistEntry(4, "segment4.mp4", 2.0),
        PlaylistEntry(5, "segment5.mp4", 2.5),
    ]
    text = render_playlist(entries, 2.0)
    assert "#EXT-X-TARGETDURATION:3\n" in text
    assert parse_media_sequence(text) == 4
    assert "#EXTINF:2.000,\nsegment4.mp4\n#EXTINF:2.500,\nsegment5.mp4\n" in text
    assert parse_segment_names(text) == ["segment4.mp4", "segment5.mp4"]


def test_explicit_media_sequence():
    assert parse_media_sequence(render_playlist([], 2.0, 7)) == 7


def test_parse_without_sequence():
    assert parse_media_sequence("#EXTM3U\n") is None


def test_write_replaces_file(tmp_path):
    path = tmp_path / "playlist.m3u8"
    write_playlist(path, "one\n")
    write_playlist(path, "two\n")
    assert path.read_text() == "two\n"
    assert [p.name for p in tmp_path.iterdir()] == ["playlist.m3u8"]


def test_readers_never_see_partial_playlist(tmp_path):
    path = tmp_path / "playlist.m3u8"
    versions = [
        render_playlist(
            [PlaylistEntry(i, f"segment{i}.mp4", 2.0) for i in range(n, n + 3)], 2.0,
        )
        for n in range(20)
    ]
    # Pad so each write spans several pages
    versions = [v + "#" + "x" * (64 * 1024) + "\n" for v in versions]
    write_playlist(path, versions[0])
    stop = threading.Event()
    bad = []

    def reader():
        while not stop.is_set():
            text = path.read_text()
            if text not in versions:
                bad.append(len(text))

    readers = [threading.Thread(target=reader) for _ in range(3)]
    for r in readers:
        r.start()
    for _ in range(10):
        for v in versions:
            write_playlist(path, v)
    stop.set()
    for r in readers:
        r.join()
    assert bad == []
