"""Tests for the dbus-monitor stream parser and its child process."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nowplaying.signals import (
    MATCH_RULES,
    OwnerChange,
    PropertiesChange,
    SignalMonitor,
    SignalStreamParser,
    extract_fields,
    owner_change_complete,
    parse_record,
    properties_change_complete,
)

NAME_ACQUIRED = (
    "signal time=1700000000.000001 sender=org.freedesktop.DBus -> destination=:1.90 "
    "serial=2 path=/org/freedesktop/DBus; interface=org.freedesktop.DBus; member=NameAcquired\n"
    '   string ":1.90"\n'
)

OWNER_APPEARED = (
    "signal time=1700000001.000000 sender=org.freedesktop.DBus -> destination=(null destination) "
    "serial=55 path=/org/freedesktop/DBus; interface=org.freedesktop.DBus; member=NameOwnerChanged\n"
    '   string "org.mpris.MediaPlayer2.vlc"\n'
    '   string ""\n'
    '   string ":1.77"\n'
)

OWNER_GONE = (
    "signal time=1700000009.000000 sender=org.freedesktop.DBus -> destination=(null destination) "
    "serial=60 path=/org/freedesktop/DBus; interface=org.freedesktop.DBus; member=NameOwnerChanged\n"
    '   string "org.mpris.MediaPlayer2.spotify"\n'
    '   string ":1.42"\n'
    '   string ""\n'
)

TRACK_CHANGE = (
    "signal time=1700000002.500000 sender=:1.42 -> destination=(null destination) serial=1234 "
    "path=/org/mpris/MediaPlayer2; interface=org.freedesktop.DBus.Properties; member=PropertiesChanged\n"
    '   string "org.mpris.MediaPlayer2.Player"\n'
    "   array [\n"
    "      dict entry(\n"
    '         string "Metadata"\n'
    "         variant             array [\n"
    "               dict entry(\n"
    '                  string "mpris:trackid"\n'
    '                  variant                      object path "/com/spotify/track/4uLU6hMC"\n'
    "               )\n"
    "               dict entry(\n"
    '                  string "xesam:title"\n'
    '                  variant                      string "Señorita (Live) [Remastered]"\n'
    "               )\n"
    "               dict entry(\n"
    '                  string "xesam:artist"\n'
    "                  variant                      array [\n"
    '                        string "Artist One"\n'
    '                        string "Artist Two"\n'
    "                     ]\n"
    "               )\n"
    "               dict entry(\n"
    '                  string "xesam:album"\n'
    '                  variant                      string "Album"\n'
    "               )\n"
    "               dict entry(\n"
    '                  string "mpris:artUrl"\n'
    '                  variant                      string "https://i.scdn.co/image/ab67"\n'
    "               )\n"
    "            ]\n"
    "      )\n"
    "      dict entry(\n"
    '         string "PlaybackStatus"\n'
    '         variant             string "Playing"\n'
    "      )\n"
    "   ]\n"
    "   array [\n"
    "   ]\n"
)

STATUS_ONLY = (
    "signal time=1700000003.000000 sender=:1.77 -> destination=(null destination) serial=88 "
    "path=/org/mpris/MediaPlayer2; interface=org.freedesktop.DBus.Properties; member=PropertiesChanged\n"
    '   string "org.mpris.MediaPlayer2.Player"\n'
    "   array [\n"
    "      dict entry(\n"
    '         string "PlaybackStatus"\n'
    '         variant             string "Paused"\n'
    "      )\n"
    "      dict entry(\n"
    '         string "Volume"\n'
    "         variant             double 0.5\n"
    "      )\n"
    "   ]\n"
    "   array [\n"
    "   ]\n"
)

STREAM = NAME_ACQUIRED + OWNER_APPEARED + TRACK_CHANGE + STATUS_ONLY + OWNER_GONE

EXPECTED = [
    OwnerChange("org.mpris.MediaPlayer2.vlc", "", ":1.77"),
    PropertiesChange(":1.42", {
        "status": "Playing",
        "title": "Señorita (Live) [Remastered]",
        "artist": "Artist One",
        "album": "Album",
        "art_url": "https://i.scdn.co/image/ab67",
        "track_id": "/com/spotify/track/4uLU6hMC",
    }),
    PropertiesChange(":1.77", {"status": "Paused", "volume": 0.5}),
    OwnerChange("org.mpris.MediaPlayer2.spotify", ":1.42", ""),
]


def feed_in_chunks(data: bytes, size: int) -> list:
    parser = SignalStreamParser()
    events = []
    for i in range(0, len(data), size):
        events.extend(parser.feed(data[i:i + size]))
    return events


class TestRecordParsing:
    """Whole records -> events."""

    def test_owner_appeared(self):
        assert parse_record(OWNER_APPEARED) == EXPECTED[0]

    def test_owner_gone_has_empty_new_owner(self):
        event = parse_record(OWNER_GONE)
        assert event.new_owner == ""
        assert event.old_owner == ":1.42"

    def test_non_player_owner_change_ignored(self):
        text = OWNER_APPEARED.replace("org.mpris.MediaPlayer2.vlc", "org.gnome.Shell")
        assert parse_record(text) is None

    def test_name_acquired_ignored(self):
        assert parse_record(NAME_ACQUIRED) is None

    def test_properties_change_fields(self):
        assert parse_record(TRACK_CHANGE) == EXPECTED[1]

    def test_properties_change_without_tracked_fields_ignored(self):
        text = STATUS_ONLY.replace('"PlaybackStatus"', '"CanGoNext"').replace(
            '"Volume"', '"Rate"')
        assert parse_record(text) is None


class TestFieldExtraction:
    """Individual fields from PropertiesChanged bodies."""

    def test_scalar_artist(self):
        body = 'string "xesam:artist"\n   variant   string "Solo Artist"\n'
        assert extract_fields(body)["artist"] == "Solo Artist"

    def test_first_of_artist_array(self):
        assert extract_fields(TRACK_CHANGE)["artist"] == "Artist One"

    def test_unknown_status_dropped(self):
        body = 'string "PlaybackStatus"\n   variant   string "Buffering"\n'
        assert "status" not in extract_fields(body)

    def test_local_file_url(self):
        body = 'string "xesam:url"\n   variant   string "file:///music/Song%20Name.mp3"\n'
        assert extract_fields(body) == {"source_url": "file:///music/Song%20Name.mp3"}

    def test_volume(self):
        assert extract_fields(STATUS_ONLY)["volume"] == 0.5


class TestCompleteness:
    """Per-kind completeness predicates."""

    def test_owner_change_whole(self):
        assert owner_change_complete(OWNER_APPEARED)
        assert owner_change_complete(OWNER_APPEARED.rstrip("\n"))

    def test_owner_change_cut_inside_last_argument(self):
        assert not owner_change_complete(OWNER_APPEARED[:-4])

    def test_owner_change_missing_argument(self):
        cut = OWNER_APPEARED[:OWNER_APPEARED.rindex("   string")]
        assert not owner_change_complete(cut)

    def test_properties_change_whole(self):
        assert properties_change_complete(TRACK_CHANGE)

    def test_properties_change_first_array_only(self):
        cut = TRACK_CHANGE[:TRACK_CHANGE.rindex("   array [")]
        assert not properties_change_complete(cut)

    def test_properties_change_bracket_inside_string(self):
        cut = TRACK_CHANGE[:TRACK_CHANGE.index("[Remastered]") + len("[Remastered]")]
        assert not properties_change_complete(cut)

    @pytest.mark.parametrize("cut", range(1, 40))
    def test_no_prefix_of_a_record_is_complete(self, cut):
        assert not properties_change_complete(STATUS_ONLY[:len(STATUS_ONLY) - cut - 2])


class TestStreamReassembly:
    """Output must not depend on where the stream is cut."""

    def test_whole_stream(self):
        parser = SignalStreamParser()
        assert parser.feed(STREAM.encode()) == EXPECTED
        assert parser.pending == ""

    @pytest.mark.parametrize("size", [1, 2, 3, 7, 64, 333, 4096])
    def test_chunk_size_does_not_matter(self, size):
        assert feed_in_chunks(STREAM.encode(), size) == EXPECTED

    def test_multibyte_character_split_across_chunks(self):
        data = STREAM.encode()
        split = data.index("ñ".encode()) + 1
        parser = SignalStreamParser()
        events = parser.feed(data[:split]) + parser.feed(data[split:])
        assert events == EXPECTED

    def test_incomplete_record_waits_for_more(self):
        parser = SignalStreamParser()
        half = len(TRACK_CHANGE) // 2
        assert parser.feed(TRACK_CHANGE[:half]) == []
        assert parser.pending == TRACK_CHANGE[:half]
        assert parser.feed(TRACK_CHANGE[half:]) == [EXPECTED[1]]

    def test_header_without_body_is_buffered(self):
        parser = SignalStreamParser()
        header = OWNER_APPEARED.split("\n", 1)[0]
        assert parser.feed(header) == []
        assert parser.feed(OWNER_APPEARED[len(header):]) == [EXPECTED[0]]

    def test_leading_garbage_dropped(self):
        parser = SignalStreamParser()
        assert parser.feed("noise\nmore noise\n" + OWNER_APPEARED) == [EXPECTED[0]]

    def test_unknown_member_released_by_next_header(self):
        parser = SignalStreamParser()
        assert parser.feed(NAME_ACQUIRED) == []
        assert parser.pending == NAME_ACQUIRED
        assert parser.feed(OWNER_APPEARED) == [EXPECTED[0]]

    def test_custom_predicate(self):
        parser = SignalStreamParser(predicates={"NameAcquired": lambda text: True})
        parser.feed(NAME_ACQUIRED)
        assert parser.pending == ""

    def test_reset_clears_buffer(self):
        parser = SignalStreamParser()
        parser.feed(TRACK_CHANGE[:50])
        parser.reset()
        assert parser.pending == ""


def fake_proc(*chunks):
    """A dbus-monitor child whose stdout yields *chunks* then EOF."""
    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = 0
    proc.stdout.read = AsyncMock(side_effect=[*chunks, b""])
    return proc


def recording_sleep(monitor, delays, limit):
    """asyncio.sleep stand-in that stops *monitor* after *limit* restarts."""
    async def sleep(delay):
        delays.append(delay)
        if len(delays) >= limit:
            monitor.running = False
    return sleep


class TestSignalMonitor:
    """The dbus-monitor child and its restart loop."""

    @pytest.mark.asyncio
    async def test_events_reach_handler(self):
        handler = MagicMock()
        monitor = SignalMonitor(handler)
        spawn = AsyncMock(return_value=fake_proc(OWNER_APPEARED.encode()))
        delays = []
        with patch.object(asyncio, "create_subprocess_exec", spawn), \
                patch.object(asyncio, "sleep", recording_sleep(monitor, delays, 1)):
            await monitor.run()

        handler.assert_called_once_with(EXPECTED[0])
        assert spawn.call_args.args == ("dbus-monitor", "--session", *MATCH_RULES)

    @pytest.mark.asyncio
    async def test_restart_backoff_doubles_to_cap(self):
        monitor = SignalMonitor(MagicMock())
        spawn = AsyncMock(side_effect=lambda *args, **kwargs: fake_proc())
        delays = []
        with patch.object(asyncio, "create_subprocess_exec", spawn), \
                patch.object(asyncio, "sleep", recording_sleep(monitor, delays, 7)):
            await monitor.run()

        assert delays == [1, 2, 4, 8, 16, 30, 30]
        assert spawn.await_count == 7

    @pytest.mark.asyncio
    async def test_backoff_resets_after_output(self):
        monitor = SignalMonitor(MagicMock())
        spawn = AsyncMock(side_effect=lambda *args, **kwargs: fake_proc(b"noise\n"))
        delays = []
        with patch.object(asyncio, "create_subprocess_exec", spawn), \
                patch.object(asyncio, "sleep", recording_sleep(monitor, delays, 4)):
            await monitor.run()

        assert delays == [1, 1, 1, 1]

    @pytest.mark.asyncio
    async def test_spawn_error_retried(self):
        monitor = SignalMonitor(MagicMock())
        spawn = AsyncMock(side_effect=PermissionError("denied"))
        delays = []
        with patch.object(asyncio, "create_subprocess_exec", spawn), \
                patch.object(asyncio, "sleep", recording_sleep(monitor, delays, 3)):
            await monitor.run()

        assert delays == [1, 2, 4]

    @pytest.mark.asyncio
    async def test_missing_binary_stops_monitor(self):
        monitor = SignalMonitor(MagicMock())
        spawn = AsyncMock(side_effect=FileNotFoundError("dbus-monitor"))
        sleep = AsyncMock()
        with patch.object(asyncio, "create_subprocess_exec", spawn), \
                patch.object(asyncio, "sleep", sleep):
            await monitor.run()

        assert monitor.running is False
        spawn.assert_awaited_once()
        sleep.assert_not_awaited()

    def test_handler_error_contained(self):
        handler = MagicMock(side_effect=[RuntimeError("boom"), None])
        monitor = SignalMonitor(handler)
        monitor.dispatch([EXPECTED[0], EXPECTED[1]])
        assert handler.call_count == 2
        assert handler.call_args.args == (EXPECTED[1],)

    @pytest.mark.asyncio
    async def test_stop_terminates_child(self):
        released = asyncio.Event()

        async def read(size):
            await released.wait()
            return b""

        proc = MagicMock()
        proc.pid = 4242
        proc.returncode = None
        proc.stdout.read = read
        proc.terminate = MagicMock(side_effect=released.set)
        proc.wait = AsyncMock(return_value=0)

        monitor = SignalMonitor(MagicMock())
        with patch.object(asyncio, "create_subprocess_exec", AsyncMock(return_value=proc)):
            task = asyncio.ensure_future(monitor.run())
            for _ in range(5):
                await asyncio.sleep(0)
            assert monitor.running is True
            await monitor.stop()
            await asyncio.wait_for(task, 1)

        proc.terminate.assert_called_once_with()
        proc.wait.assert_awaited_once()
        assert monitor.running is False
