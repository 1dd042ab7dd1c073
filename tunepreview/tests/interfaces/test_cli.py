import argparse
import io
import json
import logging
import os
import shutil
import tempfile
from unittest.mock import Mock, patch

import pytest

from tunepreview.crosscutting import config as config_module
from tunepreview.crosscutting.config import setup_config
from tunepreview.crosscutting.logging import ROOT_LOGGER_NAME
from tunepreview.domain.entities import SessionSnapshot
from tunepreview.domain.errors import RateLimited, TemporaryFailure
from tunepreview.interfaces import cli as cli_module
from tunepreview.interfaces.cli import (
    CLI, HELP_TEXT, ConsoleNotifier, StatusPrinter, format_snapshot, format_track_line
)


class TestCLIParser:
    """Tests for argument parsing and validation."""

    def setup_method(self):
        """Set up test fixtures."""
        self.cli = CLI()

    def teardown_method(self):
        """Clean up test fixtures."""
        logging.getLogger(ROOT_LOGGER_NAME).handlers.clear()

    def test_create_parser(self):
        parser = self.cli._create_parser()
        assert isinstance(parser, argparse.ArgumentParser)

        args = parser.parse_args(['search', 'daft', 'punk', '--limit', '5', '--json'])
        assert args.command == 'search'
        assert args.query == ['daft', 'punk']
        assert args.limit == 5
        assert args.json is True
        assert args.log_level == 'WARNING'

        args = parser.parse_args(['play'])
        assert args.query == []
        assert args.index == 1
        assert args.limit is None

        args = parser.parse_args(['serve', '--port', '8080', '--log-level', 'DEBUG'])
        assert args.host == 'localhost'
        assert args.port == 8080
        assert args.log_level == 'DEBUG'

        args = parser.parse_args(['config'])
        assert args.command == 'config'

    def test_search_requires_query(self):
        with pytest.raises(SystemExit):
            self.cli.parser.parse_args(['search'])

    @pytest.mark.parametrize("argv,message", [
        (['search', 'x', '--limit', '0'], '--limit'),
        (['search', 'x', '--limit', '201'], '--limit'),
        (['play', '--index', '0'], '--index'),
    ])
    def test_validate_arguments_invalid(self, argv, message):
        args = self.cli.parser.parse_args(argv)
        with pytest.raises(ValueError, match=message):
            self.cli._validate_arguments(args)

    def test_validate_arguments_valid(self):
        self.cli._validate_arguments(self.cli.parser.parse_args(['play', 'rock', '--index', '3']))

    def test_run_without_command_exits(self):
        with pytest.raises(SystemExit) as exc_info:
            self.cli.run([])
        assert exc_info.value.code == 1

    def test_run_invalid_arguments_exits(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            self.cli.run(['search', 'rock', '--limit', '500'])

        assert exc_info.value.code == 1
        assert '--limit must be between 1 and 200' in capsys.readouterr().err


class TestCLICommands:
    """Tests for search, config and play commands."""

    def setup_method(self):
        """Set up test fixtures."""
        self.cli = CLI()
        self.cli._setup_logging = Mock()
        self.temp_dir = tempfile.mkdtemp()
        setup_config(self.temp_dir)

    def teardown_method(self):
        """Clean up test fixtures."""
        config_module.config_manager = None
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_search_prints_numbered_tracks(self, capsys, search_provider):
        with patch.object(cli_module, 'ITunesSearchProvider', return_value=search_provider):
            self.cli.run(['search', 'synth', 'pop', '--limit', '2'])

        out = capsys.readouterr().out
        assert search_provider.queries == [('synth pop', 2)]
        assert '  1. Artist 1 - Song 1 (3:20)' in out
        assert '  2. Artist 2 - Song 2 (3:20)' in out

    def test_search_json_output(self, capsys, search_provider):
        with patch.object(cli_module, 'ITunesSearchProvider', return_value=search_provider):
            self.cli.run(['search', 'rock', '--json'])

        data = json.loads(capsys.readouterr().out)
        assert [t['id'] for t in data] == ['1', '2', '3']
        assert data[0]['previewUrl'] == 'https://audio.example.com/preview1.m4a'

    def test_search_without_playable_tracks(self, capsys, search_provider, record_factory):
        search_provider.records = [record_factory(1, preview_url=None)]

        with patch.object(cli_module, 'ITunesSearchProvider', return_value=search_provider):
            self.cli.run(['search', 'rock'])

        assert 'No playable tracks found' in capsys.readouterr().out

    def test_search_rate_limited_exits(self, capsys, search_provider):
        search_provider.error = RateLimited(retry_after_ms=3000)

        with patch.object(cli_module, 'ITunesSearchProvider', return_value=search_provider):
            with pytest.raises(SystemExit) as exc_info:
                self.cli.run(['search', 'rock'])

        assert exc_info.value.code == 1
        assert 'try again in 3s' in capsys.readouterr().err

    def test_search_failure_exits(self, capsys, search_provider):
        search_provider.error = TemporaryFailure("HTTP 503")

        with patch.object(cli_module, 'ITunesSearchProvider', return_value=search_provider):
            with pytest.raises(SystemExit) as exc_info:
                self.cli.run(['search', 'rock'])

        assert exc_info.value.code == 1
        assert 'Failed to fetch songs' in capsys.readouterr().err

    def test_search_uses_configured_provider_settings(self, search_provider):
        with patch.dict(os.environ, {'TUNEPREVIEW_COUNTRY': 'se', 'TUNEPREVIEW_HTTP_TIMEOUT': '3'}), \
                patch.object(cli_module, 'ITunesSearchProvider', return_value=search_provider) as provider_cls:
            self.cli.run(['search', 'abba'])

        provider_cls.assert_called_once_with(country='SE', timeout=3.0)

    def test_invalid_config_exits(self, capsys):
        with patch.dict(os.environ, {'TUNEPREVIEW_SEARCH_LIMIT': '0'}):
            with pytest.raises(SystemExit) as exc_info:
                self.cli.run(['search', 'rock'])

        assert exc_info.value.code == 1
        assert 'Configuration error' in capsys.readouterr().err

    def test_show_config(self, capsys):
        self.cli.run(['config'])

        summary = json.loads(capsys.readouterr().out)
        assert summary['valid'] is True
        assert summary['settings']['default_query'] == 'pop music'

    def test_config_set_saves_settings(self, capsys):
        self.cli.run(['config', 'set', 'VOLUME=60', 'tunepreview_country=gb'])

        manager = config_module.get_config_manager()
        assert manager.load_env_vars() == {
            'TUNEPREVIEW_VOLUME': '60',
            'TUNEPREVIEW_COUNTRY': 'gb',
        }
        out = capsys.readouterr().out
        first_line, _, rest = out.partition('\n')
        assert first_line.startswith('Saved 2 setting(s)')
        summary = json.loads(rest)
        assert summary['settings']['volume'] == 60
        assert summary['settings']['country'] == 'GB'

    def test_config_set_invalid_value_keeps_previous_file(self, capsys):
        self.cli.run(['config', 'set', 'VOLUME=40'])

        with pytest.raises(SystemExit) as exc_info:
            self.cli.run(['config', 'set', 'VOLUME=500', 'COUNTRY=SE'])

        assert exc_info.value.code == 1
        assert 'Configuration error' in capsys.readouterr().err
        assert config_module.get_config_manager().load_env_vars() == {'TUNEPREVIEW_VOLUME': '40'}

    def test_config_set_invalid_value_on_empty_file(self):
        with pytest.raises(SystemExit):
            self.cli.run(['config', 'set', 'SEARCH_LIMIT=0'])

        assert not config_module.get_config_manager().env_file.exists()

    @pytest.mark.parametrize("assignments", [[], ['SPEED=2'], ['VOLUME']])
    def test_config_set_rejects_bad_assignments(self, capsys, assignments):
        with pytest.raises(SystemExit) as exc_info:
            self.cli.run(['config', 'set'] + assignments)

        assert exc_info.value.code == 1
        assert 'Error:' in capsys.readouterr().err
        assert not config_module.get_config_manager().env_file.exists()

    def test_config_clear_removes_saved_settings(self, capsys):
        self.cli.run(['config', 'set', 'DEFAULT_QUERY=jazz'])

        self.cli.run(['config', 'clear'])

        manager = config_module.get_config_manager()
        assert not manager.env_file.exists()
        assert manager.get_player_config().default_query == 'pop music'
        assert 'Cleared' in capsys.readouterr().out

    def test_play_without_mpv_exits(self, capsys, search_provider):
        backend = Mock()
        backend.is_available.return_value = False

        with patch.object(cli_module, 'ITunesSearchProvider', return_value=search_provider), \
                patch.object(cli_module, 'MpvMediaBackend', return_value=backend):
            with pytest.raises(SystemExit) as exc_info:
                self.cli.run(['play'])

        assert exc_info.value.code == 1
        assert 'mpv not found' in capsys.readouterr().err
        assert search_provider.queries == [('pop music', 20)]

    def test_play_starts_requested_track_and_cleans_up(self, capsys, search_provider, backend):
        backend.is_available = lambda: True
        backend.close_all = Mock()
        self.cli._run_player_loop = Mock()

        with patch.object(cli_module, 'ITunesSearchProvider', return_value=search_provider), \
                patch.object(cli_module, 'MpvMediaBackend', return_value=backend):
            self.cli.run(['play', 'rock', '--index', '2'])

        assert backend.calls[0] == ('open', 'https://audio.example.com/preview2.m4a')
        assert self.cli._run_player_loop.call_count == 1
        assert backend.open_handles == []
        backend.close_all.assert_called_once()
        assert HELP_TEXT in capsys.readouterr().out

    def test_play_index_past_end_starts_last_track(self, search_provider, backend):
        backend.is_available = lambda: True
        backend.close_all = Mock()
        self.cli._run_player_loop = Mock()

        with patch.object(cli_module, 'ITunesSearchProvider', return_value=search_provider), \
                patch.object(cli_module, 'MpvMediaBackend', return_value=backend):
            self.cli.run(['play', '--index', '9'])

        assert backend.calls[0] == ('open', 'https://audio.example.com/preview3.m4a')


class TestInteractiveCommands:
    """Tests for the interactive transport commands."""

    def setup_method(self):
        """Set up test fixtures."""
        self.cli = CLI()

    def _start(self, session, backend, tracks):
        session.load_and_play(tracks[0])
        handle = backend.open_handles[0]
        backend.emit(handle, is_loaded=True, is_playing=True, position_ms=15000, duration_ms=30000)
        return handle

    def test_quit(self, session):
        for command in ('q', 'quit', 'EXIT'):
            assert self.cli._handle_command(session, command + '\n') is False

    def test_blank_line_ignored(self, session, backend):
        assert self.cli._handle_command(session, '   \n') is True
        assert backend.calls == []

    def test_toggle(self, session, backend, tracks):
        handle = self._start(session, backend, tracks)

        assert self.cli._handle_command(session, 'p') is True

        assert backend.calls_named('pause') == [('pause', handle)]

    def test_next_and_previous(self, session, backend, tracks):
        self._start(session, backend, tracks)

        self.cli._handle_command(session, 'n')
        assert session.current_track == tracks[1]

        self.cli._handle_command(session, 'b')
        assert session.current_track == tracks[0]

    def test_previous_at_first_track(self, session, backend, tracks, capsys):
        self._start(session, backend, tracks)

        self.cli._handle_command(session, 'b')

        assert 'Already at the first track' in capsys.readouterr().out
        assert session.current_track == tracks[0]

    def test_seek_seconds(self, session, backend, tracks):
        handle = self._start(session, backend, tracks)

        self.cli._handle_command(session, 's 12.5')
        self.cli._handle_command(session, 's 99')

        assert backend.calls_named('seek') == [('seek', handle, 12500), ('seek', handle, 30000)]

    def test_seek_invalid(self, session, backend, tracks, capsys):
        self._start(session, backend, tracks)

        self.cli._handle_command(session, 's')
        self.cli._handle_command(session, 's soon')

        out = capsys.readouterr().out
        assert 'Usage: s SECONDS' in out
        assert 'Invalid position: soon' in out
        assert backend.calls_named('seek') == []

    def test_skip_forward_and_back(self, session, backend, tracks):
        handle = self._start(session, backend, tracks)

        self.cli._handle_command(session, 'f')
        self.cli._handle_command(session, 'r')

        assert backend.calls_named('seek') == [('seek', handle, 25000), ('seek', handle, 5000)]

    def test_number_selects_track(self, session, backend, tracks):
        self._start(session, backend, tracks)

        self.cli._handle_command(session, '3')

        assert session.current_track == tracks[2]

    def test_number_of_current_track_toggles(self, session, backend, tracks):
        handle = self._start(session, backend, tracks)

        self.cli._handle_command(session, '1')

        assert backend.calls_named('pause') == [('pause', handle)]
        assert len(backend.calls_named('open')) == 1

    def test_number_out_of_range(self, session, capsys):
        self.cli._handle_command(session, '7')

        assert 'No track 7; choose 1-3' in capsys.readouterr().out
        assert session.current_track is None

    def test_list_and_info(self, session, backend, tracks, capsys):
        self._start(session, backend, tracks)

        self.cli._handle_command(session, 'l')
        self.cli._handle_command(session, 'i')

        out = capsys.readouterr().out
        assert '  3. Artist 3 - Song 3 (0:30)' in out
        assert 'Playing: Artist 1 - Song 1 [0:15 / 0:30]' in out

    def test_unknown_command_prints_help(self, session, capsys):
        assert self.cli._handle_command(session, 'dance') is True
        assert HELP_TEXT in capsys.readouterr().out

    def test_player_loop_polls_until_quit(self, session, backend):
        backend.poll = Mock()
        stream = io.StringIO("p\nq\n")

        with patch.object(cli_module.select, 'select', return_value=([stream], [], [])):
            self.cli._run_player_loop(session, backend, 0.01, stream=stream)

        assert backend.poll.call_count == 1

    def test_player_loop_stops_at_end_of_input(self, session, backend):
        backend.poll = Mock()
        stream = io.StringIO("l\n")

        with patch.object(cli_module.select, 'select', return_value=([stream], [], [])):
            self.cli._run_player_loop(session, backend, 0.01, stream=stream)

        assert backend.poll.call_count == 1


class TestFormatting:
    """Tests for console rendering helpers."""

    def test_format_snapshot_states(self, track_factory):
        track = track_factory(1)

        assert format_snapshot(SessionSnapshot()) == "Nothing loaded"
        assert format_snapshot(SessionSnapshot(track=track, buffering=True)) == \
            "Loading: Artist 1 - Song 1 [0:00 / --:--]"
        assert format_snapshot(SessionSnapshot(track=track, position_ms=5000, duration_ms=30000)) == \
            "Paused: Artist 1 - Song 1 [0:05 / 0:30]"

    def test_format_track_line_without_duration(self, track_factory):
        assert format_track_line(12, track_factory(4, duration_ms=None)) == " 12. Artist 4 - Song 4 (--:--)"

    def test_status_printer_prints_changes_only(self, track_factory):
        stream = io.StringIO()
        printer = StatusPrinter(stream)
        track = track_factory(1)

        printer(SessionSnapshot(track=track, buffering=True))
        printer(SessionSnapshot(track=track, playing=True, position_ms=1000))
        printer(SessionSnapshot(track=track, playing=True, position_ms=2000))
        printer(SessionSnapshot())

        lines = stream.getvalue().splitlines()
        assert lines == [
            "Loading: Artist 1 - Song 1 [0:00 / --:--]",
            "Playing: Artist 1 - Song 1 [0:01 / --:--]",
        ]

    def test_console_notifier(self):
        stream = io.StringIO()

        ConsoleNotifier(stream).notify("Playback error", "no preview")

        assert stream.getvalue() == "[Playback error] no preview\n"
