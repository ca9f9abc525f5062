"""Tests for the command-line entry point."""
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest

import main
from gcal.errors import AuthenticationError
from processor.models import EventTime, RemoteEvent, SyncRecord, SyncResult

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
def cli_env():
    env_vars = {
        'GOOGLE_CLIENT_ID': 'client-id',
        'GOOGLE_CLIENT_SECRET': 'client-secret',
        'SOURCE_FEEDS': 'Work=work.ics',
    }
    with patch.dict(os.environ, env_vars, clear=True):
        yield env_vars


@pytest.fixture
def components(cli_env):
    """Patch component wiring and logging setup."""
    fake = Mock()
    fake.engine.run_pass.return_value = SyncResult(created=1)
    fake.store.migrate_from_legacy_file.return_value = 0
    with patch('main.build_components', return_value=fake), patch('main.setup_logging'):
        yield fake


def synced_event(remote_id):
    return RemoteEvent(
        summary='Mirrored',
        start=EventTime(date='2024-03-10'),
        end=EventTime(date='2024-03-11'),
        id=remote_id,
        private_properties={'occurrenceKey': f'{remote_id}_2024-03-10T00:00:00Z'}
    )


class TestMain:
    """Test cases for CLI commands."""

    def test_sync_runs_one_pass(self, components, capsys):
        assert main.main(['sync']) == 0

        components.store.ensure_table.assert_called_once_with()
        components.store.migrate_from_legacy_file.assert_called_once_with('sync_database.json')
        components.engine.run_pass.assert_called_once_with()
        assert 'Sync complete: 1 created' in capsys.readouterr().out

    def test_sync_failure_exits_nonzero(self, components):
        components.engine.run_pass.side_effect = AuthenticationError('expired')

        assert main.main(['sync']) == 1

    def test_authorize(self, components):
        assert main.main(['authorize']) == 0

        components.token_manager.authorize.assert_called_once_with()
        components.credential_store.ensure_table.assert_called_once_with()
        components.store.ensure_table.assert_not_called()

    def test_authorize_without_credentials(self, components):
        components.token_manager = None

        assert main.main(['authorize']) == 1

    def test_stats(self, components, capsys):
        components.store.get_statistics.return_value = (3, {'Work': 2, 'Home': 1})

        assert main.main(['stats']) == 0

        out = capsys.readouterr().out
        assert 'Total sync records: 3' in out
        assert 'Work: 2' in out

    def test_prune(self, components):
        components.store.cleanup_old_records.return_value = 4

        assert main.main(['prune', '--days', '30']) == 0

        cutoff = components.store.cleanup_old_records.call_args.args[0]
        expected = datetime.now(timezone.utc) - timedelta(days=30)
        assert abs((cutoff - expected).total_seconds()) < 60

    def test_prune_rejects_negative_days(self, components):
        with pytest.raises(SystemExit):
            main.main(['prune', '--days', '-1'])

    def test_cleanup_confirmed(self, components):
        components.client.list.return_value = [synced_event('a'), synced_event('b')]
        components.store.clear.return_value = 2

        with patch('main.delete_remote_events', return_value=(['a', 'b'], [])) as delete:
            assert main.main(['cleanup'], input_fn=lambda prompt: 'yes') == 0

        delete.assert_called_once_with(components.client, ['a', 'b'])
        components.store.clear.assert_called_once_with()

    def test_cleanup_keeps_records_of_undeleted_events(self, components, capsys):
        components.client.list.return_value = [synced_event('a'), synced_event('b')]
        components.store.get_all.return_value = [
            SyncRecord('a_2024-03-10T00:00:00Z', 'a', 'f1', NOW, None, 'Work'),
            SyncRecord('b_2024-03-10T00:00:00Z', 'b', 'f2', NOW, None, 'Work'),
        ]
        failure = 'Delete failed for b: item 1 (status 500): Backend Error'

        with patch('main.delete_remote_events', return_value=(['a'], [failure])):
            assert main.main(['cleanup'], input_fn=lambda prompt: 'yes') == 1

        components.store.clear.assert_not_called()
        components.store.remove.assert_called_once_with('a_2024-03-10T00:00:00Z')
        out = capsys.readouterr().out
        assert 'removed 1 sync records' in out
        assert failure in out

    def test_cleanup_cancelled(self, components):
        components.client.list.return_value = [synced_event('a')]

        with patch('main.delete_remote_events') as delete:
            assert main.main(['cleanup'], input_fn=lambda prompt: 'no') == 0

        delete.assert_not_called()
        components.store.clear.assert_not_called()

    def test_cleanup_by_description_searches_wide_window(self, components):
        components.client.list.return_value = []

        assert main.main(['cleanup', '--by-description'], input_fn=lambda prompt: 'yes') == 0

        time_min, time_max = components.client.list.call_args.args
        assert time_max - time_min > timedelta(days=3000)

    def test_configuration_error(self, components):
        os.environ['CALENDAR_MODE'] = 'sometimes'

        assert main.main(['sync']) == 2
