"""Unit tests for Settings."""
import pytest

from sync.config import ConfigurationError, Settings, parse_feeds


class TestSettingsFromEnv:
    """Test cases for reading settings from environment variables."""

    def test_defaults(self):
        settings = Settings.from_env({})

        assert settings.calendar_id == 'primary'
        assert settings.table_name == 'calendar-sync-records'
        assert settings.past_days == 7
        assert settings.future_days == 30
        assert settings.sync_interval_seconds == 300
        assert settings.oauth_redirect_port == 8080
        assert settings.location_prefix == 'Location: '
        assert settings.google_configured is False
        assert settings.source_feeds == {}
        assert settings.credential_store == 'file'

    def test_reads_values(self):
        settings = Settings.from_env({
            'GOOGLE_CLIENT_ID': 'id',
            'GOOGLE_CLIENT_SECRET': 'secret',
            'GOOGLE_CALENDAR_ID': 'mirror@group.calendar.google.com',
            'SOURCE_FEEDS': 'Work=https://example.com/work.ics; Home=/tmp/home.ics',
            'CALENDAR_MODE': 'Exclude',
            'TARGET_CALENDARS': 'Home, Spam',
            'PAST_DAYS': '3',
            'INCLUDE_LOCATION_IN_DESCRIPTION': 'true',
            'DEFAULT_TIMEZONE': 'Europe/Berlin',
        })

        assert settings.google_configured is True
        assert settings.calendar_id == 'mirror@group.calendar.google.com'
        assert settings.source_feeds == {
            'Work': 'https://example.com/work.ics',
            'Home': '/tmp/home.ics'
        }
        assert settings.calendar_mode == 'exclude'
        assert settings.target_calendars == ['Home', 'Spam']
        assert settings.past_days == 3
        assert settings.include_location_in_description is True
        assert settings.default_timezone == 'Europe/Berlin'

    def test_credentials_default_to_dynamodb_inside_lambda(self):
        settings = Settings.from_env({'AWS_LAMBDA_FUNCTION_NAME': 'calendar-mirror'})

        assert settings.credential_store == 'dynamodb'
        assert settings.credential_table_name == 'calendar-sync-credentials'

    def test_credential_store_override(self):
        settings = Settings.from_env({
            'AWS_LAMBDA_FUNCTION_NAME': 'calendar-mirror',
            'CREDENTIAL_STORE': 'File',
        })

        assert settings.credential_store == 'file'

    @pytest.mark.parametrize('env', [
        {'PAST_DAYS': 'seven'},
        {'FUTURE_DAYS': '-1'},
        {'CALENDAR_MODE': 'sometimes'},
        {'DEFAULT_TIMEZONE': 'Mars/Olympus_Mons'},
        {'SOURCE_FEEDS': 'no-equals-sign'},
        {'CREDENTIAL_STORE': 'keychain'},
    ])
    def test_invalid_values_raise(self, env):
        with pytest.raises(ConfigurationError):
            Settings.from_env(env)


class TestResolveCalendars:
    """Test cases for calendar selection."""

    AVAILABLE = ['Work', 'Home', 'Birthdays']

    def test_empty_include_keeps_all(self):
        assert Settings().resolve_calendars(self.AVAILABLE) == self.AVAILABLE

    def test_include_keeps_targets_in_source_order(self):
        settings = Settings(target_calendars=['Home', 'Work', 'Missing'])

        assert settings.resolve_calendars(self.AVAILABLE) == ['Work', 'Home']

    def test_exclude_drops_targets(self):
        settings = Settings(calendar_mode='exclude', target_calendars=['Birthdays'])

        assert settings.resolve_calendars(self.AVAILABLE) == ['Work', 'Home']


def test_parse_feeds_skips_blank_entries():
    assert parse_feeds('A=a.ics;;B=b.ics;') == {'A': 'a.ics', 'B': 'b.ics'}
