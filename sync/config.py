"""Runtime settings read from environment variables."""
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

CALENDAR_MODES = ('include', 'exclude')
CREDENTIAL_STORES = ('file', 'dynamodb')


class ConfigurationError(ValueError):
    """Missing or invalid configuration."""


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {value}")
    return value


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def parse_feeds(raw: str) -> Dict[str, str]:
    """
    Parse "Name=location;Other=location" into a mapping.

    Args:
        raw: Feed specification string

    Returns:
        Calendar name to feed location
    """
    feeds = {}
    for entry in raw.split(';'):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, location = entry.partition('=')
        if not sep or not name.strip() or not location.strip():
            raise ConfigurationError(f"Invalid SOURCE_FEEDS entry: {entry!r}")
        feeds[name.strip()] = location.strip()
    return feeds


@dataclass
class Settings:
    """Configuration for a sync deployment."""
    google_client_id: str = ''
    google_client_secret: str = ''
    calendar_id: str = 'primary'
    table_name: str = 'calendar-sync-records'
    aws_region: str = 'us-east-1'
    dynamodb_endpoint_url: Optional[str] = None
    legacy_records_file: str = 'sync_database.json'
    token_file: str = 'tokens.json'
    credential_store: str = 'file'
    credential_table_name: str = 'calendar-sync-credentials'
    oauth_redirect_port: int = 8080
    source_feeds: Dict[str, str] = field(default_factory=dict)
    calendar_mode: str = 'include'
    target_calendars: List[str] = field(default_factory=list)
    past_days: int = 7
    future_days: int = 30
    sync_interval_seconds: int = 300
    include_location_in_description: bool = False
    location_prefix: str = 'Location: '
    default_timezone: str = 'UTC'
    timeout_seconds: int = 30
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Args:
            env: Mapping to read instead of os.environ

        Returns:
            Settings instance

        Raises:
            ConfigurationError: If a value is malformed
        """
        env = os.environ if env is None else env

        calendar_mode = env.get('CALENDAR_MODE', 'include').strip().lower()
        if calendar_mode not in CALENDAR_MODES:
            raise ConfigurationError(
                f"CALENDAR_MODE must be one of {', '.join(CALENDAR_MODES)}, got {calendar_mode!r}"
            )

        # Lambda has no writable durable filesystem, so tokens live in DynamoDB there
        default_store = 'dynamodb' if env.get('AWS_LAMBDA_FUNCTION_NAME') else 'file'
        credential_store = env.get('CREDENTIAL_STORE', default_store).strip().lower() or default_store
        if credential_store not in CREDENTIAL_STORES:
            raise ConfigurationError(
                f"CREDENTIAL_STORE must be one of {', '.join(CREDENTIAL_STORES)}, got {credential_store!r}"
            )

        default_timezone = env.get('DEFAULT_TIMEZONE', 'UTC').strip() or 'UTC'
        try:
            ZoneInfo(default_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(f"Unknown DEFAULT_TIMEZONE: {default_timezone!r}")

        settings = cls(
            google_client_id=env.get('GOOGLE_CLIENT_ID', ''),
            google_client_secret=env.get('GOOGLE_CLIENT_SECRET', ''),
            calendar_id=env.get('GOOGLE_CALENDAR_ID', 'primary'),
            table_name=env.get('TABLE_NAME', 'calendar-sync-records'),
            aws_region=env.get('AWS_REGION', 'us-east-1'),
            dynamodb_endpoint_url=env.get('DYNAMODB_ENDPOINT_URL') or None,
            legacy_records_file=env.get('LEGACY_RECORDS_FILE', 'sync_database.json'),
            token_file=env.get('TOKEN_FILE', 'tokens.json'),
            credential_store=credential_store,
            credential_table_name=env.get('CREDENTIAL_TABLE_NAME', 'calendar-sync-credentials'),
            oauth_redirect_port=_get_int(env, 'OAUTH_REDIRECT_PORT', 8080),
            source_feeds=parse_feeds(env.get('SOURCE_FEEDS', '')),
            calendar_mode=calendar_mode,
            target_calendars=[
                name.strip() for name in env.get('TARGET_CALENDARS', '').split(',')
                if name.strip()
            ],
            past_days=_get_int(env, 'PAST_DAYS', 7),
            future_days=_get_int(env, 'FUTURE_DAYS', 30),
            sync_interval_seconds=_get_int(env, 'SYNC_INTERVAL_SECONDS', 300),
            include_location_in_description=_get_bool(
                env, 'INCLUDE_LOCATION_IN_DESCRIPTION', False
            ),
            location_prefix=env.get('LOCATION_PREFIX', 'Location: '),
            default_timezone=default_timezone,
            timeout_seconds=_get_int(env, 'TIMEOUT_SECONDS', 30),
            log_level=env.get('LOG_LEVEL', 'INFO')
        )

        if not settings.google_configured:
            logger.warning("GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET not set, running read-only")
        if not settings.source_feeds:
            logger.warning("SOURCE_FEEDS is not set, no calendars to sync")
        return settings

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    def resolve_calendars(self, available: List[str]) -> List[str]:
        """
        Apply the include/exclude selection to the available calendars.

        Args:
            available: Calendar names offered by the source

        Returns:
            Calendar names to sync, in source order
        """
        if self.calendar_mode == 'exclude':
            excluded = set(self.target_calendars)
            return [name for name in available if name not in excluded]
        if self.target_calendars:
            wanted = set(self.target_calendars)
            return [name for name in available if name in wanted]
        return list(available)
