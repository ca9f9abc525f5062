"""AWS Lambda handler for scheduled calendar mirror passes."""
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from feeds.ics_feed import IcsFeedSource
from gcal.client import CalendarClient
from gcal.errors import AuthenticationError
from gcal.oauth import TokenManager
from processor.event_processor import EventProcessor
from storage.credential_store import DynamoDBCredentialStore, JsonFileCredentialStore
from storage.fingerprint_store import FingerprintStore
from sync.config import ConfigurationError, Settings
from sync.engine import ReconciliationEngine

# Attributes present on every LogRecord; anything else came from extra=
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including fields passed via extra."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass
class Components:
    """Wired collaborators for one deployment."""
    source: IcsFeedSource
    store: FingerprintStore
    processor: EventProcessor
    engine: ReconciliationEngine
    client: Optional[CalendarClient] = None
    token_manager: Optional[TokenManager] = None
    credential_store: Optional[Any] = None


def build_credential_store(settings: Settings):
    """Return the configured OAuth credential sink."""
    if settings.credential_store == 'dynamodb':
        return DynamoDBCredentialStore(
            table_name=settings.credential_table_name,
            region_name=settings.aws_region,
            endpoint_url=settings.dynamodb_endpoint_url
        )
    return JsonFileCredentialStore(settings.token_file)


def build_components(settings: Settings, interactive: bool = False) -> Components:
    """
    Instantiate the source, store, client and engine from settings.

    Args:
        settings: Deployment settings
        interactive: Allow the browser authorization flow

    Returns:
        Components with a ready engine; client is None when Google
        credentials are not configured
    """
    store = FingerprintStore(
        table_name=settings.table_name,
        region_name=settings.aws_region,
        endpoint_url=settings.dynamodb_endpoint_url
    )
    source = IcsFeedSource(
        settings.source_feeds,
        timeout=settings.timeout_seconds,
        default_timezone=settings.default_timezone
    )
    processor = EventProcessor(
        include_location_in_description=settings.include_location_in_description,
        location_prefix=settings.location_prefix
    )

    client = None
    token_manager = None
    credential_store = None
    if settings.google_configured:
        credential_store = build_credential_store(settings)
        token_manager = TokenManager(
            settings.google_client_id,
            settings.google_client_secret,
            credential_store,
            redirect_port=settings.oauth_redirect_port,
            interactive=interactive
        )
        client = CalendarClient(
            token_manager,
            calendar_id=settings.calendar_id,
            timeout=settings.timeout_seconds
        )

    engine = ReconciliationEngine(
        source,
        store,
        processor,
        client=client,
        token_manager=token_manager,
        calendar_selector=settings.resolve_calendars,
        past_days=settings.past_days,
        future_days=settings.future_days
    )
    return Components(source, store, processor, engine, client, token_manager, credential_store)


def _error_response(status_code: int, message: str, error: Exception, start_time: float) -> Dict[str, Any]:
    duration = time.time() - start_time
    return {
        'statusCode': status_code,
        'body': json.dumps({
            'message': message,
            'error': str(error),
            'error_type': type(error).__name__,
            'duration_seconds': round(duration, 2)
        })
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Run one non-interactive sync pass for an EventBridge schedule.

    Args:
        event: EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and summary statistics
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    logger = logging.getLogger(__name__)
    start_time = time.time()

    try:
        settings = Settings.from_env()
        if not settings.google_configured:
            raise ConfigurationError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are required")
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}", extra={'error_type': type(e).__name__})
        return _error_response(400, 'Invalid configuration', e, start_time)

    logger.info(
        "Lambda execution started",
        extra={
            'table_name': settings.table_name,
            'calendar_id': settings.calendar_id,
            'past_days': settings.past_days,
            'future_days': settings.future_days
        }
    )

    try:
        components = build_components(settings, interactive=False)
        sync_result = components.engine.run_pass()

    except AuthenticationError as e:
        logger.error(
            f"Authentication failed: {e}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _error_response(401, 'Authentication failed', e, start_time)

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _error_response(500, 'Sync failed', e, start_time)

    duration = time.time() - start_time
    statistics = sync_result.to_dict()
    statistics['duration_seconds'] = round(duration, 2)

    logger.info(
        "Lambda execution completed",
        extra={**statistics, 'errors': sync_result.errors}
    )

    message = 'Sync skipped: no target calendars' if sync_result.skipped else 'Sync completed successfully'
    return {
        'statusCode': 200,
        'body': json.dumps({
            'message': message,
            'statistics': statistics,
            'errors': sync_result.errors
        })
    }
