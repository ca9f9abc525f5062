"""DynamoDB-backed store of per-occurrence sync records."""
import json
import logging
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from processor.models import SyncRecord

logger = logging.getLogger(__name__)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Args:
        value: Timestamp string, "Z" suffix allowed

    Returns:
        Aware datetime, or None for empty input
    """
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def migrate_legacy_records(raw_records: List[dict]) -> List[SyncRecord]:
    """
    Convert entries of the legacy flat JSON file into sync records.

    Legacy entries carry no content fingerprint, so the migrated fingerprint
    is empty and the next pass re-sends each event once.

    Args:
        raw_records: Decoded legacy JSON list

    Returns:
        SyncRecords for every well-formed entry
    """
    records = []
    for entry in raw_records:
        try:
            records.append(SyncRecord(
                occurrence_key=entry['mac_event_id'],
                remote_id=entry['google_event_id'],
                fingerprint=entry.get('content_hash') or '',
                last_synced_at=parse_timestamp(entry['last_synced_at']),
                source_modified=parse_timestamp(entry.get('mac_last_modified')),
                source_calendar=entry['source_calendar']
            ))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Skipping malformed legacy record: {e}")
    return records


class FingerprintStore:
    """Durable table mapping occurrence keys to remote ids and content fingerprints."""

    CALENDAR_INDEX = 'calendar-index'

    def __init__(
        self,
        table_name: str,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        """
        Initialize DynamoDB resources and table reference.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region
            endpoint_url: Alternate endpoint such as DynamoDB Local
            clock: Returns the current aware UTC time
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource(
            'dynamodb', region_name=region_name, endpoint_url=endpoint_url
        )
        self.table = self.dynamodb.Table(table_name)
        self._clock = clock
        logger.info(f"Initialized FingerprintStore for table: {table_name}")

    def ensure_table(self) -> None:
        """Create the table and its calendar index if they do not exist."""
        try:
            self.table.load()
            return
        except ClientError as e:
            if e.response['Error']['Code'] != 'ResourceNotFoundException':
                raise

        logger.info(f"Creating DynamoDB table: {self.table_name}")
        self.table = self.dynamodb.create_table(
            TableName=self.table_name,
            KeySchema=[
                {'AttributeName': 'occurrence_key', 'KeyType': 'HASH'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'occurrence_key', 'AttributeType': 'S'},
                {'AttributeName': 'source_calendar', 'AttributeType': 'S'}
            ],
            GlobalSecondaryIndexes=[
                {
                    'IndexName': self.CALENDAR_INDEX,
                    'KeySchema': [
                        {'AttributeName': 'source_calendar', 'KeyType': 'HASH'}
                    ],
                    'Projection': {'ProjectionType': 'ALL'}
                }
            ],
            BillingMode='PAY_PER_REQUEST'
        )
        self.table.wait_until_exists()

    # Queries

    def get(self, occurrence_key: str) -> Optional[SyncRecord]:
        response = self.table.get_item(Key={'occurrence_key': occurrence_key})
        item = response.get('Item')
        return self._item_to_record(item) if item else None

    def get_all(self) -> List[SyncRecord]:
        """
        Retrieve every record using a paginated Scan.

        Returns:
            All well-formed records
        """
        response = self.table.scan()
        items = response.get('Items', [])

        while 'LastEvaluatedKey' in response:
            response = self.table.scan(
                ExclusiveStartKey=response['LastEvaluatedKey']
            )
            items.extend(response.get('Items', []))

        records = [record for record in map(self._item_to_record, items) if record]
        logger.debug(f"Retrieved {len(records)} sync records")
        return records

    def get_by_calendar(self, calendar_name: str) -> List[SyncRecord]:
        """
        Retrieve the records belonging to one source calendar.

        Args:
            calendar_name: Source calendar name

        Returns:
            Records whose source_calendar matches
        """
        query = {
            'IndexName': self.CALENDAR_INDEX,
            'KeyConditionExpression': Key('source_calendar').eq(calendar_name),
        }
        response = self.table.query(**query)
        items = response.get('Items', [])

        while 'LastEvaluatedKey' in response:
            response = self.table.query(
                ExclusiveStartKey=response['LastEvaluatedKey'], **query
            )
            items.extend(response.get('Items', []))

        return [record for record in map(self._item_to_record, items) if record]

    def count(self) -> int:
        response = self.table.scan(Select='COUNT')
        total = response.get('Count', 0)
        while 'LastEvaluatedKey' in response:
            response = self.table.scan(
                Select='COUNT', ExclusiveStartKey=response['LastEvaluatedKey']
            )
            total += response.get('Count', 0)
        return total

    def get_statistics(self) -> Tuple[int, Dict[str, int]]:
        """
        Count records overall and per source calendar.

        Returns:
            Tuple of (total records, records by calendar)
        """
        by_calendar = Counter(record.source_calendar for record in self.get_all())
        return sum(by_calendar.values()), dict(by_calendar)

    # Mutations

    def upsert(
        self,
        occurrence_key: str,
        remote_id: str,
        fingerprint: str,
        source_modified: Optional[datetime],
        calendar_name: str
    ) -> SyncRecord:
        """
        Insert or replace the record for an occurrence.

        Args:
            occurrence_key: Occurrence identifier
            remote_id: Remote event id
            fingerprint: Content fingerprint of the synced version
            source_modified: Source last-modified time, if any
            calendar_name: Source calendar name

        Returns:
            The stored record
        """
        record = SyncRecord(
            occurrence_key=occurrence_key,
            remote_id=remote_id,
            fingerprint=fingerprint,
            last_synced_at=self._clock(),
            source_modified=source_modified,
            source_calendar=calendar_name
        )
        self.table.put_item(Item=self._record_to_item(record))
        return record

    def touch(
        self,
        occurrence_key: str,
        source_modified: Optional[datetime],
        fingerprint: str
    ) -> bool:
        """
        Refresh timestamps and fingerprint without changing the remote id.

        Args:
            occurrence_key: Occurrence identifier
            source_modified: New source last-modified time
            fingerprint: Current content fingerprint

        Returns:
            False if no record exists for the key
        """
        values = {
            ':synced': self._clock().isoformat(),
            ':fingerprint': fingerprint,
        }
        expression = 'SET last_synced_at = :synced, fingerprint = :fingerprint'
        if source_modified is not None:
            values[':modified'] = source_modified.isoformat()
            expression += ', source_modified = :modified'
        else:
            expression += ' REMOVE source_modified'

        try:
            self.table.update_item(
                Key={'occurrence_key': occurrence_key},
                UpdateExpression=expression,
                ConditionExpression='attribute_exists(occurrence_key)',
                ExpressionAttributeValues=values
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                logger.warning(f"Cannot touch missing record: {occurrence_key}")
                return False
            raise
        return True

    def remove(self, occurrence_key: str) -> None:
        self.table.delete_item(Key={'occurrence_key': occurrence_key})

    def clear(self) -> int:
        """
        Delete every record.

        Returns:
            Count of deleted records
        """
        keys = [record.occurrence_key for record in self.get_all()]
        with self.table.batch_writer() as writer:
            for key in keys:
                writer.delete_item(Key={'occurrence_key': key})
        logger.info(f"Cleared {len(keys)} sync records")
        return len(keys)

    def cleanup_old_records(self, older_than: datetime) -> int:
        """
        Remove records whose source modification predates a cutoff.

        Records without a source modification time are judged by their
        last sync time.

        Args:
            older_than: Aware cutoff datetime

        Returns:
            Count of removed records
        """
        removed = 0
        for record in self.get_all():
            reference = record.source_modified or record.last_synced_at
            if reference < older_than:
                self.remove(record.occurrence_key)
                removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} old sync records")
        return removed

    # Legacy migration

    def migrate_from_legacy_file(self, path: Union[str, Path]) -> int:
        """
        Import the legacy flat JSON file once, then archive it.

        Skipped when the file is absent or the table already holds records.
        Each record is written independently, and the file is archived only
        after every record has been written.

        Args:
            path: Location of the legacy JSON file

        Returns:
            Count of migrated records
        """
        legacy_path = Path(path)
        if not legacy_path.exists():
            return 0

        existing = self.count()
        if existing > 0:
            logger.info(
                f"Store already has {existing} records, skipping legacy migration"
            )
            return 0

        logger.info(f"Found legacy records file {legacy_path}, migrating")
        try:
            raw_records = json.loads(legacy_path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            logger.error(f"Could not read legacy records file {legacy_path}: {e}")
            return 0
        if not isinstance(raw_records, list):
            logger.error(f"Legacy records file {legacy_path} is not a JSON list")
            return 0

        records = migrate_legacy_records(raw_records)
        for record in records:
            self.table.put_item(Item=self._record_to_item(record))

        backup_path = legacy_path.with_name(legacy_path.name + '.backup')
        legacy_path.rename(backup_path)
        logger.info(
            f"Migrated {len(records)} legacy records; original archived as {backup_path.name}"
        )
        return len(records)

    # Conversion helpers

    def _item_to_record(self, item: dict) -> Optional[SyncRecord]:
        """
        Convert a DynamoDB item to a SyncRecord.

        Returns:
            SyncRecord, or None if the item is malformed
        """
        try:
            return SyncRecord(
                occurrence_key=item['occurrence_key'],
                remote_id=item['remote_id'],
                fingerprint=item.get('fingerprint', ''),
                last_synced_at=parse_timestamp(item['last_synced_at']),
                source_modified=parse_timestamp(item.get('source_modified')),
                source_calendar=item['source_calendar']
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to SyncRecord: {e}")
            return None

    def _record_to_item(self, record: SyncRecord) -> dict:
        item = {
            'occurrence_key': record.occurrence_key,
            'remote_id': record.remote_id,
            'fingerprint': record.fingerprint,
            'last_synced_at': record.last_synced_at.isoformat(),
            'source_calendar': record.source_calendar
        }

        if record.source_modified is not None:
            item['source_modified'] = record.source_modified.isoformat()

        return item
