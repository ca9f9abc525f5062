"""Persistence for OAuth credentials: a local JSON file or a DynamoDB item."""
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from processor.models import StoredCredential

logger = logging.getLogger(__name__)


class CredentialStoreError(Exception):
    """The credential sink could not be written."""


def _credential_to_dict(credential: StoredCredential) -> dict:
    return {
        'accessToken': credential.access_token,
        'refreshToken': credential.refresh_token,
        'expiresAt': credential.expires_at.isoformat(),
    }


def _credential_from_dict(data: dict) -> StoredCredential:
    return StoredCredential(
        access_token=data['accessToken'],
        refresh_token=data['refreshToken'],
        expires_at=datetime.fromisoformat(data['expiresAt'])
    )


class JsonFileCredentialStore:
    """Stores the access/refresh token pair as a small JSON document."""

    def __init__(self, path: Union[str, Path] = 'tokens.json'):
        self.path = Path(path)

    def ensure_table(self) -> None:
        """Create the parent directory of the credential file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Optional[StoredCredential]:
        """
        Read the stored credential.

        Returns:
            StoredCredential, or None when absent or unreadable
        """
        if not self.path.exists():
            return None
        try:
            return _credential_from_dict(json.loads(self.path.read_text(encoding='utf-8')))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable credential file {self.path}: {e}")
            return None

    def save(self, credential: StoredCredential) -> None:
        """
        Write the credential atomically with owner-only permissions.

        Raises:
            CredentialStoreError: If the file cannot be written
        """
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                json.dump(_credential_to_dict(credential), handle)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise CredentialStoreError(f"Cannot write credential file {self.path}: {e}") from e
        logger.info(f"Credentials saved to {self.path}")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Removed credential file {self.path}")


class DynamoDBCredentialStore:
    """Stores the credential as a single item in a DynamoDB table."""

    CREDENTIAL_ID = 'google-calendar'

    def __init__(
        self,
        table_name: str,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize DynamoDB resources and table reference.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region
            endpoint_url: Alternate endpoint such as DynamoDB Local
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource(
            'dynamodb', region_name=region_name, endpoint_url=endpoint_url
        )
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBCredentialStore for table: {table_name}")

    def ensure_table(self) -> None:
        """Create the credential table if it does not exist."""
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
                {'AttributeName': 'credential_id', 'KeyType': 'HASH'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'credential_id', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )
        self.table.wait_until_exists()

    def load(self) -> Optional[StoredCredential]:
        """
        Read the stored credential.

        Returns:
            StoredCredential, or None when the table or item is missing or malformed
        """
        try:
            response = self.table.get_item(Key={'credential_id': self.CREDENTIAL_ID})
        except ClientError as e:
            if e.response['Error']['Code'] == 'ResourceNotFoundException':
                logger.warning(f"Credential table {self.table_name} does not exist")
                return None
            raise

        item = response.get('Item')
        if not item:
            return None
        try:
            return _credential_from_dict(item)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed credential item in {self.table_name}: {e}")
            return None

    def save(self, credential: StoredCredential) -> None:
        """
        Write the credential item.

        Raises:
            CredentialStoreError: If DynamoDB rejects the write
        """
        item = {'credential_id': self.CREDENTIAL_ID}
        item.update(_credential_to_dict(credential))
        try:
            self.table.put_item(Item=item)
        except (ClientError, BotoCoreError) as e:
            raise CredentialStoreError(
                f"Cannot write credential to table {self.table_name}: {e}"
            ) from e
        logger.info(f"Credentials saved to table {self.table_name}")

    def clear(self) -> None:
        try:
            self.table.delete_item(Key={'credential_id': self.CREDENTIAL_ID})
        except (ClientError, BotoCoreError) as e:
            raise CredentialStoreError(
                f"Cannot remove credential from table {self.table_name}: {e}"
            ) from e
        logger.info(f"Removed credential from table {self.table_name}")
