"""Idempotent Timestream database and table setup at startup."""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any

import structlog

from speedtest_ingest.aws import create_client, error_code
from speedtest_ingest.config.models import AwsConfig, TimestreamConfig

logger = structlog.get_logger()


class TimestreamProvisioner:
    """Creates the Timestream database and table if they don't exist."""

    def __init__(
        self,
        config: TimestreamConfig,
        *,
        aws: AwsConfig | None = None,
        client: Any = None,
    ) -> None:
        self._config = config
        self._aws = aws or AwsConfig()
        self._client = client

    def _get_client(self):  # noqa: ANN202
        if self._client is None:
            self._client = create_client(
                "timestream-write",
                self._aws,
                endpoint_url=self._config.endpoint_override,
            )
        return self._client

    def ensure_database(self, name: str) -> bool:
        """Create database *name*; returns False if it already existed."""
        client = self._get_client()
        try:
            client.create_database(DatabaseName=name)
        except Exception as exc:
            if error_code(exc) != "ConflictException":
                raise
            logger.info("timestream.database_exists", database=name)
            return False
        logger.info("timestream.database_created", database=name)
        return True

    def ensure_table(
        self,
        database: str,
        table: str,
        memory_retention_hours: int,
        magnetic_retention_days: int,
    ) -> bool:
        """Create *table* with the given retention tiers.

        Returns False if it already existed; existing retention is left
        untouched.
        """
        client = self._get_client()
        try:
            client.create_table(
                DatabaseName=database,
                TableName=table,
                RetentionProperties={
                    "MemoryStoreRetentionPeriodInHours": memory_retention_hours,
                    "MagneticStoreRetentionPeriodInDays": magnetic_retention_days,
                },
            )
        except Exception as exc:
            if error_code(exc) != "ConflictException":
                raise
            logger.info("timestream.table_exists", database=database, table=table)
            return False
        logger.info(
            "timestream.table_created",
            database=database,
            table=table,
            memory_retention_hours=memory_retention_hours,
            magnetic_retention_days=magnetic_retention_days,
        )
        return True

    async def provision(self) -> dict[str, Any]:
        """Ensure the configured database and table exist."""
        cfg = self._config
        loop = asyncio.get_running_loop()
        db_created = await loop.run_in_executor(
            None, self.ensure_database, cfg.database_name
        )
        table_created = await loop.run_in_executor(
            None,
            partial(
                self.ensure_table,
                cfg.database_name,
                cfg.table_name,
                cfg.memory_retention_hours,
                cfg.magnetic_retention_days,
            ),
        )
        return {
            "database": cfg.database_name,
            "table": cfg.table_name,
            "database_created": db_created,
            "table_created": table_created,
        }
