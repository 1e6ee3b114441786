# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Transaction Logger

Single responsibility: Log and retrieve transactions (append-only JSONL)

Every phase change appends a line; the last line for an id is its
current state.
"""

import json
import logging
import uuid
from datetime import datetime, UTC
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from package_engine.models.package_models import (
    OperationPhase,
    TransactionOperation,
    TransactionRecord,
    TransactionStatus,
)

logger = logging.getLogger(__name__)


class TransactionLogger:
    """Manages transaction logging to append-only JSONL file"""

    def __init__(self, log_file: Path):
        """
        Initialize transaction logger.

        Args:
            log_file: Path to transactions.jsonl
        """
        self.log_file = log_file
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

        if not self.log_file.exists():
            self.log_file.touch()

    def create_transaction(
        self,
        operation: TransactionOperation,
        package_id: str,
        version: Optional[str] = None
    ) -> TransactionRecord:
        """Create and log a new pending transaction record"""
        transaction = TransactionRecord(
            id=f"txn-{uuid.uuid4().hex[:12]}",
            operation=operation,
            package_id=package_id,
            version=version,
            status=TransactionStatus.PENDING,
            started_at=datetime.now(UTC)
        )
        self.log(transaction)
        return transaction

    def advance(self, transaction: TransactionRecord, phase: OperationPhase):
        """Move an in-flight transaction to the next phase"""
        transaction.phase = phase
        transaction.status = TransactionStatus.IN_PROGRESS
        self.log(transaction)

    def complete(self, transaction: TransactionRecord):
        transaction.phase = OperationPhase.COMPLETED
        transaction.status = TransactionStatus.COMPLETED
        transaction.completed_at = datetime.now(UTC)
        self.log(transaction)

    def fail(
        self,
        transaction: TransactionRecord,
        error_code: str,
        error: str,
        rolled_back: bool = False
    ):
        """Record failure; phase keeps the step that failed"""
        transaction.status = TransactionStatus.ROLLED_BACK if rolled_back else TransactionStatus.FAILED
        transaction.error_code = error_code
        transaction.error = error
        transaction.completed_at = datetime.now(UTC)
        self.log(transaction)

    def log(self, transaction: TransactionRecord):
        """
        Append transaction to JSONL log file.

        Args:
            transaction: Transaction record to log
        """
        log_line = json.dumps(transaction.to_dict())
        with open(self.log_file, "a") as f:
            f.write(log_line + "\n")

    def _read_latest(self) -> Dict[str, TransactionRecord]:
        latest: Dict[str, TransactionRecord] = {}
        if not self.log_file.exists():
            return latest

        with open(self.log_file, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    record = TransactionRecord.model_validate(json.loads(line))
                except (json.JSONDecodeError, PydanticValidationError) as e:
                    logger.error(f"Failed to parse transaction log line: {e}")
                    continue
                # Re-insert so dict order follows the most recent update
                latest.pop(record.id, None)
                latest[record.id] = record
        return latest

    def list_transactions(self, limit: int = 50, package_id: Optional[str] = None) -> List[TransactionRecord]:
        """
        List recent transactions from log.

        Args:
            limit: Maximum number of transactions to return
            package_id: Optional filter

        Returns:
            Latest state of each transaction (most recent first)
        """
        records = list(self._read_latest().values())
        if package_id:
            records = [r for r in records if r.package_id == package_id]
        return list(reversed(records[-limit:])) if limit > 0 else []

    def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        """Latest state of a transaction, or None if not found"""
        return self._read_latest().get(transaction_id)
