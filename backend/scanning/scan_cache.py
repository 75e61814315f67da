"""
Scan cache keyed by image id.

Image ids are content addresses, so a scan result stays valid for as long as
the scanner's database does; callers decide how old is too old.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from database import DatabaseManager, VulnerabilityScan
from updates.vulnerability_gate import ScanSummary, combine_summaries

logger = logging.getLogger(__name__)


class ScanCache:

    def __init__(self, db: DatabaseManager, max_age: Optional[timedelta] = timedelta(days=7)):
        self.db = db
        self.max_age = max_age

    def save(
        self,
        image_id: str,
        environment_id: Optional[str],
        summaries: Iterable[ScanSummary],
        image_ref: Optional[str] = None
    ):
        with self.db.get_session() as session:
            for summary in summaries:
                session.add(VulnerabilityScan(
                    image_id=image_id,
                    image_ref=image_ref,
                    environment_id=environment_id,
                    scanner=summary.scanner,
                    scanned_at=summary.scanned_at,
                    **summary.counts(),
                ))
            session.commit()

    def get(self, image_id: str, environment_id: Optional[str]) -> List[ScanSummary]:
        """Latest result per scanner for the image."""
        with self.db.get_session() as session:
            query = session.query(VulnerabilityScan).filter(
                VulnerabilityScan.image_id == image_id,
                VulnerabilityScan.environment_id == environment_id,
            )
            if self.max_age is not None:
                cutoff = datetime.now(timezone.utc) - self.max_age
                query = query.filter(VulnerabilityScan.scanned_at >= cutoff)
            rows = query.order_by(VulnerabilityScan.scanned_at.desc()).all()

        latest = {}
        for row in rows:
            latest.setdefault(row.scanner, row)
        return [
            ScanSummary(
                critical=row.critical, high=row.high, medium=row.medium,
                low=row.low, negligible=row.negligible, unknown=row.unknown,
                scanner=row.scanner, scanned_at=row.scanned_at,
            )
            for row in latest.values()
        ]

    def get_combined(self, image_id: str, environment_id: Optional[str]) -> Optional[ScanSummary]:
        return combine_summaries(self.get(image_id, environment_id))
