"""
Image backup store.

Append-only record of previously deployed image tags per container name.
Written by the executor before each update; read newest-first by the health
monitor when it needs a rollback target.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from database import DatabaseManager, ImageBackup, utcnow

logger = logging.getLogger(__name__)


class BackupStore:
    """CRUD over the image_backups table"""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def insert_backup(
        self,
        container_name: str,
        image_name: str,
        image_tag: str,
        container_id: Optional[str] = None,
        image_digest: Optional[str] = None,
        trigger_name: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> ImageBackup:
        """Insert a new backup record"""
        with self.db.get_session() as session:
            backup = ImageBackup(
                id=str(uuid.uuid4()),
                container_id=container_id,
                container_name=container_name,
                image_name=image_name,
                image_tag=image_tag,
                image_digest=image_digest,
                trigger_name=trigger_name,
                created_at=created_at or utcnow(),
            )
            session.add(backup)
            session.commit()
            session.refresh(backup)
            session.expunge(backup)
            logger.info(f"Recorded backup {image_name}:{image_tag} for container {container_name}")
            return backup

    def get_backups_by_name(self, container_name: str) -> List[ImageBackup]:
        """All backups for a container name, newest first"""
        with self.db.get_session() as session:
            backups = (
                session.query(ImageBackup)
                .filter(ImageBackup.container_name == container_name)
                .order_by(ImageBackup.created_at.desc())
                .all()
            )
            session.expunge_all()
            return backups

    def get_all_backups(self) -> List[ImageBackup]:
        """All backups across all containers, newest first"""
        with self.db.get_session() as session:
            backups = session.query(ImageBackup).order_by(ImageBackup.created_at.desc()).all()
            session.expunge_all()
            return backups

    def get_backup(self, backup_id: str) -> Optional[ImageBackup]:
        with self.db.get_session() as session:
            backup = session.query(ImageBackup).filter(ImageBackup.id == backup_id).first()
            if backup:
                session.expunge(backup)
            return backup

    def delete_backup(self, backup_id: str) -> bool:
        with self.db.get_session() as session:
            deleted = session.query(ImageBackup).filter(ImageBackup.id == backup_id).delete()
            session.commit()
            return deleted > 0

    def prune_old_backups(self, container_name: str, max_count: int) -> int:
        """
        Keep only the max_count most recent backups for a container.

        Returns:
            Number of records removed
        """
        with self.db.get_session() as session:
            stale = (
                session.query(ImageBackup)
                .filter(ImageBackup.container_name == container_name)
                .order_by(ImageBackup.created_at.desc())
                .offset(max(max_count, 0))
                .all()
            )
            for backup in stale:
                session.delete(backup)
            session.commit()

        if stale:
            logger.info(f"Pruned {len(stale)} old backup(s) for container {container_name}")
        return len(stale)
