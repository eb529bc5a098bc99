import tempfile
import unittest
from pathlib import Path
from unittest import mock

from . import config
from .database_manager import create_tables


class TempDatabaseTestCase(unittest.TestCase):
    """Points the database and local backup file at a fresh temp directory."""

    user_id = 'test-user'

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self._tmp.name)
        patches = [
            mock.patch.object(config, 'DB_PATH', str(self.tmp_path / 'test.db')),
            mock.patch.object(config, 'BACKUP_FILE', str(self.tmp_path / 'backups.json')),
            mock.patch.object(config, 'EXPORT_DIR', self.tmp_path / 'exports'),
        ]
        for patch in patches:
            patch.start()
            self.addCleanup(patch.stop)
        self.addCleanup(self._tmp.cleanup)
        create_tables()
