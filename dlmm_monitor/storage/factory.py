"""
Storage backend selection.

``storage.backend`` picks between the JSON-file stores and the SQLAlchemy
repositories. The database backends share one ``Database`` per URL.
"""
from typing import Dict, Union

from dlmm_monitor.config.config import StorageConfig
from dlmm_monitor.monitoring.logger import get_logger
from dlmm_monitor.storage.db import Database, init_db
from dlmm_monitor.storage.file_store import FilePositionStorage, FileUserWalletMapStorage
from dlmm_monitor.storage.repository import SqlPositionStorage, SqlUserWalletMapStorage

logger = get_logger(__name__)

PositionStorageBackend = Union[FilePositionStorage, SqlPositionStorage]
WalletMapBackend = Union[FileUserWalletMapStorage, SqlUserWalletMapStorage]


class StorageFactory:
    """Builds storage backends from configuration, reusing one Database per URL."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._databases: Dict[str, Database] = {}

    def _database(self) -> Database:
        url = self.config.database_url
        if not url:
            raise ValueError("storage.backend=database requires storage.database_url")
        if url not in self._databases:
            self._databases[url] = init_db(url)
        return self._databases[url]

    def position_storage(self) -> PositionStorageBackend:
        if self.config.backend == "database":
            logger.info("Using database position storage")
            return SqlPositionStorage(self._database())
        logger.info("Using file position storage", data_dir=self.config.data_dir)
        return FilePositionStorage(self.config.data_dir)

    def wallet_map_storage(self) -> WalletMapBackend:
        if self.config.backend == "database":
            return SqlUserWalletMapStorage(self._database())
        return FileUserWalletMapStorage(self.config.data_dir)

    def close(self) -> None:
        for db in self._databases.values():
            db.dispose()
        self._databases.clear()
