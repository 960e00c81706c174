"""
Local Sync Folder Handlers

Mirror records into a local folder tree:

    <sync_folder>/acct<account_id>/<source_path>

Downloads stream into a temp file next to the target and are moved into
place with os.replace, so readers never see a half-written file.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Mapping, Optional, Union

from cloudpoll.handlers.base import ActionHandler
from cloudpoll.handlers.index import IndexNotifier, NullIndexNotifier
from cloudpoll.providers.base import CloudProviderClient, ItemKind, UnsupportedContentError
from cloudpoll.sync.normalizer import ActionRecord

logger = logging.getLogger(__name__)


class UnsafePathError(Exception):
    """A record path would leave the account directory."""
    pass


class LocalSyncFolder:
    """Maps records to paths below the project's sync folder."""

    def __init__(self, root: Union[str, os.PathLike]):
        self.root = Path(root)

    def account_dir(self, account_id: str) -> Path:
        return self.root / f"acct{account_id}"

    def path_for(self, record: ActionRecord) -> Path:
        """Local path of a record, refusing paths that escape the account directory."""
        base = self.account_dir(record.account_id).resolve()
        target = (base / record.source_path).resolve()
        if target == base or base not in target.parents:
            raise UnsafePathError(f"Path {record.source_path!r} of {record.source_id} escapes {base}")
        return target


class DownloadHandler(ActionHandler):
    """Fetches file content from the account's provider."""

    name = "download"

    def __init__(
        self,
        sync_folder: LocalSyncFolder,
        sources: Mapping[str, CloudProviderClient],
        notifier: Optional[IndexNotifier] = None,
    ):
        self.sync_folder = sync_folder
        self.sources = sources
        self.notifier = notifier or NullIndexNotifier()

    async def handle(self, record: ActionRecord) -> None:
        source = self.sources.get(record.account_id)
        if source is None:
            raise KeyError(f"No provider client for account {record.account_id}")

        target = self.sync_folder.path_for(record)
        target.parent.mkdir(parents=True, exist_ok=True)

        metadata = record.details.get("metadata") or {}
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".part", dir=target.parent)
        size = 0
        try:
            with os.fdopen(fd, "wb") as f:
                async for chunk in source.download(
                    record.source_id,
                    revision=record.details.get("revision"),
                    mime_type=metadata.get("mimeType"),
                ):
                    f.write(chunk)
                    size += len(chunk)
            os.replace(tmp_name, target)
        except UnsupportedContentError as e:
            os.unlink(tmp_name)
            logger.info(f"Skipping {record.source_path} for account {record.account_id}: {e}")
            return
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.info(f"Downloaded {record.source_path} ({size} bytes) for account {record.account_id}")
        await self.notifier.updated(record, target)


class MakedirHandler(ActionHandler):
    """Creates the local directory of a folder record."""

    name = "make_directory"

    def __init__(self, sync_folder: LocalSyncFolder, notifier: Optional[IndexNotifier] = None):
        self.sync_folder = sync_folder
        self.notifier = notifier or NullIndexNotifier()

    async def handle(self, record: ActionRecord) -> None:
        target = self.sync_folder.path_for(record)
        target.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created directory {record.source_path} for account {record.account_id}")
        await self.notifier.updated(record, target)


class DeleteHandler(ActionHandler):
    """Removes the local artifact of a deleted item, recursively for folders."""

    name = "delete"

    def __init__(self, sync_folder: LocalSyncFolder, notifier: Optional[IndexNotifier] = None):
        self.sync_folder = sync_folder
        self.notifier = notifier or NullIndexNotifier()

    async def handle(self, record: ActionRecord) -> None:
        target = self.sync_folder.path_for(record)

        if not os.path.lexists(target):
            logger.info(f"Nothing to delete at {record.source_path} for account {record.account_id}")
        elif target.is_dir() and not target.is_symlink():
            if record.source_type != ItemKind.FOLDER:
                logger.info(f"Deleted item {record.source_id} is a directory locally, removing recursively")
            shutil.rmtree(target)
            logger.info(f"Removed directory {record.source_path} for account {record.account_id}")
        else:
            target.unlink()
            logger.info(f"Removed file {record.source_path} for account {record.account_id}")

        await self.notifier.deleted(record)
