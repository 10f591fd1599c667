import logging
import time
from enum import Enum
from typing import Callable, Optional
from .config import settings
from .clients.jellyfin_client import JellyfinClient
from .errors import RemoteError, RemoteUnavailableError, StoreError, UnknownUserError
from .models import (
    PushStatus, RemoteUserData, Server, SyncReport, User, UserPlaybackState,
)
from .state import PlaybackStateStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Server, User], JellyfinClient]

class Winner(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


def resolve_conflict(local: UserPlaybackState, remote: RemoteUserData) -> Winner:
    """
    Decide which side of a conflicting item keeps its played/favorite/position.

    Server versions are preferred when both sides have one: if the server has not
    moved past the version our edit was based on, our edit wins. Otherwise fall
    back to last-writer-wins on wall clock, ties going to the local write.
    """
    if remote.version is not None and local.server_version is not None:
        if remote.version <= local.server_version:
            return Winner.LOCAL

    if remote.updated_at is None:
        return Winner.LOCAL
    if remote.updated_at > local.mutated_at:
        return Winner.REMOTE
    return Winner.LOCAL


class SyncEngine:
    def __init__(self, store: PlaybackStateStore, client_factory: ClientFactory = JellyfinClient):
        self.store = store
        self.client_factory = client_factory
        self.last_report: Optional[SyncReport] = None

    async def run_pass(self) -> SyncReport:
        """
        Push every dirty row of every known user once.

        Individual push failures leave the row dirty and the pass moves on. A
        server that cannot be reached at all ends that server's batch; its
        remaining rows stay dirty for the next pass.
        """
        report = SyncReport(started_at=time.time())
        servers = self.store.list_servers()

        if not servers:
            logger.debug("No servers found, skipping sync")
        for server in servers:
            try:
                await self._sync_server(server, report)
            except RemoteUnavailableError as e:
                logger.warning(f"Aborting sync for server {server.name}: {e}")
                report.aborted_servers.append(server.id)

        report.finished_at = time.time()
        if not report.should_retry:
            self.store.set_last_successful_sync(report.finished_at)
        self.last_report = report
        logger.info(
            f"User data sync completed. Success: {report.synced}, Failures: {report.failed}, "
            f"Conflicts: {report.conflicts}, Aborted servers: {len(report.aborted_servers)}"
        )
        return report

    async def _sync_server(self, server: Server, report: SyncReport):
        for user in self.store.list_users(server.id):
            if not user.access_token:
                logger.debug(f"Skipping sync for {user.name} on {server.name}: no session")
                report.skipped_users += 1
                continue

            dirty = self.store.list_dirty(user.id)
            if not dirty:
                continue

            async with self.client_factory(server, user) as client:
                if settings.SYNC_VALIDATE_SESSION:
                    try:
                        user_id = await client.get_current_user_id()
                    except RemoteUnavailableError:
                        raise
                    except RemoteError as e:
                        logger.warning(f"Could not validate user token for {user.name} on {server.name}: {e}")
                        user_id = None
                    if user_id is None:
                        report.skipped_users += 1
                        continue

                logger.info(f"Found {len(dirty)} items to sync for user {user.name} on server {server.name}")
                for record in dirty:
                    await self._sync_record(client, record, report)

    async def _sync_record(self, client: JellyfinClient, record: UserPlaybackState, report: SyncReport):
        """One row; anything short of losing the server or the store stays with this row."""
        try:
            await self._push_record(client, record, report)
        except RemoteUnavailableError:
            raise
        except UnknownUserError:
            logger.info(f"User {record.user_id} was removed during sync, skipping item {record.item_id}")
        except StoreError:
            raise
        except Exception as e:
            report.failed += 1
            logger.warning(f"Failed to sync item {record.item_id} on server {client.server.name}: {e}",
                           exc_info=True)

    async def _push_record(self, client: JellyfinClient, record: UserPlaybackState, report: SyncReport):
        item_id = record.item_id
        logger.debug(f"Syncing item {item_id} -> {client.server.name}")

        result = await client.push_user_data(record)

        if result.status == PushStatus.CONFLICT:
            report.conflicts += 1
            winner = resolve_conflict(record, result.remote)
            logger.info(f"Resolving conflict for {item_id}: {winner.value} wins")
            if winner == Winner.REMOTE:
                merged = self.store.apply_remote(record.user_id, item_id, result.remote,
                                                 expected_revision=record.revision)
                report.remote_wins += 1
                if not merged.dirty:
                    report.synced += 1
                return
            result = await client.push_user_data(record, force=True)

        if result.status == PushStatus.ACK:
            if self.store.mark_clean(record.user_id, item_id, revision=record.revision, remote=result.remote):
                report.synced += 1
            else:
                logger.debug(f"Item {item_id} changed while being pushed, leaving it for the next pass")
        else:
            report.failed += 1
            logger.warning(f"Failed to sync item {item_id} on server {client.server.name}: {result.detail}")

    async def refresh_item(self, user_id: str, item_id: str) -> UserPlaybackState:
        """
        Fetch the server's user data for one item and fold it into the store.

        A clean or missing row adopts the server values. A dirty row keeps its
        local values unless the server wins the conflict rule.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise UnknownUserError(f"User {user_id} does not exist")
        server = self.store.get_server(user.server_id)

        async with self.client_factory(server, user) as client:
            remote = await client.fetch_user_data(item_id)

        local = self.store.get(user_id, item_id)
        if local is None or not local.dirty:
            return self.store.apply_remote(user_id, item_id, remote,
                                           expected_revision=local.revision if local else 0)
        if resolve_conflict(local, remote) == Winner.REMOTE:
            return self.store.apply_remote(user_id, item_id, remote, expected_revision=local.revision)
        return local
