import json
import logging
import os
import time
import fcntl
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, List, Optional
from pydantic import ValidationError
from .models import (
    RemoteUserData, Server, StoreState, User, UserPlaybackState, state_key,
)
from .errors import StoreError, UnknownUserError

logger = logging.getLogger(__name__)

class PlaybackStateStore:
    """
    Durable table of servers, users and per-(user, item) playback state.

    Every public method holds the same re-entrant lock, so recorder writes from
    foreground threads and reads/clears from a running sync pass never interleave
    inside one operation. Mutations are persisted before the method returns; if
    the write fails the in-memory state is rolled back and StoreError is raised.
    """

    def __init__(self, path: str, persist: bool = True):
        self.path = Path(path)
        self.persist = persist
        self.state = StoreState()
        self._lock = threading.RLock()
        self._load()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No state file found at {self.path}, creating new.")
            return

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            self.state = StoreState(**data)
        except (OSError, ValueError, ValidationError) as e:
            # Starting fresh would orphan every unsynced local change.
            raise StoreError(f"Failed to load state from {self.path}: {e}") from e

    def save(self):
        if not self.persist:
            return

        tmp_path = self.path.with_suffix('.tmp')
        try:
            with open(tmp_path, 'w') as f:
                fcntl.flock(f, fcntl.LOCK_EX)
                try:
                    json.dump(self.state.model_dump(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.rename(tmp_path, self.path)

        except OSError as e:
            logger.error(f"Failed to save state to {self.path}: {e}")
            raise StoreError(f"Failed to save state to {self.path}: {e}") from e

    @contextmanager
    def _transaction(self):
        with self._lock:
            backup = self.state.model_copy(deep=True)
            try:
                yield self.state
                self.save()
            except Exception:
                self.state = backup
                raise

    # Servers and users

    def upsert_server(self, server: Server):
        with self._transaction() as s:
            s.servers[server.id] = server.model_copy()

    def get_server(self, server_id: str) -> Optional[Server]:
        with self._lock:
            server = self.state.servers.get(server_id)
            return server.model_copy() if server else None

    def list_servers(self) -> List[Server]:
        with self._lock:
            return [s.model_copy() for s in self.state.servers.values()]

    def delete_server(self, server_id: str) -> bool:
        """Delete a server and cascade to its users and their playback state."""
        with self._transaction() as s:
            if s.servers.pop(server_id, None) is None:
                return False
            for user_id in [u.id for u in s.users.values() if u.server_id == server_id]:
                self._drop_user(s, user_id)
            logger.info(f"Deleted server {server_id}")
            return True

    def upsert_user(self, user: User):
        with self._transaction() as s:
            if user.server_id not in s.servers:
                raise StoreError(f"Server {user.server_id} does not exist")
            s.users[user.id] = user.model_copy()

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self.state.users.get(user_id)
            return user.model_copy() if user else None

    def list_users(self, server_id: Optional[str] = None) -> List[User]:
        with self._lock:
            return [
                u.model_copy() for u in self.state.users.values()
                if server_id is None or u.server_id == server_id
            ]

    def delete_user(self, user_id: str) -> bool:
        """Delete a user and cascade to its playback state."""
        with self._transaction() as s:
            if user_id not in s.users:
                return False
            self._drop_user(s, user_id)
            return True

    def _drop_user(self, s: StoreState, user_id: str):
        del s.users[user_id]
        doomed = [k for k, v in s.user_data.items() if v.user_id == user_id]
        for key in doomed:
            del s.user_data[key]
        logger.info(f"Deleted user {user_id} and {len(doomed)} playback state rows")

    # Playback state

    def upsert(self, record: UserPlaybackState):
        with self._transaction() as s:
            if record.user_id not in s.users:
                raise UnknownUserError(f"User {record.user_id} does not exist")
            s.user_data[record.key] = record.model_copy()

    def get(self, user_id: str, item_id: str) -> Optional[UserPlaybackState]:
        with self._lock:
            record = self.state.user_data.get(state_key(user_id, item_id))
            return record.model_copy() if record else None

    def list_for_user(self, user_id: str) -> List[UserPlaybackState]:
        with self._lock:
            return [r.model_copy() for r in self.state.user_data.values() if r.user_id == user_id]

    def list_dirty(self, user_id: str) -> List[UserPlaybackState]:
        with self._lock:
            return [
                r.model_copy() for r in self.state.user_data.values()
                if r.user_id == user_id and r.dirty
            ]

    def update(self, user_id: str, item_id: str,
               fn: Callable[[UserPlaybackState], None]) -> UserPlaybackState:
        """
        Atomic read-modify-write. `fn` receives the current row (or a fresh one
        with defaults) and edits it in place.
        """
        with self._transaction() as s:
            if user_id not in s.users:
                raise UnknownUserError(f"User {user_id} does not exist")
            key = state_key(user_id, item_id)
            current = s.user_data.get(key)
            record = current.model_copy() if current else UserPlaybackState(user_id=user_id, item_id=item_id)
            fn(record)
            # Re-validate, fn may have set an out of range position.
            record = UserPlaybackState.model_validate(record.model_dump())
            s.user_data[key] = record
            return record.model_copy()

    def mark_clean(self, user_id: str, item_id: str, revision: Optional[int] = None,
                   remote: Optional[RemoteUserData] = None) -> bool:
        """
        Clear the dirty flag after a confirmed push.

        When `revision` is given, the flag is only cleared if the row has not been
        mutated since that revision was read; a newer local change stays dirty for
        the next pass. Returns whether the row is now clean.
        """
        with self._transaction() as s:
            record = s.user_data.get(state_key(user_id, item_id))
            if record is None:
                return False
            if revision is not None and record.revision != revision:
                logger.debug(f"Item {item_id} changed during push (rev {revision} -> {record.revision}), keeping dirty")
                return False
            record.dirty = False
            record.synced_at = time.time()
            if remote is not None:
                self._observe_remote(record, remote)
            return True

    def apply_remote(self, user_id: str, item_id: str, remote: RemoteUserData,
                     expected_revision: Optional[int] = None) -> UserPlaybackState:
        """
        Overwrite a row with a server snapshot that won conflict resolution.

        If the row was mutated locally after `expected_revision` the local change
        is kept and the row stays dirty. A missing row is created clean.
        """
        with self._transaction() as s:
            if user_id not in s.users:
                raise UnknownUserError(f"User {user_id} does not exist")
            key = state_key(user_id, item_id)
            record = s.user_data.get(key)
            if record is None:
                record = UserPlaybackState(user_id=user_id, item_id=item_id)
                s.user_data[key] = record
            elif expected_revision is not None and record.revision != expected_revision:
                logger.info(f"Item {item_id} mutated locally during merge, keeping local change")
                return record.model_copy()

            record.played = remote.played
            record.favorite = remote.favorite
            record.playback_position_ticks = remote.playback_position_ticks
            self._observe_remote(record, remote)
            record.dirty = False
            record.synced_at = time.time()
            return record.model_copy()

    def _observe_remote(self, record: UserPlaybackState, remote: RemoteUserData):
        if remote.version is not None:
            record.server_version = remote.version
        if remote.updated_at is not None:
            record.server_updated_at = remote.updated_at

    # Reporting

    def count_dirty(self) -> int:
        with self._lock:
            return sum(1 for r in self.state.user_data.values() if r.dirty)

    def oldest_dirty_mutation(self) -> Optional[float]:
        with self._lock:
            stamps = [r.mutated_at for r in self.state.user_data.values() if r.dirty]
            return min(stamps) if stamps else None

    def set_last_successful_sync(self, ts: float):
        with self._transaction() as s:
            s.last_successful_sync = ts
